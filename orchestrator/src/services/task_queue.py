"""Redis-based named work queues with priorities, retries and liveness locks."""

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from typing import Any

from redis import Redis

from models.queues import (
    DEFAULT_JOB_OPTIONS,
    PENDING_QUEUE_STATES,
    QUEUE_CONCURRENCY,
    QueuedJob,
    QueuedJobState,
    QueueName,
    QueueOptions,
)

logger = logging.getLogger(__name__)

# Waiting jobs are ordered by priority first, then by insertion sequence.
PRIORITY_SCORE_FACTOR = 10**12

DEFAULT_LOCK_TTL_MS = 30_000


class QueueNotFoundError(Exception):
    """Raised when a queue name is not registered."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"Queue not found: {queue_name}")


def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisTaskQueue:
    """A single named queue.

    A job is stored as JSON under its own key and referenced from exactly
    one of the waiting, delayed, active, completed or failed collections.
    Claiming respects the queue's concurrency limit and takes a liveness
    lock that the job holder must keep extending; an active job whose lock
    has expired is marked stalled on the next claim.
    """

    def __init__(
        self,
        name: str,
        redis_client: Redis,
        concurrency: int = 1,
        options: QueueOptions | None = None,
        lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        clock: Callable[[], float] | None = None,
    ):
        if not name:
            raise ValueError("name is required")
        if redis_client is None:
            raise ValueError("redis_client is required")
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if lock_ttl_ms <= 0:
            raise ValueError("lock_ttl_ms must be positive")

        self.name = name
        self.concurrency = concurrency
        self.options = options or QueueOptions()
        self._redis = redis_client
        self._lock_ttl_ms = lock_ttl_ms
        self._clock = clock or time.time

    def _key(self, suffix: str) -> str:
        return f"queue:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _utc_now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _load(self, client, job_id: str) -> QueuedJob | None:
        data = client.get(self._job_key(job_id))
        if data is None:
            return None
        return QueuedJob.model_validate_json(data)

    def add(
        self,
        job_type: str,
        data: dict[str, Any],
        job_id: str | None = None,
        priority: int = 5,
        delay_ms: int = 0,
    ) -> bool:
        """Add a job. Returns False if a job with this id is already pending.

        Re-adding an id that is waiting, delayed or active is a no-op, which
        makes re-dispatch idempotent. Ids of finished or stalled jobs are
        reused.
        """
        if not job_type:
            raise ValueError("job_type is required")

        job_id = job_id or uuid.uuid4().hex
        job_key = self._job_key(job_id)

        def txn(pipe) -> bool:
            existing = self._load(pipe, job_id)
            if existing is not None and existing.state in PENDING_QUEUE_STATES:
                return False

            seq = pipe.incr(self._key("seq"))
            job = QueuedJob(
                id=job_id,
                queue_name=self.name,
                name=job_type,
                data=data,
                priority=int(priority),
                state=QueuedJobState.DELAYED if delay_ms > 0 else QueuedJobState.WAITING,
                max_attempts=self.options.attempts,
                created_at=self._utc_now(),
            )

            pipe.multi()
            pipe.set(job_key, job.model_dump_json())
            pipe.zrem(self._key("completed"), job_id)
            pipe.zrem(self._key("failed"), job_id)
            if delay_ms > 0:
                pipe.zadd(self._key("delayed"), {job_id: self._now_ms() + delay_ms})
            else:
                score = int(priority) * PRIORITY_SCORE_FACTOR + seq
                pipe.zadd(self._key("waiting"), {job_id: score})
            return True

        added = self._redis.transaction(txn, job_key, value_from_callable=True)
        if added:
            logger.debug(f"Added job {job_id} to queue {self.name}")
        return added

    def claim(self) -> QueuedJob | None:
        """Take the next waiting job, or None if idle or at capacity."""
        self._promote_delayed()
        self._mark_expired_locks_stalled()

        active_key = self._key("active")
        waiting_key = self._key("waiting")

        def txn(pipe) -> QueuedJob | None:
            if pipe.scard(active_key) >= self.concurrency:
                return None
            head = pipe.zrange(waiting_key, 0, 0)
            if not head:
                return None

            job_id = _decode(head[0])
            pipe.watch(self._job_key(job_id))
            job = self._load(pipe, job_id)
            token = uuid.uuid4().hex

            pipe.multi()
            pipe.zrem(waiting_key, job_id)
            if job is None:
                return None
            claimed = job.model_copy(
                update={
                    "state": QueuedJobState.ACTIVE,
                    "lock_token": token,
                    "processed_at": self._utc_now(),
                }
            )
            pipe.sadd(active_key, job_id)
            pipe.set(self._lock_key(job_id), token, px=self._lock_ttl_ms)
            pipe.set(self._job_key(job_id), claimed.model_dump_json())
            return claimed

        return self._redis.transaction(
            txn, active_key, waiting_key, value_from_callable=True
        )

    def _promote_delayed(self) -> None:
        delayed_key = self._key("delayed")
        due = self._redis.zrangebyscore(delayed_key, 0, self._now_ms())
        for raw_id in due:
            job_id = _decode(raw_id)
            job_key = self._job_key(job_id)

            def txn(pipe, job_id=job_id, job_key=job_key) -> None:
                if pipe.zscore(delayed_key, job_id) is None:
                    return
                job = self._load(pipe, job_id)
                seq = pipe.incr(self._key("seq"))
                pipe.multi()
                pipe.zrem(delayed_key, job_id)
                if job is None:
                    return
                waiting = job.model_copy(update={"state": QueuedJobState.WAITING})
                pipe.set(job_key, waiting.model_dump_json())
                score = job.priority * PRIORITY_SCORE_FACTOR + seq
                pipe.zadd(self._key("waiting"), {job_id: score})

            self._redis.transaction(txn, delayed_key, job_key)

    def _mark_expired_locks_stalled(self) -> None:
        for raw_id in self._redis.smembers(self._key("active")):
            self.release_if_stalled(_decode(raw_id))

    def release_if_stalled(self, job_id: str) -> bool:
        """Move an active job whose lock expired to the stalled state.

        Frees its concurrency slot. Returns True if the job was released.
        """
        if not job_id:
            raise ValueError("job_id is required")
        active_key = self._key("active")
        lock_key = self._lock_key(job_id)
        job_key = self._job_key(job_id)

        def txn(pipe) -> bool:
            if pipe.exists(lock_key) or not pipe.sismember(active_key, job_id):
                return False
            job = self._load(pipe, job_id)
            pipe.multi()
            pipe.srem(active_key, job_id)
            if job is not None:
                stalled = job.model_copy(
                    update={"state": QueuedJobState.STALLED, "lock_token": None}
                )
                pipe.set(job_key, stalled.model_dump_json())
            return True

        released = self._redis.transaction(
            txn, active_key, lock_key, job_key, value_from_callable=True
        )
        if released:
            logger.warning(f"Job {job_id} in queue {self.name} stalled: lock expired")
        return released

    def extend_lock(self, job_id: str) -> bool:
        """Extend the liveness lock of an active job. False if it was lost."""
        if not job_id:
            raise ValueError("job_id is required")
        return bool(
            self._redis.pexpire(self._lock_key(job_id), self._lock_ttl_ms)
        )

    def is_active(self, job_id: str) -> bool:
        """True if the job is active and its holder is still alive."""
        if not job_id:
            raise ValueError("job_id is required")
        return bool(
            self._redis.sismember(self._key("active"), job_id)
            and self._redis.exists(self._lock_key(job_id))
        )

    def get_job(self, job_id: str) -> QueuedJob | None:
        if not job_id:
            raise ValueError("job_id is required")
        return self._load(self._redis, job_id)

    def update_progress(self, job_id: str, progress: int) -> None:
        """Record progress (0-100) of an active job."""
        self._update(job_id, {"progress": max(0, min(100, int(progress)))})

    def complete(self, job_id: str, return_value: dict[str, Any] | None = None) -> None:
        """Mark an active job as completed and release its slot."""
        self._finish(
            job_id,
            QueuedJobState.COMPLETED,
            {"return_value": return_value},
            self._key("completed"),
        )
        self._trim(self._key("completed"), self.options.keep_completed)

    def fail(self, job_id: str, reason: str, retry: bool = True) -> bool:
        """Record a failed attempt.

        Returns True if the job was scheduled for another attempt (after
        the queue's backoff), False if its attempts are exhausted or
        ``retry`` is False.
        """
        if not reason:
            raise ValueError("reason is required")

        job = self.get_job(job_id)
        if job is None:
            raise ValueError(f"Job not found in queue {self.name}: {job_id}")

        attempts_made = job.attempts_made + 1
        if retry and attempts_made < job.max_attempts:
            delay = self.options.backoff_for(attempts_made)
            self._finish(
                job_id,
                QueuedJobState.DELAYED,
                {"attempts_made": attempts_made, "failed_reason": reason},
                self._key("delayed"),
                score=self._now_ms() + delay,
            )
            logger.info(
                f"Job {job_id} in queue {self.name} failed attempt "
                f"{attempts_made}/{job.max_attempts}, retrying in {delay}ms"
            )
            return True

        self._finish(
            job_id,
            QueuedJobState.FAILED,
            {"attempts_made": attempts_made, "failed_reason": reason},
            self._key("failed"),
        )
        self._trim(self._key("failed"), self.options.keep_failed)
        return False

    def counts(self) -> dict[str, int]:
        """Number of jobs per queue state."""
        return {
            QueuedJobState.WAITING.value: self._redis.zcard(self._key("waiting")),
            QueuedJobState.DELAYED.value: self._redis.zcard(self._key("delayed")),
            QueuedJobState.ACTIVE.value: self._redis.scard(self._key("active")),
            QueuedJobState.COMPLETED.value: self._redis.zcard(self._key("completed")),
            QueuedJobState.FAILED.value: self._redis.zcard(self._key("failed")),
        }

    def _update(self, job_id: str, changes: dict[str, Any]) -> QueuedJob:
        if not job_id:
            raise ValueError("job_id is required")
        job_key = self._job_key(job_id)

        def txn(pipe) -> QueuedJob:
            job = self._load(pipe, job_id)
            if job is None:
                raise ValueError(f"Job not found in queue {self.name}: {job_id}")
            updated = job.model_copy(update=changes)
            pipe.multi()
            pipe.set(job_key, updated.model_dump_json())
            return updated

        return self._redis.transaction(txn, job_key, value_from_callable=True)

    def _finish(
        self,
        job_id: str,
        state: QueuedJobState,
        changes: dict[str, Any],
        target_key: str,
        score: float | None = None,
    ) -> None:
        job_key = self._job_key(job_id)

        def txn(pipe) -> None:
            job = self._load(pipe, job_id)
            if job is None:
                raise ValueError(f"Job not found in queue {self.name}: {job_id}")
            updated = job.model_copy(
                update={
                    **changes,
                    "state": state,
                    "lock_token": None,
                    "finished_at": self._utc_now(),
                }
            )
            pipe.multi()
            pipe.srem(self._key("active"), job_id)
            pipe.delete(self._lock_key(job_id))
            pipe.set(job_key, updated.model_dump_json())
            pipe.zadd(target_key, {job_id: score if score is not None else self._now_ms()})

        self._redis.transaction(txn, job_key)

    def _trim(self, key: str, keep: int) -> None:
        excess = self._redis.zcard(key) - keep
        if excess <= 0:
            return
        for raw_id, _ in self._redis.zpopmin(key, excess):
            self._redis.delete(self._job_key(_decode(raw_id)))


class QueueRegistry:
    """The fixed set of queues, built once at startup."""

    def __init__(self, queues: list[RedisTaskQueue]):
        if not queues:
            raise ValueError("queues is required")
        self._queues = {queue.name: queue for queue in queues}

    @classmethod
    def from_defaults(
        cls,
        redis_client: Redis,
        concurrency_overrides: dict[str, int] | None = None,
        lock_ttl_ms: int = DEFAULT_LOCK_TTL_MS,
        clock: Callable[[], float] | None = None,
    ) -> "QueueRegistry":
        """Build every named queue with its default concurrency and options."""
        overrides = concurrency_overrides or {}
        queues = [
            RedisTaskQueue(
                name.value,
                redis_client,
                concurrency=overrides.get(name.value, QUEUE_CONCURRENCY[name]),
                options=DEFAULT_JOB_OPTIONS[name],
                lock_ttl_ms=lock_ttl_ms,
                clock=clock,
            )
            for name in QueueName
        ]
        return cls(queues)

    def get(self, name: "str | QueueName") -> RedisTaskQueue:
        key = name.value if isinstance(name, QueueName) else name
        if key not in self._queues:
            raise QueueNotFoundError(key)
        return self._queues[key]

    def names(self) -> list[str]:
        return list(self._queues)

    def __iter__(self) -> Iterator[RedisTaskQueue]:
        return iter(self._queues.values())

    def __len__(self) -> int:
        return len(self._queues)
