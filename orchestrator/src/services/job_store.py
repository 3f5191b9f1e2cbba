"""Redis-backed durable records of dispatched queue jobs."""

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from redis import Redis

from models.jobs import (
    IN_FLIGHT_JOB_STATUSES,
    JobLog,
    JobStats,
    LogLevel,
    QueueJob,
    QueueJobStatus,
)


class QueueJobNotFoundError(Exception):
    """Raised when no durable record exists for a job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Queue job not found: {job_id}")


class DlqJobNotFoundError(Exception):
    """Raised when a job is not in the dead letter queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found in DLQ")


def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisJobStore:
    """Stores QueueJob records with secondary indexes.

    Records are never deleted. A re-dispatch of the same unit of work
    creates a new record, and lookups by queue job id resolve to the
    newest one.
    """

    def __init__(self, redis_client: Redis):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    def _record_key(self, record_id: str) -> str:
        return f"queue_job:{record_id}"

    def _latest_key(self, job_id: str) -> str:
        return f"queue_jobs:latest:{job_id}"

    def _execution_key(self, execution_id: str) -> str:
        return f"queue_jobs:execution:{execution_id}"

    _all_key = "queue_jobs:all"
    _inflight_key = "queue_jobs:inflight"
    _dlq_key = "queue_jobs:dlq"

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(
        self,
        job_id: str,
        queue_name: str,
        execution_id: str,
        node_id: str,
        data: dict[str, Any] | None = None,
        recovery_count: int = 0,
    ) -> QueueJob:
        """Create a pending record and make it the latest for ``job_id``."""
        if not job_id:
            raise ValueError("job_id is required")
        if not queue_name:
            raise ValueError("queue_name is required")
        if not execution_id:
            raise ValueError("execution_id is required")
        if not node_id:
            raise ValueError("node_id is required")

        now = self._utc_now()
        record = QueueJob(
            id=uuid.uuid4().hex,
            job_id=job_id,
            queue_name=queue_name,
            execution_id=execution_id,
            node_id=node_id,
            status=QueueJobStatus.PENDING,
            data=data or {},
            recovery_count=recovery_count,
            created_at=now,
            updated_at=now,
        )
        score = now.timestamp()

        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._record_key(record.id), record.model_dump_json())
        pipe.set(self._latest_key(job_id), record.id)
        pipe.zadd(self._execution_key(execution_id), {record.id: score})
        pipe.zadd(self._all_key, {record.id: score})
        pipe.sadd(self._inflight_key, record.id)
        pipe.execute()
        return record

    def get(self, record_id: str) -> QueueJob:
        """Get a record by its own id."""
        if not record_id:
            raise ValueError("record_id is required")
        data = self._redis.get(self._record_key(record_id))
        if data is None:
            raise QueueJobNotFoundError(record_id)
        return QueueJob.model_validate_json(data)

    def get_by_job_id(self, job_id: str) -> QueueJob | None:
        """Latest record for a queue job id, or None."""
        if not job_id:
            raise ValueError("job_id is required")
        record_id = self._redis.get(self._latest_key(job_id))
        if record_id is None:
            return None
        return self.get(_decode(record_id))

    def _latest_record_id(self, job_id: str) -> str:
        if not job_id:
            raise ValueError("job_id is required")
        record_id = self._redis.get(self._latest_key(job_id))
        if record_id is None:
            raise QueueJobNotFoundError(job_id)
        return _decode(record_id)

    def _update(
        self, record_id: str, mutate: Callable[[QueueJob], dict[str, Any] | None]
    ) -> QueueJob:
        """Atomically apply ``mutate`` and keep the indexes in step.

        ``mutate`` returns the fields to change, or None to leave the record
        untouched.
        """
        key = self._record_key(record_id)

        def txn(pipe) -> QueueJob:
            data = pipe.get(key)
            if data is None:
                raise QueueJobNotFoundError(record_id)
            record = QueueJob.model_validate_json(data)
            changes = mutate(record)
            if changes is None:
                return record

            # Validate through the model so the DLQ/status rule is enforced.
            updated = QueueJob.model_validate(
                {
                    **record.model_dump(),
                    **changes,
                    "updated_at": changes.get("updated_at", self._utc_now()),
                }
            )
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            if updated.status in IN_FLIGHT_JOB_STATUSES and not updated.moved_to_dlq:
                pipe.sadd(self._inflight_key, record_id)
            else:
                pipe.srem(self._inflight_key, record_id)
            if updated.moved_to_dlq:
                pipe.zadd(self._dlq_key, {record_id: updated.created_at.timestamp()})
            else:
                pipe.zrem(self._dlq_key, record_id)
            return updated

        return self._redis.transaction(txn, key, value_from_callable=True)

    def _log(self, message: str, level: LogLevel = "info") -> JobLog:
        return JobLog(timestamp=self._utc_now(), level=level, message=message)

    def update_status(
        self,
        job_id: str,
        status: QueueJobStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        attempts_made: int | None = None,
    ) -> QueueJob:
        """Update the latest record of a queue job."""
        now = self._utc_now()

        def mutate(record: QueueJob) -> dict[str, Any]:
            changes: dict[str, Any] = {"status": status}
            if status == QueueJobStatus.ACTIVE:
                changes["processed_at"] = now
            if status in (QueueJobStatus.COMPLETED, QueueJobStatus.FAILED):
                changes["finished_at"] = now
            if result is not None:
                changes["result"] = result
            if error is not None:
                changes["error"] = error
                changes["failed_reason"] = error
            if attempts_made is not None:
                changes["attempts_made"] = attempts_made
            return changes

        return self._update(self._latest_record_id(job_id), mutate)

    def append_log(self, job_id: str, message: str, level: LogLevel = "info") -> QueueJob:
        if not message:
            raise ValueError("message is required")
        entry = self._log(message, level)
        return self._update(
            self._latest_record_id(job_id),
            lambda record: {"logs": [*record.logs, entry]},
        )

    def heartbeat(self, job_id: str) -> QueueJob:
        """Stamp the liveness heartbeat of the latest record."""
        return self.refresh_heartbeat(self._latest_record_id(job_id))

    def refresh_heartbeat(self, record_id: str) -> QueueJob:
        now = self._utc_now()
        return self._update(
            record_id, lambda record: {"last_heartbeat": now, "updated_at": now}
        )

    def move_to_dlq(self, job_id: str, reason: str) -> QueueJob:
        """Park the latest record of a job in the dead letter queue."""
        if not reason:
            raise ValueError("reason is required")
        return self.move_record_to_dlq(self._latest_record_id(job_id), reason)

    def move_record_to_dlq(self, record_id: str, reason: str) -> QueueJob:
        now = self._utc_now()
        entry = self._log(f"Moved to dead letter queue: {reason}", "error")
        return self._update(
            record_id,
            lambda record: {
                "moved_to_dlq": True,
                "status": QueueJobStatus.FAILED,
                "failed_reason": reason,
                "finished_at": record.finished_at or now,
                "logs": [*record.logs, entry],
            },
        )

    def mark_recovered(self, record_id: str, max_recovery_attempts: int) -> QueueJob | None:
        """Mark a stalled record recovered and bump its recovery count.

        Returns None if the record is no longer in flight, for instance
        because another sweeper recovered it first.
        """
        claimed = []

        def mutate(record: QueueJob) -> dict[str, Any] | None:
            claimed.clear()
            if record.moved_to_dlq or record.status not in IN_FLIGHT_JOB_STATUSES:
                return None
            claimed.append(True)
            attempt = record.recovery_count + 1
            entry = self._log(
                "Job recovered after stall detection "
                f"(attempt {attempt}/{max_recovery_attempts})",
                "warn",
            )
            return {
                "status": QueueJobStatus.RECOVERED,
                "recovery_count": attempt,
                "logs": [*record.logs, entry],
            }

        updated = self._update(record_id, mutate)
        return updated if claimed else None

    def mark_abandoned(
        self,
        record_ids: list[str],
        message: str = "Skipped recovery: parent execution already terminal",
    ) -> int:
        """Close records that will never run. Returns the count."""
        entry = self._log(message)
        for record_id in record_ids:
            self._update(
                record_id,
                lambda record: {
                    "status": QueueJobStatus.COMPLETED,
                    "abandoned": True,
                    "logs": [*record.logs, entry],
                },
            )
        return len(record_ids)

    def reset_for_retry(self, record_id: str) -> QueueJob:
        """Take a record out of the DLQ so it can be dispatched again."""

        def mutate(record: QueueJob) -> dict[str, Any]:
            if not record.moved_to_dlq:
                raise DlqJobNotFoundError(record.job_id)
            return {
                "moved_to_dlq": False,
                "status": QueueJobStatus.PENDING,
                "recovery_count": 0,
                "logs": [*record.logs, self._log("Job retried from DLQ")],
            }

        return self._update(record_id, mutate)

    def _load_many(self, record_ids: list) -> list[QueueJob]:
        if not record_ids:
            return []
        keys = [self._record_key(_decode(record_id)) for record_id in record_ids]
        return [
            QueueJob.model_validate_json(data)
            for data in self._redis.mget(keys)
            if data is not None
        ]

    def _load_stale(self, older_than: datetime) -> list[QueueJob]:
        stale = []
        for record in self._load_many(list(self._redis.smembers(self._inflight_key))):
            if record.moved_to_dlq or record.status not in IN_FLIGHT_JOB_STATUSES:
                continue
            if record.updated_at >= older_than:
                continue
            if record.last_heartbeat is not None and record.last_heartbeat >= older_than:
                continue
            stale.append(record)
        return sorted(stale, key=lambda record: record.created_at)

    def find_stale(
        self, older_than: datetime, max_recovery_attempts: int
    ) -> tuple[list[QueueJob], list[QueueJob]]:
        """In-flight records idle since ``older_than``, oldest first.

        Returns the records that may still be recovered and, separately,
        those that already used up their recoveries.
        """
        recoverable: list[QueueJob] = []
        exhausted: list[QueueJob] = []
        for record in self._load_stale(older_than):
            if record.recovery_count < max_recovery_attempts:
                recoverable.append(record)
            else:
                exhausted.append(record)
        return recoverable, exhausted

    def find_by_execution(self, execution_id: str) -> list[QueueJob]:
        """All records of an execution, oldest first."""
        if not execution_id:
            raise ValueError("execution_id is required")
        return self._load_many(self._redis.zrange(self._execution_key(execution_id), 0, -1))

    def list_dlq(self, limit: int = 50, offset: int = 0) -> tuple[list[QueueJob], int]:
        """Dead-lettered records, newest first, with the total count."""
        if limit < 0:
            raise ValueError("limit must be non-negative")
        if offset < 0:
            raise ValueError("offset must be non-negative")
        total = self._redis.zcard(self._dlq_key)
        if limit == 0:
            return [], total
        ids = self._redis.zrevrange(self._dlq_key, offset, offset + limit - 1)
        return self._load_many(ids), total

    def stats(self) -> JobStats:
        records = self._load_many(self._redis.zrange(self._all_key, 0, -1))
        counts = {status: 0 for status in QueueJobStatus}
        for record in records:
            counts[record.status] += 1
        return JobStats(
            total=len(records),
            pending=counts[QueueJobStatus.PENDING],
            active=counts[QueueJobStatus.ACTIVE],
            completed=counts[QueueJobStatus.COMPLETED],
            failed=counts[QueueJobStatus.FAILED],
            recovered=counts[QueueJobStatus.RECOVERED],
            in_dlq=self._redis.zcard(self._dlq_key),
        )
