"""Detection and recovery of stalled jobs, and dead letter queue replay."""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from models.jobs import IN_FLIGHT_JOB_STATUSES, JobStats, NodeJobData, QueueJob, WorkflowJobData
from models.state import ExecutionStatus, NodeResultStatus
from services.job_store import DlqJobNotFoundError, RedisJobStore
from services.queue_manager import QueueManager
from services.state_store import ExecutionTerminalError, RedisStateStore

logger = logging.getLogger(__name__)

DEFAULT_STALL_THRESHOLD = timedelta(minutes=5)
DEFAULT_MAX_RECOVERY_ATTEMPTS = 3
DEFAULT_RECOVERY_INTERVAL = 300.0


class JobRecoveryService:
    """Finds jobs whose worker vanished and dispatches them again.

    A job is only re-dispatched when its execution is still running, the
    queue does not consider it live, and it has not exhausted its
    recoveries. Jobs past the ceiling are moved to the dead letter queue.
    """

    def __init__(
        self,
        job_store: RedisJobStore,
        queue_manager: QueueManager,
        state_store: RedisStateStore,
        stall_threshold: timedelta = DEFAULT_STALL_THRESHOLD,
        max_recovery_attempts: int = DEFAULT_MAX_RECOVERY_ATTEMPTS,
        recovery_interval: float = DEFAULT_RECOVERY_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ):
        if job_store is None:
            raise ValueError("job_store is required")
        if queue_manager is None:
            raise ValueError("queue_manager is required")
        if state_store is None:
            raise ValueError("state_store is required")
        if max_recovery_attempts <= 0:
            raise ValueError("max_recovery_attempts must be positive")
        if recovery_interval <= 0:
            raise ValueError("recovery_interval must be positive")

        self._job_store = job_store
        self._queue_manager = queue_manager
        self._state_store = state_store
        self.stall_threshold = stall_threshold
        self.max_recovery_attempts = max_recovery_attempts
        self.recovery_interval = recovery_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def recover_stalled_jobs(self) -> int:
        """Run one recovery pass. Returns the number of jobs re-dispatched."""
        cutoff = self._clock() - self.stall_threshold

        # Exhausted jobs go through the same guards and end up in the DLQ.
        recoverable, exhausted = self._job_store.find_stale(cutoff, self.max_recovery_attempts)
        stalled = [*recoverable, *exhausted]
        if not stalled:
            return 0
        logger.info(f"Found {len(stalled)} stalled job(s)")

        by_execution: dict[str, list[QueueJob]] = {}
        for record in stalled:
            by_execution.setdefault(record.execution_id, []).append(record)

        recovered = 0
        for execution_id, records in by_execution.items():
            execution = self._state_store.find_execution(execution_id)
            if execution is None or execution.status.is_terminal:
                abandoned = self._job_store.mark_abandoned([r.id for r in records])
                logger.info(
                    f"Abandoned {abandoned} job(s) of execution {execution_id}: "
                    f"{'missing' if execution is None else execution.status.value}"
                )
                continue

            for record in records:
                try:
                    if self.recover_job(record):
                        recovered += 1
                except Exception as e:
                    logger.error(f"Failed to recover job {record.job_id}: {e}")

        if recovered:
            logger.info(f"Recovered {recovered} stalled job(s)")
        return recovered

    def recover_job(self, record: QueueJob) -> bool:
        """Re-dispatch one stalled record. Returns True if it was re-dispatched."""
        latest = self._job_store.get_by_job_id(record.job_id)
        if latest is not None and latest.id != record.id:
            self._job_store.mark_abandoned([record.id], "Superseded by a newer dispatch")
            return False

        if self._queue_manager.is_job_active(record.queue_name, record.job_id):
            self._job_store.refresh_heartbeat(record.id)
            logger.info(f"Job {record.job_id} is still active, refreshed heartbeat")
            return False

        if self._queue_manager.is_job_queued(record.queue_name, record.job_id):
            self._job_store.refresh_heartbeat(record.id)
            logger.info(f"Job {record.job_id} is still queued, refreshed heartbeat")
            return False

        if record.recovery_count >= self.max_recovery_attempts:
            self._move_exhausted(record)
            return False

        updated = self._job_store.mark_recovered(record.id, self.max_recovery_attempts)
        if updated is None:
            logger.info(f"Job {record.job_id} was already handled by another sweep")
            return False
        self._queue_manager.release_stalled(record.queue_name, record.job_id)
        self._redispatch(updated, updated.recovery_count)
        logger.warning(
            f"Recovered job {record.job_id} "
            f"(attempt {updated.recovery_count}/{self.max_recovery_attempts})"
        )
        return True

    def _move_exhausted(self, record: QueueJob) -> None:
        """Dead-letter the record and fail the work it stood for."""
        reason = f"Exceeded max recovery attempts ({self.max_recovery_attempts})"
        self._job_store.move_record_to_dlq(record.id, reason)
        self._queue_manager.release_stalled(record.queue_name, record.job_id)
        logger.error(f"Job {record.job_id} exceeded max recovery attempts, moved to DLQ")

        try:
            if record.is_root:
                self._state_store.finalize_execution(
                    record.execution_id, ExecutionStatus.FAILED, reason
                )
                return
            self._state_store.upsert_node_result(
                record.execution_id, record.node_id, NodeResultStatus.ERROR, error=reason
            )
        except ExecutionTerminalError as e:
            logger.info(f"Not failing node of job {record.job_id}: {e}")
            return
        self._queue_manager.continue_execution(
            record.execution_id, record.data["workflow_id"]
        )

    def _redispatch(self, record: QueueJob, recovery_count: int) -> str:
        if record.is_root:
            data = WorkflowJobData.model_validate(record.data)
            return self._queue_manager.enqueue_workflow(
                data.execution_id,
                data.workflow_id,
                debug_mode=data.debug_mode,
                selected_node_ids=data.selected_node_ids,
                recovery_count=recovery_count,
            )

        data = NodeJobData.model_validate(record.data)
        return self._queue_manager.enqueue_node(
            data.execution_id,
            data.workflow_id,
            data.node_id,
            data.node_type,
            data.node_data,
            data.depends_on,
            recovery_count=recovery_count,
        )

    def recover_execution(self, execution_id: str) -> int:
        """Recover every unfinished job of one execution, regardless of age."""
        execution = self._state_store.get_execution(execution_id)
        records = [
            record
            for record in self._job_store.find_by_execution(execution_id)
            if record.status in IN_FLIGHT_JOB_STATUSES and not record.moved_to_dlq
        ]
        if execution.status.is_terminal:
            self._job_store.mark_abandoned([r.id for r in records])
            return 0

        recovered = 0
        for record in records:
            try:
                if self.recover_job(record):
                    recovered += 1
            except Exception as e:
                logger.error(f"Failed to recover job {record.job_id}: {e}")
        return recovered

    def retry_from_dlq(self, job_id: str) -> str:
        """Send a dead-lettered job back to its queue with a fresh recovery count."""
        record = self._job_store.get_by_job_id(job_id)
        if record is None or not record.moved_to_dlq:
            raise DlqJobNotFoundError(job_id)

        updated = self._job_store.reset_for_retry(record.id)
        self._queue_manager.release_stalled(record.queue_name, record.job_id)
        new_job_id = self._redispatch(updated, 0)
        logger.info(f"Job {job_id} retried from DLQ")
        return new_job_id

    def get_job_stats(self) -> JobStats:
        return self._job_store.stats()

    def get_dlq_jobs(self, limit: int = 50, offset: int = 0) -> tuple[list[QueueJob], int]:
        return self._job_store.list_dlq(limit, offset)

    def start(self) -> None:
        """Run a recovery pass now, then periodically in a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._run_pass()
        self._thread = threading.Thread(
            target=self._loop, name="job-recovery", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self.recovery_interval):
            self._run_pass()

    def _run_pass(self) -> None:
        try:
            self.recover_stalled_jobs()
        except Exception as e:
            logger.error(f"Stalled job recovery failed: {e}")
