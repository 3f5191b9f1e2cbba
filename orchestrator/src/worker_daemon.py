"""Worker daemon that continuously claims jobs from every queue."""

import logging
import signal
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor

import redis

from config import OrchestratorSettings
from models.queues import QueuedJob
from services.bootstrap import Services, build_services
from services.log_service import configure_logging
from services.task_queue import RedisTaskQueue

logger = logging.getLogger("worker_daemon")


class WorkerDaemon:
    """Daemon that claims queued jobs and runs them on a thread pool.

    Each queue gets at most ``queue.concurrency`` jobs in flight from this
    process. Locks of in-flight jobs are extended on every loop so that a
    slow but alive job is never reported as stalled.
    """

    def __init__(
        self,
        services: Services,
        poll_interval: float = 1.0,
        run_recovery: bool = True,
    ):
        if services is None:
            raise ValueError("services is required")

        self.services = services
        self.poll_interval = poll_interval
        self.run_recovery = run_recovery
        self.running = True

        self._in_flight: dict[str, dict[str, Future]] = {
            queue.name: {} for queue in services.registry
        }
        self._pool = ThreadPoolExecutor(
            max_workers=sum(queue.concurrency for queue in services.registry),
            thread_name_prefix="worker",
        )

    def _reap(self) -> None:
        """Drop finished futures and keep the locks of running ones alive."""
        for queue in self.services.registry:
            running = self._in_flight[queue.name]
            for job_id, future in list(running.items()):
                if future.done():
                    del running[job_id]
                    exc = future.exception()
                    if exc is not None:
                        logger.error(f"Job {job_id} crashed: {exc}")
                else:
                    queue.extend_lock(job_id)

    def _submit(self, queue: RedisTaskQueue, job: QueuedJob) -> None:
        future = self._pool.submit(self.services.worker.process, queue, job)
        self._in_flight[queue.name][job.id] = future

    def poll_once(self) -> int:
        """Claim as many jobs as there are free slots. Returns the number claimed."""
        self._reap()
        claimed = 0
        for queue in self.services.registry:
            if not self.running:
                break
            while len(self._in_flight[queue.name]) < queue.concurrency:
                job = queue.claim()
                if job is None:
                    break
                logger.info(f"Claimed {job.name} job {job.id} from {queue.name}")
                self._submit(queue, job)
                claimed += 1
        return claimed

    def run(self) -> None:
        """Main daemon loop."""
        logger.info("Worker daemon started, polling for jobs...")
        if self.run_recovery:
            self.services.recovery.start()

        try:
            while self.running:
                try:
                    # Only sleep if no jobs were claimed
                    if not self.poll_once():
                        time.sleep(self.poll_interval)
                except Exception as e:
                    logger.error(f"Error in daemon loop: {e}")
                    time.sleep(self.poll_interval)
        finally:
            if self.run_recovery:
                self.services.recovery.stop()
            self._pool.shutdown(wait=True)

        logger.info("Worker daemon stopped")

    def stop(self) -> None:
        """Signal daemon to stop."""
        self.running = False


def main() -> int:
    settings = OrchestratorSettings.from_env()

    # Configure logging with file rotation
    configure_logging(
        log_dir=settings.log_dir,
        log_file="worker_daemon.log",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    logger.info(f"Connecting to Redis at {settings.redis_url}")
    redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)

    # Test connection
    try:
        redis_client.ping()
        logger.info("Redis connection established")
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        return 1

    services = build_services(redis_client, settings)
    if not settings.provider_base_url:
        logger.warning("PROVIDER_BASE_URL not set, generation nodes only run in debug mode")

    daemon = WorkerDaemon(services, settings.worker_poll_interval)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        daemon.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    daemon.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
