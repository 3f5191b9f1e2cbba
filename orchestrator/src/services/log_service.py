"""Logging configuration for the orchestrator."""

import contextvars
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(job_context)s%(message)s"

_job_context: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "job_context", default=None
)


@contextmanager
def job_context(execution_id: str, node_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with the job's ids."""
    token = _job_context.set((execution_id, node_id))
    try:
        yield
    finally:
        _job_context.reset(token)


class JobContextFilter(logging.Filter):
    """Adds execution_id, node_id and a job_context prefix to log records."""

    def filter(self, record):
        context = _job_context.get()
        if context is None:
            record.execution_id = "-"
            record.node_id = "-"
            record.job_context = ""
        else:
            record.execution_id, record.node_id = context
            record.job_context = f"[{context[0]}/{context[1]}] "
        return True


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Log handler that rotates logs by both size and time."""

    def __init__(self, filename, max_bytes, backup_count=0, **kwargs):
        """Initialize handler with size and time-based rotation."""
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def shouldRollover(self, record):
        """Determine if rollover should occur (by time or file size)."""
        if int(time.time()) >= self.rolloverAt:
            return 1

        if self.stream and self.max_bytes > 0:
            self.stream.seek(0, os.SEEK_END)
            if self.stream.tell() >= self.max_bytes:
                return 1

        return 0

    def doRollover(self):
        super().doRollover()
        self.rolloverAt = self.computeRollover(int(time.time()))


def configure_logging(
    log_dir: str = "logs",
    log_file: str = "orchestrator.log",
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5 MB
    backup_count: int = 7,
    console: bool = True,
) -> logging.Logger:
    """Configure root logger with console and rotating file handlers.

    Records logged while a job_context() is active carry the execution and
    node ids of that job.

    Args:
        log_dir: Directory for log files.
        log_file: Log file name.
        level: Logging level.
        max_bytes: Max file size before rotation.
        backup_count: Number of backup files to keep.
        console: Whether to also log to console.

    Returns:
        Configured root logger.
    """
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)
    context_filter = JobContextFilter()

    file_handler = SizeAndTimeRotatingHandler(
        filename=os.path.join(log_dir, log_file),
        when="midnight",
        interval=1,
        max_bytes=max_bytes,
        backup_count=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(context_filter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(context_filter)
        logger.addHandler(console_handler)

    return logger
