# Services package

from services.execution_service import ExecutionService, ExecutionNotResumableError
from services.execution_state import ExecutionStateManager
from services.job_recovery import JobRecoveryService
from services.job_store import DlqJobNotFoundError, QueueJobNotFoundError, RedisJobStore
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.queue_manager import QueueManager
from services.state_store import (
    ExecutionNotFoundError,
    ExecutionTerminalError,
    RedisStateStore,
)
from services.task_queue import QueueRegistry, RedisTaskQueue
from services.worker import Worker, WorkerError
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError

__all__ = [
    "DlqJobNotFoundError",
    "ExecutionNotFoundError",
    "ExecutionNotResumableError",
    "ExecutionService",
    "ExecutionStateManager",
    "ExecutionTerminalError",
    "JobRecoveryService",
    "QueueJobNotFoundError",
    "QueueManager",
    "QueueRegistry",
    "RedisJobStore",
    "RedisStateStore",
    "RedisTaskQueue",
    "RedisWorkflowStore",
    "SizeAndTimeRotatingHandler",
    "Worker",
    "WorkerError",
    "WorkflowNotFoundError",
    "configure_logging",
]
