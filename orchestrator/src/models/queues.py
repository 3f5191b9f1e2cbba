"""Queue names, job types, priorities and per-queue delivery options."""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class QueueName(str, Enum):
    """Named work queues."""

    WORKFLOW_ORCHESTRATOR = "workflow-orchestrator"
    IMAGE_GENERATION = "image-generation"
    VIDEO_GENERATION = "video-generation"
    LLM_GENERATION = "llm-generation"
    PROCESSING = "processing"


class JobType(str, Enum):
    """Job names used when adding work to a queue."""

    EXECUTE_WORKFLOW = "execute-workflow"
    EXECUTE_NODE = "execute-node"
    GENERATE_IMAGE = "generate-image"
    GENERATE_VIDEO = "generate-video"
    GENERATE_TEXT = "generate-text"
    REFRAME_IMAGE = "reframe-image"
    REFRAME_VIDEO = "reframe-video"
    UPSCALE_IMAGE = "upscale-image"
    UPSCALE_VIDEO = "upscale-video"


class JobPriority(IntEnum):
    """Dispatch priority. Lower values are served first."""

    CRITICAL = 1
    HIGH = 2
    NORMAL = 5
    LOW = 10


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class QueueOptions(BaseModel):
    """Retry policy applied to every job of a queue."""

    model_config = ConfigDict(frozen=True)

    attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    backoff_delay_ms: int = 2000
    keep_completed: int = 100
    keep_failed: int = 500

    def backoff_for(self, attempts_made: int) -> int:
        """Delay in milliseconds before retry number ``attempts_made``."""
        if self.backoff_type == BackoffType.FIXED:
            return self.backoff_delay_ms
        return self.backoff_delay_ms * (2 ** max(attempts_made - 1, 0))


DEFAULT_JOB_OPTIONS: dict[QueueName, QueueOptions] = {
    QueueName.WORKFLOW_ORCHESTRATOR: QueueOptions(
        attempts=3, backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=2000
    ),
    QueueName.IMAGE_GENERATION: QueueOptions(
        attempts=3, backoff_type=BackoffType.FIXED, backoff_delay_ms=1000
    ),
    QueueName.VIDEO_GENERATION: QueueOptions(
        attempts=3, backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=3000
    ),
    QueueName.LLM_GENERATION: QueueOptions(
        attempts=3, backoff_type=BackoffType.FIXED, backoff_delay_ms=500
    ),
    QueueName.PROCESSING: QueueOptions(
        attempts=3, backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=2000
    ),
}

QUEUE_CONCURRENCY: dict[QueueName, int] = {
    QueueName.WORKFLOW_ORCHESTRATOR: 10,
    QueueName.IMAGE_GENERATION: 5,
    QueueName.VIDEO_GENERATION: 2,
    QueueName.LLM_GENERATION: 10,
    QueueName.PROCESSING: 3,
}


class QueuedJobState(str, Enum):
    """State of a job inside a queue."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


PENDING_QUEUE_STATES = frozenset(
    {QueuedJobState.WAITING, QueuedJobState.DELAYED, QueuedJobState.ACTIVE}
)


class QueuedJob(BaseModel):
    """A unit of work as held by a queue."""

    id: str
    queue_name: str
    name: str
    data: dict[str, Any] = {}
    priority: int = JobPriority.NORMAL
    state: QueuedJobState = QueuedJobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    progress: int = 0
    return_value: dict[str, Any] | None = None
    failed_reason: str | None = None
    lock_token: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None
