"""Queue job records and dispatch payloads."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, model_validator

ROOT_NODE_ID = "root"


class QueueJobStatus(str, Enum):
    """Lifecycle of a durable queue job record."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RECOVERED = "recovered"


IN_FLIGHT_JOB_STATUSES = frozenset({QueueJobStatus.PENDING, QueueJobStatus.ACTIVE})

LogLevel = Literal["info", "warn", "error", "debug"]


class JobLog(BaseModel):
    timestamp: datetime
    level: LogLevel = "info"
    message: str


class QueueJob(BaseModel):
    """Durable record of one dispatch of a unit of work."""

    id: str
    job_id: str
    queue_name: str
    execution_id: str
    node_id: str
    status: QueueJobStatus = QueueJobStatus.PENDING
    data: dict[str, Any] = {}
    result: dict[str, Any] | None = None
    error: str | None = None
    attempts_made: int = 0
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    failed_reason: str | None = None
    logs: list[JobLog] = []
    last_heartbeat: datetime | None = None
    recovery_count: int = 0
    moved_to_dlq: bool = False
    abandoned: bool = False
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def dlq_jobs_are_failed(self) -> "QueueJob":
        if self.moved_to_dlq and self.status != QueueJobStatus.FAILED:
            raise ValueError("jobs in the dead letter queue must have status failed")
        return self

    @property
    def is_root(self) -> bool:
        return self.node_id == ROOT_NODE_ID


class WorkflowJobData(BaseModel):
    """Payload of the root job that starts an execution."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    workflow_id: str
    debug_mode: bool = False
    selected_node_ids: list[str] | None = None
    timestamp: datetime


class NodeJobData(BaseModel):
    """Payload of a job that runs a single node."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    workflow_id: str
    node_id: str
    node_type: str
    node_data: dict[str, Any] = {}
    depends_on: list[str] = []
    debug_mode: bool = False
    timestamp: datetime


class JobStats(BaseModel):
    """Counts of durable job records by status."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    recovered: int = 0
    in_dlq: int = 0
