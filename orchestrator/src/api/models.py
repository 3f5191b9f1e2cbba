"""Request and response models for REST API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from models.graph import WorkflowEdge, WorkflowNode
from models.jobs import JobStats, QueueJob
from models.state import Execution, PredictionJob


class WorkflowSaveRequest(BaseModel):
    """Request to create or replace a workflow graph."""

    model_config = ConfigDict(extra="forbid")

    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge] = []

    @field_validator("nodes")
    @classmethod
    def nodes_not_empty(cls, v: list[WorkflowNode]) -> list[WorkflowNode]:
        if not v:
            raise ValueError("nodes is required")
        return v


class WorkflowSaveResponse(BaseModel):
    """Response from saving a workflow."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    node_count: int
    edge_count: int


class ExecuteRequest(BaseModel):
    """Request to start a full execution."""

    model_config = ConfigDict(extra="forbid")

    debug_mode: bool = False


class PartialExecuteRequest(BaseModel):
    """Request to run a subset of a workflow's nodes."""

    model_config = ConfigDict(extra="forbid")

    node_ids: list[str]
    debug_mode: bool = False

    @field_validator("node_ids")
    @classmethod
    def node_ids_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("node_ids is required")
        return v


class ExecutionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    executions: list[Execution]


class PredictionJobListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: str
    jobs: list[PredictionJob]


class QueueJobListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: str
    jobs: list[QueueJob]


class RecoverResponse(BaseModel):
    """Response from recovering the stalled jobs of one execution."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    recovered: int


class QueueStatsResponse(BaseModel):
    """Job record counts plus per-queue counts."""

    model_config = ConfigDict(frozen=True)

    jobs: JobStats
    queues: dict[str, dict[str, int]]


class QueueMetricsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    queues: dict[str, dict[str, int]]


class DlqListResponse(BaseModel):
    """Page of dead-lettered jobs, newest first."""

    model_config = ConfigDict(frozen=True)

    jobs: list[QueueJob]
    total: int
    limit: int
    offset: int


class DlqRetryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    new_job_id: str


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str
    redis: str = "ok"
    details: dict[str, Any] = {}
