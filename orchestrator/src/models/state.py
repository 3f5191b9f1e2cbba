"""State models for executions, node results and prediction jobs."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class NodeResultStatus(str, Enum):
    """Per-node result status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class NodeResult(BaseModel):
    """Outcome of one node within an execution."""

    node_id: str
    status: NodeResultStatus
    output: dict[str, Any] | None = None
    error: str | None = None
    cost: float = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PendingNode(BaseModel):
    """A node still waiting to be dispatched."""

    node_id: str
    node_type: str
    node_data: dict[str, Any] = {}
    depends_on: list[str] = []


class CostSummary(BaseModel):
    estimated: float = 0
    actual: float = 0
    variance: float = 0


class Execution(BaseModel):
    """Persistent state of one run of a workflow."""

    id: str
    workflow_id: str
    status: ExecutionStatus
    node_results: list[NodeResult] = []
    pending_nodes: list[PendingNode] = []
    total_cost: float = 0
    cost_summary: CostSummary = CostSummary()
    error: str | None = None
    debug_mode: bool = False
    selected_node_ids: list[str] | None = None
    resumed_from: str | None = None
    parent_execution_id: str | None = None
    parent_node_id: str | None = None
    depth: int = 0
    child_execution_ids: list[str] = []
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def result_for(self, node_id: str) -> NodeResult | None:
        for result in self.node_results:
            if result.node_id == node_id:
                return result
        return None


class PredictionJob(BaseModel):
    """Bookkeeping for one prediction submitted to an external provider."""

    prediction_id: str
    execution_id: str
    node_id: str
    status: str = "starting"
    progress: int = 0
    output: dict[str, Any] | None = None
    error: str | None = None
    cost: float = 0
    predict_time: float | None = None
    created_at: datetime
    updated_at: datetime
