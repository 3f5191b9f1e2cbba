"""Models package."""

from models.graph import GraphCycleError, WorkflowEdge, WorkflowGraph, WorkflowNode
from models.jobs import (
    JobStats,
    NodeJobData,
    QueueJob,
    QueueJobStatus,
    WorkflowJobData,
)
from models.node_types import NodeType, UnknownNodeTypeError, route_for
from models.queues import JobPriority, JobType, QueuedJob, QueueName
from models.state import (
    CostSummary,
    Execution,
    ExecutionStatus,
    NodeResult,
    NodeResultStatus,
    PendingNode,
    PredictionJob,
)

__all__ = [
    "CostSummary",
    "Execution",
    "ExecutionStatus",
    "GraphCycleError",
    "JobPriority",
    "JobStats",
    "JobType",
    "NodeJobData",
    "NodeResult",
    "NodeResultStatus",
    "NodeType",
    "PendingNode",
    "PredictionJob",
    "QueueJob",
    "QueueJobStatus",
    "QueueName",
    "QueuedJob",
    "UnknownNodeTypeError",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowJobData",
    "WorkflowNode",
    "route_for",
]
