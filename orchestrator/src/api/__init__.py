# API package

from api.app import OrchestratorAPI
from api.models import (
    DlqListResponse,
    DlqRetryResponse,
    ErrorResponse,
    ExecuteRequest,
    ExecutionListResponse,
    HealthResponse,
    PartialExecuteRequest,
    PredictionJobListResponse,
    QueueJobListResponse,
    QueueMetricsResponse,
    QueueStatsResponse,
    RecoverResponse,
    WorkflowSaveRequest,
    WorkflowSaveResponse,
)

__all__ = [
    "DlqListResponse",
    "DlqRetryResponse",
    "ErrorResponse",
    "ExecuteRequest",
    "ExecutionListResponse",
    "HealthResponse",
    "OrchestratorAPI",
    "PartialExecuteRequest",
    "PredictionJobListResponse",
    "QueueJobListResponse",
    "QueueMetricsResponse",
    "QueueStatsResponse",
    "RecoverResponse",
    "WorkflowSaveRequest",
    "WorkflowSaveResponse",
]
