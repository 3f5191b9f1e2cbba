"""FastAPI REST API for the generation orchestrator."""

import json
import logging
import time
from collections.abc import Iterator

import redis
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from redis import Redis

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
from models.graph import GraphCycleError, WorkflowGraph
from models.node_types import UnknownNodeTypeError
from models.state import Execution, PredictionJob
from services.execution_service import ExecutionNotResumableError, ExecutionService
from services.job_recovery import JobRecoveryService
from services.job_store import DlqJobNotFoundError
from services.queue_manager import QueueManager
from services.state_store import (
    ExecutionNotFoundError,
    ExecutionTerminalError,
    PredictionJobNotFoundError,
    RedisStateStore,
)
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_STREAM_INTERVAL = 1.0


class OrchestratorAPI:
    """REST API for workflow executions and their queues."""

    def __init__(
        self,
        execution_service: ExecutionService,
        queue_manager: QueueManager,
        recovery_service: JobRecoveryService,
        workflow_store: RedisWorkflowStore,
        state_store: RedisStateStore,
        redis_client: Redis,
        stream_interval: float = DEFAULT_STREAM_INTERVAL,
    ):
        """Initialize API with dependencies."""
        if execution_service is None:
            raise ValueError("execution_service is required")
        if queue_manager is None:
            raise ValueError("queue_manager is required")
        if recovery_service is None:
            raise ValueError("recovery_service is required")
        if workflow_store is None:
            raise ValueError("workflow_store is required")
        if state_store is None:
            raise ValueError("state_store is required")
        if redis_client is None:
            raise ValueError("redis_client is required")

        self._executions = execution_service
        self._queue_manager = queue_manager
        self._recovery = recovery_service
        self._workflow_store = workflow_store
        self._state_store = state_store
        self._redis = redis_client
        self._stream_interval = stream_interval

    def _stream_snapshots(self, execution_id: str) -> Iterator[str]:
        """Emit a server-sent event each time the execution changes, until it ends."""
        last = None
        while True:
            try:
                snapshot = self._executions.get_snapshot(execution_id)
            except ExecutionNotFoundError:
                yield "event: error\ndata: " + json.dumps({"detail": "Execution not found"}) + "\n\n"
                return

            payload = snapshot.model_dump_json()
            if payload != last:
                yield f"data: {payload}\n\n"
                last = payload
            if snapshot.status.is_terminal:
                yield "event: end\ndata: " + json.dumps({"status": snapshot.status.value}) + "\n\n"
                return
            time.sleep(self._stream_interval)

    def create_app(self) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Orchestrator API",
            description="REST API for generation workflow executions",
            version="1.0.0",
        )

        @app.put(
            "/workflows/{workflow_id}",
            response_model=WorkflowSaveResponse,
            responses={400: {"model": ErrorResponse}},
        )
        def save_workflow(workflow_id: str, request: WorkflowSaveRequest) -> WorkflowSaveResponse:
            """Create or replace a workflow graph."""
            try:
                graph = WorkflowGraph(nodes=request.nodes, edges=request.edges)
                graph.validate_node_types()
                graph.topological_order()
            except (ValidationError, UnknownNodeTypeError, GraphCycleError) as e:
                raise HTTPException(status_code=400, detail=f"Invalid workflow: {e}")

            self._workflow_store.save_graph(workflow_id, graph)
            return WorkflowSaveResponse(
                workflow_id=workflow_id,
                node_count=len(graph.nodes),
                edge_count=len(graph.edges),
            )

        @app.post(
            "/workflows/{workflow_id}/execute",
            response_model=Execution,
            responses={404: {"model": ErrorResponse}},
        )
        def execute_workflow(workflow_id: str, request: ExecuteRequest | None = None) -> Execution:
            """Start a full execution of a workflow."""
            debug_mode = request.debug_mode if request else False
            try:
                return self._executions.start_execution(workflow_id, debug_mode)
            except WorkflowNotFoundError:
                raise HTTPException(status_code=404, detail="Workflow not found")

        @app.post(
            "/workflows/{workflow_id}/execute-partial",
            response_model=Execution,
            responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        )
        def execute_partial(workflow_id: str, request: PartialExecuteRequest) -> Execution:
            """Run only the selected nodes of a workflow."""
            try:
                return self._executions.start_partial_execution(
                    workflow_id, request.node_ids, request.debug_mode
                )
            except WorkflowNotFoundError:
                raise HTTPException(status_code=404, detail="Workflow not found")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @app.get("/workflows/{workflow_id}/executions", response_model=ExecutionListResponse)
        def list_executions(
            workflow_id: str, limit: int = Query(default=50, ge=1, le=500)
        ) -> ExecutionListResponse:
            """List a workflow's executions, newest first."""
            return ExecutionListResponse(
                workflow_id=workflow_id,
                executions=self._executions.list_executions(workflow_id, limit),
            )

        @app.get(
            "/executions/{execution_id}",
            response_model=Execution,
            responses={404: {"model": ErrorResponse}},
        )
        def get_execution(execution_id: str) -> Execution:
            try:
                return self._executions.get_execution(execution_id)
            except ExecutionNotFoundError:
                raise HTTPException(status_code=404, detail="Execution not found")

        @app.get(
            "/executions/{execution_id}/stream",
            responses={404: {"model": ErrorResponse}},
        )
        def stream_execution(execution_id: str) -> StreamingResponse:
            """Server-sent events with execution snapshots until it finishes."""
            if self._state_store.find_execution(execution_id) is None:
                raise HTTPException(status_code=404, detail="Execution not found")
            return StreamingResponse(
                self._stream_snapshots(execution_id),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache"},
            )

        @app.post(
            "/executions/{execution_id}/stop",
            response_model=Execution,
            responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        )
        def stop_execution(execution_id: str) -> Execution:
            """Cancel a running execution."""
            try:
                return self._executions.stop_execution(execution_id)
            except ExecutionNotFoundError:
                raise HTTPException(status_code=404, detail="Execution not found")
            except ExecutionTerminalError as e:
                raise HTTPException(status_code=409, detail=str(e))

        @app.post(
            "/executions/{execution_id}/resume",
            response_model=Execution,
            responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        )
        def resume_execution(execution_id: str) -> Execution:
            """Start a new execution from the completed results of a failed one."""
            try:
                return self._executions.resume_execution(execution_id)
            except ExecutionNotFoundError:
                raise HTTPException(status_code=404, detail="Execution not found")
            except ExecutionNotResumableError as e:
                raise HTTPException(status_code=409, detail=str(e))

        @app.post(
            "/executions/{execution_id}/recover",
            response_model=RecoverResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def recover_execution(execution_id: str) -> RecoverResponse:
            """Re-dispatch the unfinished jobs of one execution."""
            try:
                recovered = self._recovery.recover_execution(execution_id)
            except ExecutionNotFoundError:
                raise HTTPException(status_code=404, detail="Execution not found")
            return RecoverResponse(execution_id=execution_id, recovered=recovered)

        @app.get(
            "/executions/{execution_id}/jobs",
            response_model=PredictionJobListResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_prediction_jobs(execution_id: str) -> PredictionJobListResponse:
            """Provider predictions started by an execution."""
            if self._state_store.find_execution(execution_id) is None:
                raise HTTPException(status_code=404, detail="Execution not found")
            return PredictionJobListResponse(
                execution_id=execution_id,
                jobs=self._state_store.list_prediction_jobs(execution_id),
            )

        @app.get(
            "/executions/{execution_id}/queue-jobs",
            response_model=QueueJobListResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def get_queue_jobs(execution_id: str) -> QueueJobListResponse:
            """Durable queue job records of an execution."""
            if self._state_store.find_execution(execution_id) is None:
                raise HTTPException(status_code=404, detail="Execution not found")
            return QueueJobListResponse(
                execution_id=execution_id,
                jobs=self._queue_manager.get_execution_jobs(execution_id),
            )

        @app.get(
            "/jobs/{prediction_id}",
            response_model=PredictionJob,
            responses={404: {"model": ErrorResponse}},
        )
        def get_prediction_job(prediction_id: str) -> PredictionJob:
            try:
                return self._state_store.get_prediction_job(prediction_id)
            except PredictionJobNotFoundError:
                raise HTTPException(status_code=404, detail="Job not found")

        @app.get("/queue/stats", response_model=QueueStatsResponse)
        def queue_stats() -> QueueStatsResponse:
            return QueueStatsResponse(
                jobs=self._recovery.get_job_stats(),
                queues=self._queue_manager.get_queue_metrics(),
            )

        @app.get("/queue/metrics", response_model=QueueMetricsResponse)
        def queue_metrics() -> QueueMetricsResponse:
            return QueueMetricsResponse(queues=self._queue_manager.get_queue_metrics())

        @app.get("/queue/dlq", response_model=DlqListResponse)
        def list_dlq(
            limit: int = Query(default=50, ge=1, le=500),
            offset: int = Query(default=0, ge=0),
        ) -> DlqListResponse:
            """Dead-lettered jobs, newest first."""
            jobs, total = self._recovery.get_dlq_jobs(limit, offset)
            return DlqListResponse(jobs=jobs, total=total, limit=limit, offset=offset)

        @app.post(
            "/queue/dlq/{job_id}/retry",
            response_model=DlqRetryResponse,
            responses={404: {"model": ErrorResponse}},
        )
        def retry_dlq_job(job_id: str) -> DlqRetryResponse:
            """Send a dead-lettered job back to its queue."""
            try:
                new_job_id = self._recovery.retry_from_dlq(job_id)
            except DlqJobNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return DlqRetryResponse(job_id=job_id, new_job_id=new_job_id)

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            try:
                self._redis.ping()
            except redis.RedisError as e:
                logger.warning(f"Health check failed: {e}")
                return HealthResponse(status="degraded", redis="unreachable")
            return HealthResponse(
                status="ok",
                details={"queues": self._queue_manager.registry.names()},
            )

        return app
