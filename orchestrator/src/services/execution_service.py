"""Starting, stopping and resuming executions."""

import logging

from pydantic import BaseModel

from models.jobs import QueueJob
from models.state import (
    CostSummary,
    Execution,
    ExecutionStatus,
    NodeResult,
    NodeResultStatus,
    PendingNode,
)
from services.provider_client import PredictionProvider, ProviderError
from services.queue_manager import QueueManager
from services.state_store import ExecutionTerminalError, RedisStateStore
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = frozenset({ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})
ACTIVE_PREDICTION_STATUSES = frozenset({"starting", "processing"})


class ExecutionNotResumableError(Exception):
    """Raised when resuming an execution that did not fail or get cancelled."""

    def __init__(self, execution_id: str, status: ExecutionStatus):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Execution {execution_id} is {status.value}; only failed or "
            "cancelled executions can be resumed"
        )


class ExecutionSnapshot(BaseModel):
    """Point-in-time view of an execution for status streaming."""

    id: str
    workflow_id: str
    status: ExecutionStatus
    node_results: list[NodeResult]
    pending_nodes: list[PendingNode]
    cost_summary: CostSummary
    error: str | None = None
    jobs: list[QueueJob] = []


class ExecutionService:
    """Entry point for everything a user can do to an execution."""

    def __init__(
        self,
        state_store: RedisStateStore,
        workflow_store: RedisWorkflowStore,
        queue_manager: QueueManager,
        provider: PredictionProvider | None = None,
    ):
        if state_store is None:
            raise ValueError("state_store is required")
        if workflow_store is None:
            raise ValueError("workflow_store is required")
        if queue_manager is None:
            raise ValueError("queue_manager is required")
        self._state_store = state_store
        self._workflow_store = workflow_store
        self._queue_manager = queue_manager
        self._provider = provider

    def start_execution(self, workflow_id: str, debug_mode: bool = False) -> Execution:
        """Create a pending execution and enqueue its root job."""
        if not self._workflow_store.exists(workflow_id):
            raise WorkflowNotFoundError(workflow_id)

        execution = self._state_store.create_execution(workflow_id, debug_mode=debug_mode)
        self._queue_manager.enqueue_workflow(execution.id, workflow_id, debug_mode=debug_mode)
        logger.info(f"Started execution {execution.id} of workflow {workflow_id}")
        return self._state_store.get_execution(execution.id)

    def start_partial_execution(
        self,
        workflow_id: str,
        node_ids: list[str],
        debug_mode: bool = False,
    ) -> Execution:
        """Run only the selected nodes of a workflow."""
        if not node_ids:
            raise ValueError("node_ids is required")

        graph = self._workflow_store.get_graph(workflow_id)
        unknown = [node_id for node_id in node_ids if graph.node(node_id) is None]
        if unknown:
            raise ValueError(f"Unknown node ids: {', '.join(unknown)}")

        execution = self._state_store.create_execution(
            workflow_id, debug_mode=debug_mode, selected_node_ids=list(node_ids)
        )
        self._queue_manager.enqueue_workflow(
            execution.id,
            workflow_id,
            debug_mode=debug_mode,
            selected_node_ids=list(node_ids),
        )
        logger.info(
            f"Started partial execution {execution.id} of workflow {workflow_id} "
            f"({len(node_ids)} node(s))"
        )
        return self._state_store.get_execution(execution.id)

    def stop_execution(self, execution_id: str) -> Execution:
        """Cancel an execution and its in-flight predictions and children.

        Results recorded so far are kept. Raises ExecutionTerminalError if
        the execution already finished.
        """
        execution = self._state_store.update_execution_status(
            execution_id, ExecutionStatus.CANCELLED
        )
        self._cancel_predictions(execution_id)

        for child_id in execution.child_execution_ids:
            try:
                self.stop_execution(child_id)
            except ExecutionTerminalError:
                continue

        logger.info(f"Stopped execution {execution_id}")
        return execution

    def _cancel_predictions(self, execution_id: str) -> None:
        for job in self._state_store.list_prediction_jobs(execution_id):
            if job.status not in ACTIVE_PREDICTION_STATUSES:
                continue
            if self._provider is not None:
                try:
                    self._provider.cancel(job.prediction_id)
                except ProviderError as e:
                    logger.warning(f"Failed to cancel prediction {job.prediction_id}: {e}")
            self._state_store.update_prediction_job(job.prediction_id, status="canceled")

    def resume_execution(self, execution_id: str) -> Execution:
        """Start a new execution that reuses the completed results of this one."""
        source = self._state_store.get_execution(execution_id)
        if source.status not in RESUMABLE_STATUSES:
            raise ExecutionNotResumableError(execution_id, source.status)

        completed = [
            result
            for result in source.node_results
            if result.status == NodeResultStatus.COMPLETE
        ]
        execution = self._state_store.create_execution(
            source.workflow_id,
            debug_mode=source.debug_mode,
            selected_node_ids=source.selected_node_ids,
            resumed_from=source.id,
            node_results=completed,
        )
        self._queue_manager.enqueue_workflow(
            execution.id,
            source.workflow_id,
            debug_mode=source.debug_mode,
            selected_node_ids=source.selected_node_ids,
        )
        logger.info(
            f"Resumed execution {source.id} as {execution.id} "
            f"({len(completed)} node(s) reused)"
        )
        return self._state_store.get_execution(execution.id)

    def get_execution(self, execution_id: str) -> Execution:
        return self._state_store.get_execution(execution_id)

    def list_executions(self, workflow_id: str, limit: int = 50) -> list[Execution]:
        return self._state_store.list_executions(workflow_id, limit)

    def get_snapshot(self, execution_id: str, include_jobs: bool = True) -> ExecutionSnapshot:
        execution = self._state_store.get_execution(execution_id)
        jobs = self._queue_manager.get_execution_jobs(execution_id) if include_jobs else []
        return ExecutionSnapshot(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            node_results=execution.node_results,
            pending_nodes=execution.pending_nodes,
            cost_summary=execution.cost_summary,
            error=execution.error,
            jobs=jobs,
        )
