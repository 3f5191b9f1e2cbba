"""Routes units of work to queues and advances executions node by node."""

import logging
from datetime import datetime, timezone
from typing import Any

from models.graph import WorkflowGraph
from models.jobs import (
    ROOT_NODE_ID,
    LogLevel,
    NodeJobData,
    QueueJob,
    QueueJobStatus,
    WorkflowJobData,
)
from models.node_types import NodeType, route_for
from models.queues import (
    PENDING_QUEUE_STATES,
    JobPriority,
    JobType,
    QueuedJobState,
    QueueName,
)
from models.state import ExecutionStatus, NodeResultStatus
from services.execution_state import IN_FLIGHT_RESULT_STATUSES, ExecutionStateManager
from services.job_store import RedisJobStore
from services.state_store import ExecutionTerminalError, RedisStateStore
from services.task_queue import QueueRegistry, RedisTaskQueue
from services.workflow_store import RedisWorkflowStore

logger = logging.getLogger(__name__)

NO_READY_NODES_ERROR = "No nodes ready to execute - possible circular dependency"


def workflow_job_id(execution_id: str) -> str:
    return f"workflow-{execution_id}"


def node_job_id(execution_id: str, node_id: str) -> str:
    return f"{execution_id}-{node_id}"


class QueueManager:
    """Dispatches workflow and node jobs and mirrors them in the job store."""

    def __init__(
        self,
        registry: QueueRegistry,
        job_store: RedisJobStore,
        state_store: RedisStateStore,
        state_manager: ExecutionStateManager,
        workflow_store: RedisWorkflowStore | None = None,
    ):
        if registry is None:
            raise ValueError("registry is required")
        if job_store is None:
            raise ValueError("job_store is required")
        if state_store is None:
            raise ValueError("state_store is required")
        if state_manager is None:
            raise ValueError("state_manager is required")

        self.registry = registry
        self._job_store = job_store
        self._state_store = state_store
        self._state_manager = state_manager
        self._workflow_store = workflow_store

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _dispatch(
        self,
        queue: RedisTaskQueue,
        job_type: JobType,
        job_id: str,
        priority: JobPriority,
        execution_id: str,
        node_id: str,
        payload: dict[str, Any],
        recovery_count: int,
    ) -> bool:
        """Record and add a job unless the queue already holds it."""
        existing = queue.get_job(job_id)
        if existing is not None and existing.state in PENDING_QUEUE_STATES:
            logger.debug(f"Job {job_id} already {existing.state.value} in {queue.name}")
            return False

        record = self._job_store.create(
            job_id, queue.name, execution_id, node_id, payload, recovery_count
        )
        if not queue.add(job_type.value, payload, job_id, priority):
            self._job_store.mark_abandoned(
                [record.id], "Duplicate dispatch: job already queued"
            )
            return False

        logger.info(f"Enqueued {job_type.value} job {job_id} on {queue.name}")
        return True

    def enqueue_workflow(
        self,
        execution_id: str,
        workflow_id: str,
        debug_mode: bool = False,
        selected_node_ids: list[str] | None = None,
        recovery_count: int = 0,
    ) -> str:
        """Enqueue the root job that builds an execution's frontier."""
        if not execution_id:
            raise ValueError("execution_id is required")
        if not workflow_id:
            raise ValueError("workflow_id is required")

        job_id = workflow_job_id(execution_id)
        payload = WorkflowJobData(
            execution_id=execution_id,
            workflow_id=workflow_id,
            debug_mode=debug_mode,
            selected_node_ids=selected_node_ids,
            timestamp=self._utc_now(),
        ).model_dump(mode="json")

        self._dispatch(
            self.registry.get(QueueName.WORKFLOW_ORCHESTRATOR),
            JobType.EXECUTE_WORKFLOW,
            job_id,
            JobPriority.HIGH,
            execution_id,
            ROOT_NODE_ID,
            payload,
            recovery_count,
        )
        return job_id

    def enqueue_node(
        self,
        execution_id: str,
        workflow_id: str,
        node_id: str,
        node_type: str,
        node_data: dict[str, Any],
        depends_on: list[str] | None = None,
        graph: WorkflowGraph | None = None,
        recovery_count: int = 0,
    ) -> str:
        """Route a node to its queue and enqueue it.

        When a graph is supplied the node's inputs are resolved from
        upstream results first. Raises UnknownNodeTypeError for node types
        outside the catalogue.
        """
        if not execution_id:
            raise ValueError("execution_id is required")
        if not workflow_id:
            raise ValueError("workflow_id is required")
        if not node_id:
            raise ValueError("node_id is required")

        route = route_for(node_type)
        if graph is not None:
            node_data = self._state_manager.resolve_node_inputs(
                execution_id, node_id, node_data, graph
            )

        execution = self._state_store.get_execution(execution_id)
        job_id = node_job_id(execution_id, node_id)
        payload = NodeJobData(
            execution_id=execution_id,
            workflow_id=workflow_id,
            node_id=node_id,
            node_type=NodeType.parse(node_type).value,
            node_data=node_data or {},
            depends_on=depends_on or [],
            debug_mode=execution.debug_mode,
            timestamp=self._utc_now(),
        ).model_dump(mode="json")

        self._state_store.upsert_node_result(
            execution_id, node_id, NodeResultStatus.PENDING
        )
        self._dispatch(
            self.registry.get(route.queue),
            route.job_type,
            job_id,
            route.priority,
            execution_id,
            node_id,
            payload,
            recovery_count,
        )

        if execution.status == ExecutionStatus.PENDING:
            try:
                self._state_store.update_execution_status(
                    execution_id, ExecutionStatus.RUNNING
                )
            except ExecutionTerminalError as e:
                logger.info(f"Not marking {execution_id} running: {e}")

        return job_id

    def update_job_status(
        self,
        job_id: str,
        status: QueueJobStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        attempts_made: int | None = None,
    ) -> QueueJob:
        return self._job_store.update_status(
            job_id, status, result=result, error=error, attempts_made=attempts_made
        )

    def add_job_log(self, job_id: str, message: str, level: LogLevel = "info") -> QueueJob:
        return self._job_store.append_log(job_id, message, level)

    def heartbeat_job(self, queue_name: str, job_id: str) -> None:
        """Prove liveness to both the job store and the queue's lock."""
        self._job_store.heartbeat(job_id)
        if not self.registry.get(queue_name).extend_lock(job_id):
            logger.warning(f"Lost queue lock for job {job_id} on {queue_name}")

    def move_to_dead_letter_queue(self, job_id: str, reason: str) -> QueueJob:
        record = self._job_store.move_to_dlq(job_id, reason)
        logger.error(f"Job {job_id} moved to dead letter queue: {reason}")
        return record

    def is_job_active(self, queue_name: str, job_id: str) -> bool:
        return self.registry.get(queue_name).is_active(job_id)

    def is_job_queued(self, queue_name: str, job_id: str) -> bool:
        """True if the job is waiting or delayed in its queue."""
        queued = self.registry.get(queue_name).get_job(job_id)
        return queued is not None and queued.state in (
            QueuedJobState.WAITING,
            QueuedJobState.DELAYED,
        )

    def release_stalled(self, queue_name: str, job_id: str) -> bool:
        """Free the queue slot of an active job whose holder died."""
        return self.registry.get(queue_name).release_if_stalled(job_id)

    def get_job_status(self, queue_name: str, job_id: str) -> str | None:
        """Queue state of a job, falling back to its durable record."""
        queued = self.registry.get(queue_name).get_job(job_id)
        if queued is not None:
            return queued.state.value
        record = self._job_store.get_by_job_id(job_id)
        return record.status.value if record else None

    def get_execution_jobs(self, execution_id: str) -> list[QueueJob]:
        return self._job_store.find_by_execution(execution_id)

    def get_queue_metrics(self) -> dict[str, dict[str, int]]:
        return {queue.name: queue.counts() for queue in self.registry}

    def continue_execution(
        self,
        execution_id: str,
        workflow_id: str,
        graph: WorkflowGraph | None = None,
    ) -> str | None:
        """Dispatch the next ready node, if the execution is not finished.

        Only the first ready node is dispatched; the rest follow as each
        node completes. Taking the node off the frontier happens before the
        dispatch so two concurrent continuations cannot both send it.
        Returns the dispatched job id, or None.
        """
        if self._state_manager.check_execution_completion(execution_id):
            return None

        ready = self._state_manager.get_ready_nodes(execution_id)
        if not ready:
            execution = self._state_store.get_execution(execution_id)
            if not any(r.status in IN_FLIGHT_RESULT_STATUSES for r in execution.node_results):
                logger.error(f"Execution {execution_id}: {NO_READY_NODES_ERROR}")
                self._state_store.finalize_execution(
                    execution_id, ExecutionStatus.FAILED, NO_READY_NODES_ERROR
                )
            return None

        node = ready[0]
        if not self._state_store.remove_pending_node(execution_id, node.node_id):
            return None

        try:
            if graph is None and self._workflow_store is not None:
                graph = self._workflow_store.get_graph(workflow_id)
            return self.enqueue_node(
                execution_id,
                workflow_id,
                node.node_id,
                node.node_type,
                node.node_data,
                node.depends_on,
                graph=graph,
            )
        except ExecutionTerminalError as e:
            logger.info(f"Not dispatching {node.node_id}: {e}")
            return None
        except Exception as e:
            logger.error(f"Failed to dispatch node {node.node_id} of {execution_id}: {e}")
            self._state_store.upsert_node_result(
                execution_id,
                node.node_id,
                NodeResultStatus.ERROR,
                error=f"Dispatch failed: {e}",
            )
            self._state_manager.check_execution_completion(execution_id)
            raise
