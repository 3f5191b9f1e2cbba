"""Worker that runs claimed queue jobs against executions."""

import logging
from typing import Any

from models.graph import GraphCycleError
from models.jobs import ROOT_NODE_ID, NodeJobData, QueueJobStatus, WorkflowJobData
from models.node_types import NodeType, UnknownNodeTypeError, is_passthrough
from models.queues import JobType, QueuedJob
from models.state import ExecutionStatus, NodeResultStatus, PendingNode
from services.log_service import job_context
from services.node_executors import ExecutorNotFoundError, NodeContext, NodeExecutorRegistry
from services.prediction_poller import CancellationToken
from services.queue_manager import NO_READY_NODES_ERROR, QueueManager
from services.state_store import ExecutionNotFoundError, ExecutionTerminalError, RedisStateStore
from services.task_queue import RedisTaskQueue
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Raised when worker encounters an error."""

    pass


class NodeExecutionError(WorkerError):
    """Raised when an executor reports a failed node."""

    pass


class UnresolvableFrontierError(WorkerError):
    """Raised when pending nodes exist but none can ever become ready."""

    pass


# Failures that will not go away by running the job again.
NON_RETRYABLE_ERRORS = (
    ExecutionNotFoundError,
    ExecutorNotFoundError,
    GraphCycleError,
    UnknownNodeTypeError,
    UnresolvableFrontierError,
    WorkflowNotFoundError,
)


class Worker:
    """Processes one claimed job at a time.

    ``process`` is the job boundary: whatever happens inside, the job ends
    up completed, scheduled for retry, or failed (and dead-lettered), and no
    exception escapes.
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        state_store: RedisStateStore,
        workflow_store: RedisWorkflowStore,
        executors: NodeExecutorRegistry,
    ):
        """Initialize worker with dependencies."""
        if queue_manager is None:
            raise ValueError("queue_manager is required")
        if state_store is None:
            raise ValueError("state_store is required")
        if workflow_store is None:
            raise ValueError("workflow_store is required")
        if executors is None:
            raise ValueError("executors is required")

        self._queue_manager = queue_manager
        self._state_store = state_store
        self._workflow_store = workflow_store
        self._executors = executors

    def process(self, queue: RedisTaskQueue, job: QueuedJob) -> bool:
        """Run a claimed job. Returns True if it completed successfully."""
        execution_id = job.data.get("execution_id", "-")
        node_id = job.data.get("node_id", ROOT_NODE_ID)

        with job_context(execution_id, node_id):
            try:
                self._queue_manager.update_job_status(
                    job.id, QueueJobStatus.ACTIVE, attempts_made=job.attempts_made
                )
                if job.name == JobType.EXECUTE_WORKFLOW.value:
                    result = self._run_workflow(job)
                else:
                    result = self._run_node(queue, job)
            except ExecutionTerminalError as e:
                # Stopped or finished while this job ran; its result is dropped.
                logger.info(f"Job {job.id} skipped: {e}")
                result = {"skipped": True}
            except NON_RETRYABLE_ERRORS as e:
                self._handle_failure(queue, job, str(e), retryable=False)
                return False
            except Exception as e:
                logger.exception(f"Job {job.id} failed")
                self._handle_failure(queue, job, str(e) or type(e).__name__)
                return False

            try:
                queue.complete(job.id, result)
                self._queue_manager.update_job_status(
                    job.id, QueueJobStatus.COMPLETED, result=result
                )
            except Exception as e:
                logger.error(f"Failed to record completion of job {job.id}: {e}")

            if job.name != JobType.EXECUTE_WORKFLOW.value and not result.get("skipped"):
                self._continue(execution_id, job.data["workflow_id"])
            return True

    def _run_workflow(self, job: QueuedJob) -> dict[str, Any]:
        """Build the frontier of an execution and dispatch its first node."""
        data = WorkflowJobData.model_validate(job.data)
        execution = self._state_store.get_execution(data.execution_id)
        if execution.status.is_terminal:
            logger.info(f"Execution {execution.id} already {execution.status.value}")
            return {"skipped": True}

        self._state_store.update_execution_status(execution.id, ExecutionStatus.RUNNING)
        graph = self._workflow_store.get_graph(data.workflow_id)
        graph.validate_node_types()
        order = graph.topological_order()
        deps = graph.dependency_map()

        selected = set(data.selected_node_ids) if data.selected_node_ids else None
        known = {result.node_id for result in execution.node_results}
        completed = {
            result.node_id
            for result in execution.node_results
            if result.status == NodeResultStatus.COMPLETE
        }

        pending: list[PendingNode] = []
        for node_id in order:
            node = graph.node(node_id)
            if is_passthrough(node.type):
                if node_id not in completed:
                    self._state_store.upsert_node_result(
                        execution.id, node_id, NodeResultStatus.COMPLETE, output={}
                    )
                    completed.add(node_id)
                continue
            # Results already present come from a resume, a seeded child
            # execution or an earlier run of this root job.
            if node_id in known:
                continue
            if selected is not None and node_id not in selected:
                continue

            depends_on = [
                dep
                for dep in deps[node_id]
                if selected is None
                or dep in selected
                or dep in completed
                or is_passthrough(graph.node(dep).type)
            ]
            pending.append(
                PendingNode(
                    node_id=node_id,
                    node_type=node.type,
                    node_data=node.data,
                    depends_on=depends_on,
                )
            )

        self._state_store.set_pending_nodes(execution.id, pending)
        logger.info(f"Execution {execution.id}: {len(pending)} node(s) to run")

        if pending and not any(all(d in completed for d in p.depends_on) for p in pending):
            in_flight = any(
                r.status in (NodeResultStatus.PENDING, NodeResultStatus.PROCESSING)
                for r in execution.node_results
            )
            if not in_flight:
                raise UnresolvableFrontierError(NO_READY_NODES_ERROR)

        self._queue_manager.continue_execution(execution.id, data.workflow_id, graph)
        return {"pendingNodes": len(pending)}

    def _run_node(self, queue: RedisTaskQueue, job: QueuedJob) -> dict[str, Any]:
        data = NodeJobData.model_validate(job.data)
        execution = self._state_store.get_execution(data.execution_id)
        if execution.status.is_terminal:
            logger.info(
                f"Skipping node {data.node_id}: execution {execution.status.value}"
            )
            return {"skipped": True}

        node_type = NodeType.parse(data.node_type)
        executor = self._executors.get(node_type)

        self._state_store.upsert_node_result(
            data.execution_id, data.node_id, NodeResultStatus.PROCESSING
        )
        context = NodeContext(
            execution_id=data.execution_id,
            workflow_id=data.workflow_id,
            node_id=data.node_id,
            node_type=node_type,
            node_data=data.node_data,
            debug_mode=data.debug_mode,
            heartbeat=lambda: self._queue_manager.heartbeat_job(queue.name, job.id),
            report_progress=lambda progress: queue.update_progress(job.id, progress),
            log=lambda message, level="info": self._queue_manager.add_job_log(
                job.id, message, level
            ),
            cancel_token=CancellationToken(
                checker=lambda: self._is_cancelled(data.execution_id)
            ),
        )

        context.log(f"Running {node_type.value} node")
        outcome = executor.execute(context)
        if not outcome.success:
            raise NodeExecutionError(outcome.error or "Node execution failed")

        self._state_store.upsert_node_result(
            data.execution_id,
            data.node_id,
            NodeResultStatus.COMPLETE,
            output=outcome.output,
            cost=outcome.cost,
        )
        return outcome.output or {}

    def _is_cancelled(self, execution_id: str) -> bool:
        execution = self._state_store.find_execution(execution_id)
        return execution is None or execution.status == ExecutionStatus.CANCELLED

    def _continue(self, execution_id: str, workflow_id: str) -> None:
        try:
            self._queue_manager.continue_execution(execution_id, workflow_id)
        except Exception as e:
            logger.error(f"Failed to continue execution {execution_id}: {e}")

    def _handle_failure(
        self,
        queue: RedisTaskQueue,
        job: QueuedJob,
        error: str,
        retryable: bool = True,
    ) -> None:
        """Retry the job, or fail it for good and let the execution move on."""
        execution_id = job.data.get("execution_id")
        workflow_id = job.data.get("workflow_id")
        node_id = job.data.get("node_id")
        is_root = job.name == JobType.EXECUTE_WORKFLOW.value

        try:
            execution = self._state_store.find_execution(execution_id) if execution_id else None
            terminal = execution is None or execution.status.is_terminal
            will_retry = queue.fail(job.id, error, retry=retryable and not terminal)

            if will_retry:
                self._queue_manager.update_job_status(
                    job.id,
                    QueueJobStatus.PENDING,
                    error=error,
                    attempts_made=job.attempts_made + 1,
                )
                self._queue_manager.add_job_log(
                    job.id, f"Attempt {job.attempts_made + 1} failed, retrying: {error}", "warn"
                )
                if node_id and not terminal:
                    self._state_store.upsert_node_result(
                        execution_id, node_id, NodeResultStatus.PENDING, error=error
                    )
                return

            self._queue_manager.update_job_status(
                job.id,
                QueueJobStatus.FAILED,
                error=error,
                attempts_made=job.attempts_made + 1,
            )
            if terminal:
                return

            self._queue_manager.move_to_dead_letter_queue(job.id, error)
            if is_root:
                self._state_store.finalize_execution(
                    execution_id, ExecutionStatus.FAILED, error
                )
                return

            self._state_store.upsert_node_result(
                execution_id, node_id, NodeResultStatus.ERROR, error=error
            )
            self._continue(execution_id, workflow_id)
        except ExecutionTerminalError as e:
            logger.info(f"Not recording failure of job {job.id}: {e}")
        except Exception as e:
            logger.error(f"Failed to record failure of job {job.id}: {e}")
