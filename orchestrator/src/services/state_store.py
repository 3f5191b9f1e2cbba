"""Redis-based state store for executions, node results and prediction jobs."""

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from redis import Redis

from models.state import (
    CostSummary,
    Execution,
    ExecutionStatus,
    NodeResult,
    NodeResultStatus,
    PendingNode,
    PredictionJob,
)


class ExecutionNotFoundError(Exception):
    """Raised when execution is not found."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ExecutionTerminalError(Exception):
    """Raised when a finished execution would be moved to another status."""

    def __init__(self, execution_id: str, status: ExecutionStatus):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution {execution_id} is already {status.value}")


class PredictionJobNotFoundError(Exception):
    """Raised when prediction job is not found."""

    def __init__(self, prediction_id: str):
        self.prediction_id = prediction_id
        super().__init__(f"Prediction job not found: {prediction_id}")


def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisStateStore:
    """Manages execution documents in Redis.

    Every mutation of an execution is a read-modify-write inside a
    WATCH/MULTI transaction, so concurrent workers updating different node
    results of the same execution never lose each other's writes.
    """

    def __init__(self, redis_client: Redis):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    def _execution_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}"

    def _workflow_executions_key(self, workflow_id: str) -> str:
        return f"workflow:{workflow_id}:executions"

    def _prediction_key(self, prediction_id: str) -> str:
        return f"prediction_job:{prediction_id}"

    def _execution_predictions_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:predictions"

    def _node_prediction_key(self, execution_id: str) -> str:
        return f"execution:{execution_id}:node_predictions"

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Executions

    def create_execution(
        self,
        workflow_id: str,
        debug_mode: bool = False,
        selected_node_ids: list[str] | None = None,
        resumed_from: str | None = None,
        parent_execution_id: str | None = None,
        parent_node_id: str | None = None,
        depth: int = 0,
        node_results: list[NodeResult] | None = None,
    ) -> Execution:
        """Create a new execution in pending state."""
        if not workflow_id:
            raise ValueError("workflow_id is required")
        if depth < 0:
            raise ValueError("depth must be non-negative")

        now = self._utc_now()
        execution = Execution(
            id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            status=ExecutionStatus.PENDING,
            node_results=node_results or [],
            debug_mode=debug_mode,
            selected_node_ids=selected_node_ids,
            resumed_from=resumed_from,
            parent_execution_id=parent_execution_id,
            parent_node_id=parent_node_id,
            depth=depth,
            created_at=now,
            updated_at=now,
        )

        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._execution_key(execution.id), execution.model_dump_json())
        pipe.zadd(
            self._workflow_executions_key(workflow_id), {execution.id: now.timestamp()}
        )
        pipe.execute()
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        """Get execution by ID."""
        execution = self.find_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def find_execution(self, execution_id: str) -> Execution | None:
        if not execution_id:
            raise ValueError("execution_id is required")
        data = self._redis.get(self._execution_key(execution_id))
        if data is None:
            return None
        return Execution.model_validate_json(data)

    def list_executions(self, workflow_id: str, limit: int = 50) -> list[Execution]:
        """Executions of a workflow, newest first."""
        if not workflow_id:
            raise ValueError("workflow_id is required")
        if limit <= 0:
            return []
        ids = self._redis.zrevrange(self._workflow_executions_key(workflow_id), 0, limit - 1)
        if not ids:
            return []
        keys = [self._execution_key(_decode(execution_id)) for execution_id in ids]
        return [
            Execution.model_validate_json(data)
            for data in self._redis.mget(keys)
            if data is not None
        ]

    def _update_execution(
        self,
        execution_id: str,
        mutate: Callable[[Execution], dict[str, Any] | None],
    ) -> Execution:
        """Apply ``mutate`` atomically. It returns the changed fields or None."""
        if not execution_id:
            raise ValueError("execution_id is required")
        key = self._execution_key(execution_id)

        def txn(pipe) -> Execution:
            data = pipe.get(key)
            if data is None:
                raise ExecutionNotFoundError(execution_id)
            execution = Execution.model_validate_json(data)
            changes = mutate(execution)
            if changes is None:
                return execution
            updated = execution.model_copy(
                update={**changes, "updated_at": self._utc_now()}
            )
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            return updated

        return self._redis.transaction(txn, key, value_from_callable=True)

    def _status_changes(
        self, execution: Execution, status: ExecutionStatus, error: str | None
    ) -> dict[str, Any]:
        now = self._utc_now()
        changes: dict[str, Any] = {"status": status}
        if error is not None:
            changes["error"] = error
        if status == ExecutionStatus.RUNNING and execution.started_at is None:
            changes["started_at"] = now
        if status.is_terminal:
            changes["completed_at"] = now
        return changes

    def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
    ) -> Execution:
        """Update execution status.

        Raises ExecutionTerminalError when the execution already finished
        with a different status.
        """

        def mutate(execution: Execution) -> dict[str, Any] | None:
            if execution.status.is_terminal:
                if execution.status == status:
                    return None
                raise ExecutionTerminalError(execution_id, execution.status)
            if execution.status == status and error is None:
                return None
            return self._status_changes(execution, status, error)

        return self._update_execution(execution_id, mutate)

    def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
    ) -> bool:
        """Move a running execution to a terminal status, at most once.

        Returns True if this call performed the transition.
        """
        if not status.is_terminal:
            raise ValueError(f"status must be terminal: {status.value}")
        finalized = []

        def mutate(execution: Execution) -> dict[str, Any] | None:
            finalized.clear()
            if execution.status.is_terminal:
                return None
            finalized.append(True)
            return self._status_changes(execution, status, error)

        self._update_execution(execution_id, mutate)
        return bool(finalized)

    # Node results

    def upsert_node_result(
        self,
        execution_id: str,
        node_id: str,
        status: NodeResultStatus,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        cost: float | None = None,
    ) -> NodeResult:
        """Replace the node's result, or append it if the node has none yet.

        Raises ExecutionTerminalError when the execution already finished.
        """
        if not node_id:
            raise ValueError("node_id is required")
        holder: list[NodeResult] = []

        def mutate(execution: Execution) -> dict[str, Any]:
            holder.clear()
            if execution.status.is_terminal:
                raise ExecutionTerminalError(execution_id, execution.status)
            now = self._utc_now()
            existing = execution.result_for(node_id)
            started_at = existing.started_at if existing else None
            if status == NodeResultStatus.PROCESSING and started_at is None:
                started_at = now
            result = NodeResult(
                node_id=node_id,
                status=status,
                output=output,
                error=error,
                cost=cost if cost is not None else 0,
                started_at=started_at,
                completed_at=(
                    now
                    if status in (NodeResultStatus.COMPLETE, NodeResultStatus.ERROR)
                    else None
                ),
            )
            holder.append(result)
            if existing is None:
                return {"node_results": [*execution.node_results, result]}
            return {
                "node_results": [
                    result if r.node_id == node_id else r for r in execution.node_results
                ]
            }

        self._update_execution(execution_id, mutate)
        return holder[0]

    # Pending frontier

    def set_pending_nodes(self, execution_id: str, pending_nodes: list[PendingNode]) -> Execution:
        def mutate(execution: Execution) -> dict[str, Any]:
            if execution.status.is_terminal:
                raise ExecutionTerminalError(execution_id, execution.status)
            return {"pending_nodes": list(pending_nodes)}

        return self._update_execution(execution_id, mutate)

    def remove_pending_node(self, execution_id: str, node_id: str) -> bool:
        """Drop a node from the frontier. False if it was not pending."""
        if not node_id:
            raise ValueError("node_id is required")
        removed = []

        def mutate(execution: Execution) -> dict[str, Any] | None:
            removed.clear()
            if execution.status.is_terminal:
                return None
            remaining = [p for p in execution.pending_nodes if p.node_id != node_id]
            if len(remaining) == len(execution.pending_nodes):
                return None
            removed.append(node_id)
            return {"pending_nodes": remaining}

        self._update_execution(execution_id, mutate)
        return bool(removed)

    def block_pending_nodes(
        self,
        execution_id: str,
        node_ids: list[str],
        message: str = "Skipped: dependency failed",
    ) -> list[str]:
        """Mark pending nodes as errored and remove them from the frontier.

        Both changes land in one write. Returns the ids actually blocked.
        """
        blocked: list[str] = []

        def mutate(execution: Execution) -> dict[str, Any] | None:
            blocked.clear()
            if execution.status.is_terminal:
                return None
            targets = set(node_ids)
            now = self._utc_now()
            results = list(execution.node_results)
            remaining = []
            for pending in execution.pending_nodes:
                if pending.node_id not in targets:
                    remaining.append(pending)
                    continue
                blocked.append(pending.node_id)
                result = NodeResult(
                    node_id=pending.node_id,
                    status=NodeResultStatus.ERROR,
                    error=message,
                    completed_at=now,
                )
                index = next(
                    (i for i, r in enumerate(results) if r.node_id == pending.node_id),
                    None,
                )
                if index is None:
                    results.append(result)
                else:
                    results[index] = result
            if not blocked:
                return None
            return {"node_results": results, "pending_nodes": remaining}

        self._update_execution(execution_id, mutate)
        return list(blocked)

    # Composition

    def add_child_execution(self, execution_id: str, child_execution_id: str) -> Execution:
        if not child_execution_id:
            raise ValueError("child_execution_id is required")

        def mutate(execution: Execution) -> dict[str, Any] | None:
            if child_execution_id in execution.child_execution_ids:
                return None
            return {"child_execution_ids": [*execution.child_execution_ids, child_execution_id]}

        return self._update_execution(execution_id, mutate)

    # Costs

    def set_estimated_cost(self, execution_id: str, estimated: float) -> Execution:
        if estimated < 0:
            raise ValueError("estimated must be non-negative")

        def mutate(execution: Execution) -> dict[str, Any]:
            summary = _cost_summary(estimated, execution.cost_summary.actual)
            return {"cost_summary": summary}

        return self._update_execution(execution_id, mutate)

    def update_execution_cost(self, execution_id: str) -> CostSummary:
        """Roll node result costs up into the execution's cost summary."""

        def mutate(execution: Execution) -> dict[str, Any]:
            actual = sum(result.cost for result in execution.node_results)
            summary = _cost_summary(execution.cost_summary.estimated, actual)
            return {"total_cost": actual, "cost_summary": summary}

        return self._update_execution(execution_id, mutate).cost_summary

    # Prediction jobs

    def create_prediction_job(
        self, execution_id: str, node_id: str, prediction_id: str
    ) -> PredictionJob:
        """Record a prediction submitted for a node."""
        if not execution_id:
            raise ValueError("execution_id is required")
        if not node_id:
            raise ValueError("node_id is required")
        if not prediction_id:
            raise ValueError("prediction_id is required")

        now = self._utc_now()
        job = PredictionJob(
            prediction_id=prediction_id,
            execution_id=execution_id,
            node_id=node_id,
            created_at=now,
            updated_at=now,
        )
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._prediction_key(prediction_id), job.model_dump_json())
        pipe.zadd(
            self._execution_predictions_key(execution_id), {prediction_id: now.timestamp()}
        )
        pipe.hset(self._node_prediction_key(execution_id), node_id, prediction_id)
        pipe.execute()
        return job

    def get_prediction_job(self, prediction_id: str) -> PredictionJob:
        if not prediction_id:
            raise ValueError("prediction_id is required")
        data = self._redis.get(self._prediction_key(prediction_id))
        if data is None:
            raise PredictionJobNotFoundError(prediction_id)
        return PredictionJob.model_validate_json(data)

    def find_prediction_job(self, execution_id: str, node_id: str) -> PredictionJob | None:
        """Latest prediction job of a node, or None."""
        if not execution_id:
            raise ValueError("execution_id is required")
        if not node_id:
            raise ValueError("node_id is required")
        prediction_id = self._redis.hget(self._node_prediction_key(execution_id), node_id)
        if prediction_id is None:
            return None
        return self.get_prediction_job(_decode(prediction_id))

    def update_prediction_job(self, prediction_id: str, **changes: Any) -> PredictionJob:
        key = self._prediction_key(prediction_id)

        def txn(pipe) -> PredictionJob:
            data = pipe.get(key)
            if data is None:
                raise PredictionJobNotFoundError(prediction_id)
            job = PredictionJob.model_validate_json(data)
            updated = job.model_copy(update={**changes, "updated_at": self._utc_now()})
            pipe.multi()
            pipe.set(key, updated.model_dump_json())
            return updated

        return self._redis.transaction(txn, key, value_from_callable=True)

    def list_prediction_jobs(self, execution_id: str) -> list[PredictionJob]:
        if not execution_id:
            raise ValueError("execution_id is required")
        ids = self._redis.zrange(self._execution_predictions_key(execution_id), 0, -1)
        if not ids:
            return []
        keys = [self._prediction_key(_decode(prediction_id)) for prediction_id in ids]
        return [
            PredictionJob.model_validate_json(data)
            for data in self._redis.mget(keys)
            if data is not None
        ]


def _cost_summary(estimated: float, actual: float) -> CostSummary:
    variance = (actual - estimated) / estimated * 100 if estimated > 0 else 0
    return CostSummary(estimated=estimated, actual=actual, variance=round(variance, 2))
