"""Input resolution, readiness and completion decisions for executions."""

import logging
from typing import Any

from models.graph import WorkflowGraph, WorkflowNode
from models.node_types import (
    PASSTHROUGH_FALLBACK_FIELDS,
    PASSTHROUGH_OUTPUT_FIELDS,
    NodeType,
    is_passthrough,
)
from models.state import (
    Execution,
    ExecutionStatus,
    NodeResult,
    NodeResultStatus,
    PendingNode,
    PredictionJob,
)
from services.state_store import RedisStateStore

logger = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Skipped: dependency failed"

# Target handle -> candidate data fields, most specific first.
TARGET_FIELD_ALIASES: dict[str, list[str]] = {
    "prompt": ["inputPrompt", "prompt", "inputText", "text"],
    "text": ["inputText", "text", "inputPrompt"],
    "tweet": ["inputTweet"],
    "image": ["inputImage", "image"],
    "images": ["inputImages", "images", "referenceImages"],
    "video": ["inputVideo", "video"],
    "videos": ["inputVideos", "videos"],
    "audio": ["inputAudio", "audio"],
    "lastFrame": ["lastFrame"],
    "media": ["inputMedia", "media", "inputImage", "inputVideo"],
    "input": ["inputPrompt", "inputText", "inputImage", "inputVideo", "inputAudio", "input"],
}

# Handles that accept many inbound edges.
MULTI_VALUE_HANDLES = frozenset({"images", "videos"})

IN_FLIGHT_RESULT_STATUSES = frozenset(
    {NodeResultStatus.PENDING, NodeResultStatus.PROCESSING}
)


def _non_empty(value: Any) -> bool:
    return value is not None and value != "" and value != []


class ExecutionStateManager:
    """Reads and advances the shared state of executions."""

    def __init__(self, state_store: RedisStateStore):
        if state_store is None:
            raise ValueError("state_store is required")
        self._store = state_store

    def resolve_node_inputs(
        self,
        execution_id: str,
        node_id: str,
        static_node_data: dict[str, Any],
        graph: WorkflowGraph,
    ) -> dict[str, Any]:
        """Merge upstream outputs into a copy of the node's static data.

        Edges are applied in declaration order. List fields collect one value
        per inbound edge; every other field takes the value of the last edge
        that targets it.
        """
        if not node_id:
            raise ValueError("node_id is required")
        if graph is None:
            raise ValueError("graph is required")

        execution = self._store.get_execution(execution_id)
        resolved = dict(static_node_data or {})
        collected: set[str] = set()

        for edge in graph.incoming_edges(node_id):
            source = graph.node(edge.source)
            value = self._source_value(execution, source, edge.source_handle)
            if value is None:
                logger.warning(
                    f"Unresolved input for {execution_id}/{node_id}: "
                    f"no value from {edge.source} (handle {edge.source_handle})"
                )
                continue

            handle = edge.target_handle or "input"
            field = self._target_field(handle, resolved)
            current = resolved.get(field)

            if isinstance(current, list) or (current is None and handle in MULTI_VALUE_HANDLES):
                values = [] if field not in collected else list(current)
                collected.add(field)
                if isinstance(value, list):
                    values.extend(value)
                else:
                    values.append(value)
                resolved[field] = values
            else:
                resolved[field] = value

        return resolved

    def _source_value(
        self, execution: Execution, source: WorkflowNode, handle: str | None
    ) -> Any:
        if is_passthrough(source.type):
            fields = PASSTHROUGH_OUTPUT_FIELDS.get(NodeType.parse(source.type), {}).get(
                handle or "", []
            )
            for field in [*fields, *PASSTHROUGH_FALLBACK_FIELDS]:
                value = source.data.get(field)
                if _non_empty(value):
                    return value
            return None

        result = execution.result_for(source.id)
        if result is None or result.status != NodeResultStatus.COMPLETE:
            return None
        if not result.output:
            return None
        value = result.output.get(handle or "output")
        if value is None and handle is None:
            value = result.output.get("value")
        return value

    def _target_field(self, handle: str, node_data: dict[str, Any]) -> str:
        if handle in node_data:
            return handle
        candidates = TARGET_FIELD_ALIASES.get(handle)
        if not candidates:
            return handle
        for candidate in candidates:
            if candidate in node_data:
                return candidate
        return candidates[0]

    def get_ready_nodes(self, execution_id: str) -> list[PendingNode]:
        """Pending nodes whose dependencies have all completed, in frontier order."""
        execution = self._store.get_execution(execution_id)
        completed = {
            result.node_id
            for result in execution.node_results
            if result.status == NodeResultStatus.COMPLETE
        }
        return [
            pending
            for pending in execution.pending_nodes
            if all(dep in completed for dep in pending.depends_on)
        ]

    def check_execution_completion(self, execution_id: str) -> bool:
        """Block nodes behind failures and finalise the execution when done.

        Blocking repeats until nothing new is blocked, so a failure cascades
        through every node downstream of it. Returns True if the execution
        is terminal.
        """
        while True:
            execution = self._store.get_execution(execution_id)
            if execution.status.is_terminal:
                return True

            failed: set[str] = set()
            in_flight = False
            for result in execution.node_results:
                if result.status == NodeResultStatus.ERROR:
                    failed.add(result.node_id)
                elif result.status in IN_FLIGHT_RESULT_STATUSES:
                    in_flight = True

            blocked = [
                pending.node_id
                for pending in execution.pending_nodes
                if any(dep in failed for dep in pending.depends_on)
            ]
            if blocked:
                skipped = self._store.block_pending_nodes(
                    execution_id, blocked, BLOCKED_MESSAGE
                )
                if skipped:
                    logger.info(
                        f"Execution {execution_id}: skipped {', '.join(skipped)} "
                        "after upstream failure"
                    )
                continue

            if execution.pending_nodes or in_flight:
                return False

            if failed:
                status = ExecutionStatus.FAILED
                error = f"{len(failed)} node(s) failed: {', '.join(sorted(failed))}"
            else:
                status = ExecutionStatus.COMPLETED
                error = None

            if self._store.finalize_execution(execution_id, status, error):
                cost = self._store.update_execution_cost(execution_id)
                logger.info(
                    f"Execution {execution_id} {status.value} (cost {cost.actual:.4f})"
                )
            return True

    def find_existing_job(self, execution_id: str, node_id: str) -> PredictionJob | None:
        """Prediction already submitted for this node, if any."""
        return self._store.find_prediction_job(execution_id, node_id)

    def update_node_result(
        self,
        execution_id: str,
        node_id: str,
        status: NodeResultStatus,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        cost: float | None = None,
    ) -> NodeResult:
        return self._store.upsert_node_result(
            execution_id, node_id, status, output=output, error=error, cost=cost
        )
