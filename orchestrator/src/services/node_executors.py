"""Executors that carry out the work of a single node."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from models.node_types import NODE_OUTPUT_HANDLE, NODE_ROUTES, NodeType
from models.queues import QueueName
from models.state import ExecutionStatus, NodeResultStatus
from services.artifact_store import ArtifactStore, ArtifactStoreError
from services.prediction_poller import (
    POLL_CONFIGS,
    CancellationToken,
    PollConfig,
    PredictionPoller,
)
from services.provider_client import PredictionProvider, ProviderError
from services.queue_manager import QueueManager
from services.state_store import ExecutionTerminalError, RedisStateStore
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError

logger = logging.getLogger(__name__)

MAX_WORKFLOW_DEPTH = 10

# Data fields that describe the node rather than feed the model.
NON_INPUT_FIELDS = frozenset(
    {
        "model",
        "label",
        "status",
        "progress",
        "error",
        "jobId",
        "outputImage",
        "outputVideo",
        "outputAudio",
        "outputText",
    }
)


class ExecutorNotFoundError(Exception):
    """Raised when no executor handles a node type."""

    def __init__(self, node_type: NodeType):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type {node_type.value}")


class SubWorkflowError(Exception):
    """Raised when a referenced workflow cannot be started."""

    pass


@dataclass
class NodeContext:
    """Everything an executor may use while running one node."""

    execution_id: str
    workflow_id: str
    node_id: str
    node_type: NodeType
    node_data: dict[str, Any]
    debug_mode: bool = False
    heartbeat: Callable[[], None] = lambda: None
    report_progress: Callable[[int], None] = lambda progress: None
    log: Callable[[str, str], None] = lambda message, level="info": None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


class NodeOutcome(BaseModel):
    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    cost: float = 0


class NodeExecutor(Protocol):
    def execute(self, context: NodeContext) -> NodeOutcome: ...


def _prediction_input(node_data: dict[str, Any]) -> dict[str, Any]:
    """Provider input from node data: ``inputPrompt`` becomes ``prompt``."""
    result = {}
    for key, value in node_data.items():
        if key in NON_INPUT_FIELDS or value is None or value == "" or value == []:
            continue
        if key.startswith("input") and len(key) > len("input"):
            key = key[len("input")].lower() + key[len("input") + 1 :]
        result[key] = value
    return result


def _normalise_output(raw: Any, handle: str) -> Any:
    if isinstance(raw, list):
        if handle == "text":
            return "".join(str(part) for part in raw)
        return raw[0] if raw else None
    if isinstance(raw, dict):
        return raw.get(handle) or raw.get("output") or raw
    return raw


def poll_config_for(node_type: NodeType) -> PollConfig:
    route = NODE_ROUTES.get(node_type)
    handle = NODE_OUTPUT_HANDLE.get(node_type)
    if route is None:
        return POLL_CONFIGS["image"]
    if route.queue == QueueName.VIDEO_GENERATION:
        return POLL_CONFIGS["video"]
    if route.queue == QueueName.PROCESSING:
        if handle in ("video", "audio"):
            return POLL_CONFIGS["processing_video"]
        return POLL_CONFIGS["processing_image"]
    return POLL_CONFIGS["image"]


class PredictionExecutor:
    """Runs a node as a prediction on the external provider.

    A node that already submitted a prediction (for example before a worker
    crash) resumes polling that prediction instead of paying for a new one.
    """

    def __init__(
        self,
        provider: PredictionProvider | None,
        state_store: RedisStateStore,
        poller: PredictionPoller | None = None,
        artifact_store: ArtifactStore | None = None,
        poll_config: PollConfig | None = None,
        default_model: str | None = None,
    ):
        if state_store is None:
            raise ValueError("state_store is required")
        self._provider = provider
        self._state_store = state_store
        self._poller = poller or (PredictionPoller(provider) if provider else None)
        self._artifact_store = artifact_store
        self._poll_config = poll_config
        self._default_model = default_model

    def execute(self, context: NodeContext) -> NodeOutcome:
        handle = NODE_OUTPUT_HANDLE.get(context.node_type, "output")

        if context.debug_mode:
            context.log("Debug mode: returning mock output", "debug")
            return NodeOutcome(
                success=True,
                output={
                    handle: f"debug://{context.node_type.value}/{context.node_id}",
                    "debug": True,
                },
            )

        if self._provider is None:
            return NodeOutcome(success=False, error="No prediction provider configured")

        existing = self._state_store.find_prediction_job(
            context.execution_id, context.node_id
        )
        if existing is not None and existing.status == "succeeded" and existing.output:
            context.log(f"Reusing finished prediction {existing.prediction_id}")
            return NodeOutcome(success=True, output=existing.output, cost=existing.cost)

        if existing is not None and existing.status not in ("failed", "canceled"):
            prediction_id = existing.prediction_id
            context.log(f"Resuming poll of prediction {prediction_id}")
        else:
            model = context.node_data.get("model") or self._default_model
            if not model:
                return NodeOutcome(
                    success=False, error=f"No model configured for node {context.node_id}"
                )
            try:
                prediction = self._provider.create_prediction(
                    model, _prediction_input(context.node_data)
                )
            except ProviderError as e:
                return NodeOutcome(success=False, error=f"Prediction request failed: {e}")
            prediction_id = prediction.id
            self._state_store.create_prediction_job(
                context.execution_id, context.node_id, prediction_id
            )
            context.log(f"Created prediction {prediction_id} on model {model}")

        config = self._poll_config or poll_config_for(context.node_type)
        try:
            result = self._poller.poll_for_completion(
                prediction_id,
                config,
                on_progress=context.report_progress,
                on_heartbeat=context.heartbeat,
                cancel_token=context.cancel_token,
            )
        except ProviderError as e:
            result = None
            error = f"Polling failed: {e}"
        else:
            error = result.error

        if result is None or not result.success:
            self._state_store.update_prediction_job(
                prediction_id, status="failed", error=error
            )
            return NodeOutcome(success=False, error=error)

        value = _normalise_output(result.output, handle)
        output: dict[str, Any] = {handle: value}
        if self._artifact_store is not None and isinstance(value, str):
            try:
                saved = self._artifact_store.save(
                    context.workflow_id, context.node_id, value
                )
                output["localPath"] = saved.path
            except ArtifactStoreError as e:
                logger.error(
                    f"CRITICAL: Failed to save output locally for "
                    f"{context.execution_id}/{context.node_id}: {e}"
                )
                output["saveError"] = str(e)

        cost = result.cost or 0
        self._state_store.update_prediction_job(
            prediction_id,
            status="succeeded",
            progress=100,
            output=output,
            cost=cost,
            predict_time=result.predict_time,
        )
        return NodeOutcome(success=True, output=output, cost=cost)


class CollectorExecutor:
    """Gathers the node's inputs as its output; used by sink nodes."""

    def execute(self, context: NodeContext) -> NodeOutcome:
        inputs = {
            key: value
            for key, value in context.node_data.items()
            if key.startswith("input") and value not in (None, "", [])
        }
        value = next(iter(inputs.values()), None)
        if value is None:
            value = context.node_data.get("defaultValue")
        return NodeOutcome(success=True, output={"value": value, "inputs": inputs})


class SubWorkflowExecutor:
    """Runs another workflow as a child execution and maps its outputs."""

    def __init__(
        self,
        state_store: RedisStateStore,
        workflow_store: RedisWorkflowStore,
        queue_manager: QueueManager,
        poll_config: PollConfig | None = None,
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
        self._poll_config = poll_config or POLL_CONFIGS["workflow"]

    def execute(self, context: NodeContext) -> NodeOutcome:
        try:
            child_id = self._start_child(context)
        except (SubWorkflowError, WorkflowNotFoundError) as e:
            return NodeOutcome(success=False, error=str(e))
        return self._wait_for_child(context, child_id)

    def _start_child(self, context: NodeContext) -> str:
        parent = self._state_store.get_execution(context.execution_id)

        # A retried node keeps waiting on the child it already started.
        for child_id in parent.child_execution_ids:
            child = self._state_store.find_execution(child_id)
            if (
                child is not None
                and child.parent_node_id == context.node_id
                and not child.status.is_terminal
            ):
                context.log(f"Resuming wait on child execution {child_id}")
                return child_id

        if parent.depth + 1 > MAX_WORKFLOW_DEPTH:
            raise SubWorkflowError(
                f"Maximum workflow nesting depth ({MAX_WORKFLOW_DEPTH}) exceeded"
            )

        workflow_id = context.node_data.get("referencedWorkflowId") or context.node_data.get(
            "workflowId"
        )
        if not workflow_id:
            raise SubWorkflowError(f"Node {context.node_id} references no workflow")
        graph = self._workflow_store.get_graph(workflow_id)

        mappings = context.node_data.get("inputMappings") or {}
        seeded = []
        for node in graph.nodes:
            if node.type != NodeType.WORKFLOW_INPUT.value:
                continue
            name = node.data.get("inputName") or node.id
            value = mappings.get(name)
            if value is None:
                if node.data.get("required"):
                    raise SubWorkflowError(f"Missing required input: {name}")
                continue
            seeded.append((node.id, value))

        child = self._state_store.create_execution(
            workflow_id,
            debug_mode=parent.debug_mode,
            parent_execution_id=parent.id,
            parent_node_id=context.node_id,
            depth=parent.depth + 1,
        )
        self._state_store.add_child_execution(parent.id, child.id)
        for node_id, value in seeded:
            self._state_store.upsert_node_result(
                child.id, node_id, NodeResultStatus.COMPLETE, output={"value": value}
            )

        self._queue_manager.enqueue_workflow(child.id, workflow_id, debug_mode=parent.debug_mode)
        context.log(f"Started child execution {child.id} of workflow {workflow_id}")
        return child.id

    def _wait_for_child(self, context: NodeContext, child_id: str) -> NodeOutcome:
        config = self._poll_config
        interval = config.poll_interval
        span = config.progress_end - config.progress_start

        for attempt in range(config.max_attempts):
            child = self._state_store.get_execution(child_id)
            if child.status.is_terminal:
                return self._collect(child_id)

            context.heartbeat()
            context.report_progress(
                config.progress_start + span * (attempt + 1) // config.max_attempts
            )
            if context.cancel_token.wait(interval):
                self._cancel_child(child_id)
                return NodeOutcome(success=False, error="Sub-workflow cancelled")

        return NodeOutcome(success=False, error="Sub-workflow timed out")

    def _cancel_child(self, child_id: str) -> None:
        try:
            self._state_store.update_execution_status(child_id, ExecutionStatus.CANCELLED)
        except ExecutionTerminalError as e:
            logger.info(f"Child execution not cancelled: {e}")

    def _collect(self, child_id: str) -> NodeOutcome:
        child = self._state_store.get_execution(child_id)
        if child.status != ExecutionStatus.COMPLETED:
            return NodeOutcome(
                success=False,
                error=f"Sub-workflow {child.status.value}: {child.error or 'no error recorded'}",
                cost=child.total_cost,
            )

        graph = self._workflow_store.get_graph(child.workflow_id)
        outputs: dict[str, Any] = {}
        for node in graph.nodes:
            if node.type != NodeType.WORKFLOW_OUTPUT.value:
                continue
            result = child.result_for(node.id)
            if result is None or result.status != NodeResultStatus.COMPLETE:
                continue
            name = node.data.get("outputName") or node.id
            outputs[name] = (result.output or {}).get("value")

        return NodeOutcome(
            success=True,
            output={**outputs, "outputMappings": outputs, "childExecutionId": child_id},
            cost=child.total_cost,
        )


class NodeExecutorRegistry:
    """Maps node types to the executor that runs them."""

    def __init__(self, executors: dict[NodeType, NodeExecutor] | None = None):
        self._executors: dict[NodeType, NodeExecutor] = dict(executors or {})

    def register(self, node_type: NodeType, executor: NodeExecutor) -> None:
        if executor is None:
            raise ValueError("executor is required")
        self._executors[NodeType.parse(node_type)] = executor

    def get(self, node_type: "str | NodeType") -> NodeExecutor:
        parsed = NodeType.parse(node_type)
        if parsed not in self._executors:
            raise ExecutorNotFoundError(parsed)
        return self._executors[parsed]

    def __contains__(self, node_type: NodeType) -> bool:
        return node_type in self._executors


PREDICTION_NODE_TYPES = (
    NodeType.IMAGE_GEN,
    NodeType.VIDEO_GEN,
    NodeType.LLM,
    NodeType.MOTION_CONTROL,
    NodeType.TWEET_REMIX,
    NodeType.LIP_SYNC,
    NodeType.VOICE_CHANGE,
    NodeType.TEXT_TO_SPEECH,
    NodeType.TRANSCRIBE,
    NodeType.REFRAME,
    NodeType.UPSCALE,
    NodeType.LUMA_REFRAME_IMAGE,
    NodeType.LUMA_REFRAME_VIDEO,
    NodeType.TOPAZ_IMAGE_UPSCALE,
    NodeType.TOPAZ_VIDEO_UPSCALE,
)

COLLECTOR_NODE_TYPES = (
    NodeType.OUTPUT,
    NodeType.PREVIEW,
    NodeType.WORKFLOW_INPUT,
    NodeType.WORKFLOW_OUTPUT,
)


def build_default_executors(
    provider: PredictionProvider | None,
    state_store: RedisStateStore,
    workflow_store: RedisWorkflowStore,
    queue_manager: QueueManager,
    artifact_store: ArtifactStore | None = None,
) -> NodeExecutorRegistry:
    """Registry with provider, sink and sub-workflow executors.

    Without a provider, generation nodes only run in debug mode.

    Local media operations (resize, stitching, subtitles and the like) have
    no bundled executor; register one per node type to enable them.
    """
    registry = NodeExecutorRegistry()
    prediction = PredictionExecutor(provider, state_store, artifact_store=artifact_store)
    for node_type in PREDICTION_NODE_TYPES:
        registry.register(node_type, prediction)
    collector = CollectorExecutor()
    for node_type in COLLECTOR_NODE_TYPES:
        registry.register(node_type, collector)
    registry.register(
        NodeType.WORKFLOW_REF,
        SubWorkflowExecutor(state_store, workflow_store, queue_manager),
    )
    return registry
