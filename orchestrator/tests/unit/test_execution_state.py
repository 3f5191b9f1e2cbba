"""Unit tests for ExecutionStateManager."""

import fakeredis
import pytest

from models.graph import WorkflowEdge, WorkflowGraph, WorkflowNode
from models.state import ExecutionStatus, NodeResultStatus, PendingNode
from services.execution_state import BLOCKED_MESSAGE, ExecutionStateManager
from services.state_store import RedisStateStore


@pytest.fixture
def state_store():
    return RedisStateStore(fakeredis.FakeRedis(decode_responses=False))


@pytest.fixture
def manager(state_store):
    return ExecutionStateManager(state_store)


@pytest.fixture
def execution(state_store):
    return state_store.create_execution("wf-1")


def edge(source, target, source_handle=None, target_handle=None) -> WorkflowEdge:
    return WorkflowEdge(
        source=source, target=target, source_handle=source_handle, target_handle=target_handle
    )


def pending(node_id: str, depends_on: list[str] | None = None) -> PendingNode:
    return PendingNode(node_id=node_id, node_type="imageGen", depends_on=depends_on or [])


class TestResolveNodeInputs:
    """Tests for merging upstream outputs into node data."""

    def test_prompt_flows_into_image_then_video(self, manager, state_store, execution):
        graph = WorkflowGraph(
            nodes=[
                WorkflowNode(id="p", type="prompt", data={"prompt": "a sunset"}),
                WorkflowNode(id="img", type="imageGen", data={"model": "flux"}),
                WorkflowNode(id="vid", type="videoGen", data={"model": "kling"}),
            ],
            edges=[edge("p", "img", "text", "prompt"), edge("img", "vid", "image", "image")],
        )

        img_data = manager.resolve_node_inputs(execution.id, "img", {"model": "flux"}, graph)
        assert img_data == {"model": "flux", "inputPrompt": "a sunset"}

        state_store.upsert_node_result(
            execution.id, "img", NodeResultStatus.COMPLETE, output={"image": "https://cdn/x.png"}
        )
        vid_data = manager.resolve_node_inputs(execution.id, "vid", {"model": "kling"}, graph)
        assert vid_data == {"model": "kling", "inputImage": "https://cdn/x.png"}

    def test_existing_field_name_is_preferred(self, manager, execution):
        graph = WorkflowGraph(
            nodes=[
                WorkflowNode(id="p", type="prompt", data={"prompt": "hello"}),
                WorkflowNode(id="llm", type="llm", data={"text": ""}),
            ],
            edges=[edge("p", "llm", "text", "text")],
        )
        resolved = manager.resolve_node_inputs(execution.id, "llm", {"text": ""}, graph)
        assert resolved["text"] == "hello"

    def test_multi_value_handle_accumulates(self, manager, state_store, execution):
        graph = WorkflowGraph(
            nodes=[
                WorkflowNode(id="a", type="imageGen"),
                WorkflowNode(id="b", type="imageGen"),
                WorkflowNode(id="v", type="videoGen", data={"inputImages": ["stale"]}),
            ],
            edges=[edge("a", "v", "image", "images"), edge("b", "v", "image", "images")],
        )
        for node_id in ("a", "b"):
            state_store.upsert_node_result(
                execution.id, node_id, NodeResultStatus.COMPLETE, output={"image": node_id}
            )

        resolved = manager.resolve_node_inputs(
            execution.id, "v", {"inputImages": ["stale"]}, graph
        )
        assert resolved["inputImages"] == ["a", "b"]

    def test_static_data_is_not_mutated(self, manager, execution):
        graph = WorkflowGraph(
            nodes=[
                WorkflowNode(id="p", type="prompt", data={"prompt": "x"}),
                WorkflowNode(id="img", type="imageGen"),
            ],
            edges=[edge("p", "img", "text", "prompt")],
        )
        static = {"model": "flux"}
        manager.resolve_node_inputs(execution.id, "img", static, graph)
        assert static == {"model": "flux"}

    def test_unfinished_source_is_skipped(self, manager, state_store, execution):
        graph = WorkflowGraph(
            nodes=[WorkflowNode(id="a", type="imageGen"), WorkflowNode(id="b", type="videoGen")],
            edges=[edge("a", "b", "image", "image")],
        )
        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.PROCESSING)

        resolved = manager.resolve_node_inputs(execution.id, "b", {"inputImage": "keep"}, graph)
        assert resolved == {"inputImage": "keep"}

    def test_missing_handles_use_defaults(self, manager, state_store, execution):
        graph = WorkflowGraph(
            nodes=[WorkflowNode(id="a", type="llm"), WorkflowNode(id="b", type="output")],
            edges=[edge("a", "b")],
        )
        state_store.upsert_node_result(
            execution.id, "a", NodeResultStatus.COMPLETE, output={"value": "v"}
        )

        resolved = manager.resolve_node_inputs(execution.id, "b", {}, graph)
        assert resolved == {"inputPrompt": "v"}

    def test_passthrough_fallback_field(self, manager, execution):
        graph = WorkflowGraph(
            nodes=[
                WorkflowNode(id="i", type="imageInput", data={"url": "https://x/y.png"}),
                WorkflowNode(id="img", type="imageGen"),
            ],
            edges=[edge("i", "img", "image", "image")],
        )
        resolved = manager.resolve_node_inputs(execution.id, "img", {}, graph)
        assert resolved == {"inputImage": "https://x/y.png"}


class TestReadiness:
    """Tests for ready-node selection."""

    def test_ready_nodes_need_completed_dependencies(self, manager, state_store, execution):
        state_store.set_pending_nodes(
            execution.id, [pending("a"), pending("b", ["a"]), pending("c", ["x"])]
        )
        assert [n.node_id for n in manager.get_ready_nodes(execution.id)] == ["a"]

        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.COMPLETE)
        state_store.remove_pending_node(execution.id, "a")
        assert [n.node_id for n in manager.get_ready_nodes(execution.id)] == ["b"]


class TestCompletion:
    """Tests for completion and failure propagation."""

    def test_completes_when_everything_finished(self, manager, state_store, execution):
        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.COMPLETE, cost=0.25)

        assert manager.check_execution_completion(execution.id) is True

        stored = state_store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.total_cost == 0.25

    def test_not_complete_while_in_flight(self, manager, state_store, execution):
        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.PROCESSING)
        assert manager.check_execution_completion(execution.id) is False

    def test_not_complete_while_pending(self, manager, state_store, execution):
        state_store.set_pending_nodes(execution.id, [pending("a")])
        assert manager.check_execution_completion(execution.id) is False

    def test_failure_cascades_downstream(self, manager, state_store, execution):
        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.ERROR, error="boom")
        state_store.set_pending_nodes(execution.id, [pending("b", ["a"]), pending("c", ["b"])])

        assert manager.check_execution_completion(execution.id) is True

        stored = state_store.get_execution(execution.id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.pending_nodes == []
        for node_id in ("b", "c"):
            result = stored.result_for(node_id)
            assert result.status == NodeResultStatus.ERROR
            assert result.error == BLOCKED_MESSAGE
        assert stored.error == "3 node(s) failed: a, b, c"

    def test_independent_branch_keeps_running(self, manager, state_store, execution):
        state_store.upsert_node_result(execution.id, "a", NodeResultStatus.ERROR, error="x")
        state_store.set_pending_nodes(execution.id, [pending("b", ["a"]), pending("d")])

        assert manager.check_execution_completion(execution.id) is False

        stored = state_store.get_execution(execution.id)
        assert [p.node_id for p in stored.pending_nodes] == ["d"]
        assert stored.result_for("b").status == NodeResultStatus.ERROR

    def test_terminal_execution_is_complete(self, manager, state_store, execution):
        state_store.update_execution_status(execution.id, ExecutionStatus.CANCELLED)
        state_store.set_pending_nodes(execution.id, [pending("a")])

        assert manager.check_execution_completion(execution.id) is True
        assert state_store.get_execution(execution.id).status == ExecutionStatus.CANCELLED
