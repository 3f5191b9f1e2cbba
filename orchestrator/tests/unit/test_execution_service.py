"""Unit tests for ExecutionService."""

from unittest.mock import MagicMock

import fakeredis
import pytest

from models.graph import WorkflowGraph, WorkflowNode
from models.queues import QueueName
from models.state import ExecutionStatus, NodeResultStatus
from services.execution_service import ExecutionNotResumableError, ExecutionService
from services.execution_state import ExecutionStateManager
from services.job_store import RedisJobStore
from services.provider_client import ProviderError
from services.queue_manager import QueueManager, workflow_job_id
from services.state_store import ExecutionNotFoundError, ExecutionTerminalError, RedisStateStore
from services.task_queue import QueueRegistry
from services.workflow_store import RedisWorkflowStore, WorkflowNotFoundError


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=False)


@pytest.fixture
def registry(redis_client):
    return QueueRegistry.from_defaults(redis_client)


@pytest.fixture
def state_store(redis_client):
    return RedisStateStore(redis_client)


@pytest.fixture
def workflow_store(redis_client):
    store = RedisWorkflowStore(redis_client)
    store.save_graph(
        "wf-1",
        WorkflowGraph(
            nodes=[
                WorkflowNode(id="img", type="imageGen"),
                WorkflowNode(id="out", type="output"),
            ]
        ),
    )
    return store


@pytest.fixture
def queue_manager(registry, state_store, workflow_store, redis_client):
    return QueueManager(
        registry,
        RedisJobStore(redis_client),
        state_store,
        ExecutionStateManager(state_store),
        workflow_store,
    )


@pytest.fixture
def provider():
    return MagicMock()


@pytest.fixture
def service(state_store, workflow_store, queue_manager, provider):
    return ExecutionService(state_store, workflow_store, queue_manager, provider)


class TestExecutionServiceInit:
    def test_requires_state_store(self, workflow_store, queue_manager):
        with pytest.raises(ValueError, match="state_store is required"):
            ExecutionService(None, workflow_store, queue_manager)


class TestStartExecution:
    """Tests for starting full and partial runs."""

    def test_start_enqueues_root_job(self, service, registry):
        execution = service.start_execution("wf-1", debug_mode=True)

        assert execution.status == ExecutionStatus.PENDING
        assert execution.debug_mode is True
        queued = registry.get(QueueName.WORKFLOW_ORCHESTRATOR).get_job(
            workflow_job_id(execution.id)
        )
        assert queued.data["workflow_id"] == "wf-1"
        assert queued.data["debug_mode"] is True

    def test_start_unknown_workflow_raises(self, service):
        with pytest.raises(WorkflowNotFoundError):
            service.start_execution("missing")

    def test_partial_execution_records_selection(self, service, registry):
        execution = service.start_partial_execution("wf-1", ["img"])

        assert execution.selected_node_ids == ["img"]
        queued = registry.get(QueueName.WORKFLOW_ORCHESTRATOR).get_job(
            workflow_job_id(execution.id)
        )
        assert queued.data["selected_node_ids"] == ["img"]

    def test_partial_execution_rejects_unknown_nodes(self, service):
        with pytest.raises(ValueError, match="Unknown node ids: ghost"):
            service.start_partial_execution("wf-1", ["img", "ghost"])

    def test_partial_execution_requires_nodes(self, service):
        with pytest.raises(ValueError, match="node_ids is required"):
            service.start_partial_execution("wf-1", [])

    def test_list_executions(self, service):
        first = service.start_execution("wf-1")
        second = service.start_execution("wf-1")

        ids = {execution.id for execution in service.list_executions("wf-1")}
        assert ids == {first.id, second.id}


class TestStopExecution:
    """Tests for cancellation."""

    def test_stop_cancels_and_keeps_results(self, service, state_store):
        execution = service.start_execution("wf-1")
        state_store.upsert_node_result(
            execution.id, "img", NodeResultStatus.COMPLETE, output={"image": "x"}
        )

        stopped = service.stop_execution(execution.id)

        assert stopped.status == ExecutionStatus.CANCELLED
        assert state_store.get_execution(execution.id).result_for("img").output == {"image": "x"}

    def test_stop_cancels_active_predictions(self, service, state_store, provider):
        execution = service.start_execution("wf-1")
        state_store.create_prediction_job(execution.id, "img", "pred-1")
        state_store.create_prediction_job(execution.id, "out", "pred-2")
        state_store.update_prediction_job("pred-2", status="succeeded")

        service.stop_execution(execution.id)

        provider.cancel.assert_called_once_with("pred-1")
        assert state_store.get_prediction_job("pred-1").status == "canceled"
        assert state_store.get_prediction_job("pred-2").status == "succeeded"

    def test_provider_cancel_failure_is_tolerated(self, service, state_store, provider):
        execution = service.start_execution("wf-1")
        state_store.create_prediction_job(execution.id, "img", "pred-1")
        provider.cancel.side_effect = ProviderError("gone")

        service.stop_execution(execution.id)
        assert state_store.get_prediction_job("pred-1").status == "canceled"

    def test_stop_cascades_to_children(self, service, state_store):
        parent = service.start_execution("wf-1")
        child = state_store.create_execution(
            "wf-1", parent_execution_id=parent.id, parent_node_id="ref", depth=1
        )
        state_store.add_child_execution(parent.id, child.id)

        service.stop_execution(parent.id)

        assert state_store.get_execution(child.id).status == ExecutionStatus.CANCELLED

    def test_stop_finished_execution_raises(self, service, state_store):
        execution = service.start_execution("wf-1")
        state_store.finalize_execution(execution.id, ExecutionStatus.COMPLETED)

        with pytest.raises(ExecutionTerminalError):
            service.stop_execution(execution.id)

    def test_stop_missing_execution_raises(self, service):
        with pytest.raises(ExecutionNotFoundError):
            service.stop_execution("missing")


class TestResumeExecution:
    """Tests for resuming failed or cancelled runs."""

    def test_resume_reuses_completed_results(self, service, state_store):
        source = service.start_execution("wf-1")
        state_store.upsert_node_result(
            source.id, "img", NodeResultStatus.COMPLETE, output={"image": "x"}, cost=0.1
        )
        state_store.upsert_node_result(source.id, "out", NodeResultStatus.ERROR, error="boom")
        state_store.finalize_execution(source.id, ExecutionStatus.FAILED, "boom")

        resumed = service.resume_execution(source.id)

        assert resumed.id != source.id
        assert resumed.resumed_from == source.id
        assert [r.node_id for r in resumed.node_results] == ["img"]
        assert resumed.status == ExecutionStatus.PENDING

    def test_resume_running_execution_raises(self, service):
        execution = service.start_execution("wf-1")
        with pytest.raises(ExecutionNotResumableError, match="only failed or cancelled"):
            service.resume_execution(execution.id)


class TestSnapshot:
    def test_snapshot_includes_jobs(self, service):
        execution = service.start_execution("wf-1")

        snapshot = service.get_snapshot(execution.id)

        assert snapshot.status == ExecutionStatus.PENDING
        assert [job.job_id for job in snapshot.jobs] == [workflow_job_id(execution.id)]

    def test_snapshot_without_jobs(self, service):
        execution = service.start_execution("wf-1")
        assert service.get_snapshot(execution.id, include_jobs=False).jobs == []
