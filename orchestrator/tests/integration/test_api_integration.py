"""Integration tests for REST API."""

import json
import threading

import pytest
import redis
from fastapi.testclient import TestClient
from testcontainers.redis import RedisContainer

from api.app import OrchestratorAPI
from config import OrchestratorSettings
from services.bootstrap import build_services
from worker_daemon import WorkerDaemon


@pytest.fixture(scope="module")
def redis_container():
    """Start Redis container for tests."""
    with RedisContainer("redis:7-alpine") as container:
        yield container


@pytest.fixture
def redis_client(redis_container):
    """Create Redis client."""
    client = redis.Redis(
        host=redis_container.get_container_host_ip(),
        port=redis_container.get_exposed_port(6379),
        decode_responses=True,
    )
    yield client
    client.flushall()


@pytest.fixture
def services(redis_client):
    return build_services(redis_client, OrchestratorSettings())


@pytest.fixture
def client(services, redis_client):
    api = OrchestratorAPI(
        services.execution_service,
        services.queue_manager,
        services.recovery,
        services.workflow_store,
        services.state_store,
        redis_client,
        stream_interval=0.05,
    )
    return TestClient(api.create_app())


@pytest.fixture
def daemon(services):
    daemon = WorkerDaemon(services, poll_interval=0.05, run_recovery=False)
    thread = threading.Thread(target=daemon.run, daemon=True)
    thread.start()
    yield daemon
    daemon.stop()
    thread.join(timeout=10)


WORKFLOW = {
    "nodes": [
        {"id": "prompt", "type": "prompt", "data": {"prompt": "a red fox"}},
        {"id": "llm", "type": "llm", "data": {"model": "gpt"}},
        {"id": "out", "type": "output"},
    ],
    "edges": [
        {"source": "prompt", "target": "llm", "sourceHandle": "text", "targetHandle": "prompt"},
        {"source": "llm", "target": "out", "sourceHandle": "text", "targetHandle": "text"},
    ],
}


def read_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        name, data = "message", None
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((name, data))
    return events


class TestApiIntegration:
    """End-to-end API flows against real Redis and a running worker."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.json()["status"] == "ok"
        assert "workflow-orchestrator" in response.json()["details"]["queues"]

    def test_execute_and_stream_until_completed(self, client, daemon):
        assert client.put("/workflows/wf-api", json=WORKFLOW).status_code == 200

        started = client.post("/workflows/wf-api/execute", json={"debug_mode": True}).json()

        response = client.get(f"/executions/{started['id']}/stream")
        events = read_events(response.text)

        assert events[-1] == ("end", {"status": "completed"})
        snapshot = events[-2][1]
        statuses = {r["node_id"]: r["status"] for r in snapshot["node_results"]}
        assert statuses == {"prompt": "complete", "llm": "complete", "out": "complete"}

        executions = client.get("/workflows/wf-api/executions").json()["executions"]
        assert [e["id"] for e in executions] == [started["id"]]

    def test_stop_then_resume(self, client):
        client.put("/workflows/wf-api", json=WORKFLOW)
        started = client.post("/workflows/wf-api/execute").json()

        stopped = client.post(f"/executions/{started['id']}/stop")
        assert stopped.json()["status"] == "cancelled"
        assert client.post(f"/executions/{started['id']}/stop").status_code == 409

        resumed = client.post(f"/executions/{started['id']}/resume").json()
        assert resumed["resumed_from"] == started["id"]
        assert resumed["status"] == "pending"

    def test_queue_stats(self, client):
        client.put("/workflows/wf-api", json=WORKFLOW)
        client.post("/workflows/wf-api/execute")

        stats = client.get("/queue/stats").json()

        assert stats["jobs"]["pending"] == 1
        assert stats["queues"]["workflow-orchestrator"]["waiting"] == 1
