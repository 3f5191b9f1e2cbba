"""Unit tests for the recovery CLI."""

import json
from unittest.mock import patch

import fakeredis
import pytest
import redis

from config import OrchestratorSettings
from models.queues import QueueName
from recovery_cli import build_parser, main, run_command
from services.bootstrap import build_services


@pytest.fixture
def services():
    return build_services(fakeredis.FakeRedis(decode_responses=True), OrchestratorSettings())


def run(services, *argv: str) -> int:
    return run_command(build_parser().parse_args(list(argv)), services)


class TestBuildParser:
    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_dlq_paging(self):
        args = build_parser().parse_args(["dlq", "--limit", "5", "--offset", "10"])
        assert (args.limit, args.offset) == (5, 10)


class TestRunCommand:
    """Tests for each subcommand."""

    def test_scan(self, services, capsys):
        assert run(services, "scan") == 0
        assert json.loads(capsys.readouterr().out) == {"recovered": 0}

    def test_stats(self, services, capsys):
        execution = services.state_store.create_execution("wf-1")
        services.queue_manager.enqueue_workflow(execution.id, "wf-1")

        assert run(services, "stats") == 0

        output = json.loads(capsys.readouterr().out)
        assert output["jobs"]["pending"] == 1
        assert output["queues"][QueueName.WORKFLOW_ORCHESTRATOR.value]["waiting"] == 1

    def test_dlq_and_retry(self, services, capsys):
        execution = services.state_store.create_execution("wf-1")
        job_id = services.queue_manager.enqueue_workflow(execution.id, "wf-1")
        services.queue_manager.move_to_dead_letter_queue(job_id, "exhausted")

        assert run(services, "dlq") == 0
        listing = json.loads(capsys.readouterr().out)
        assert listing["total"] == 1
        assert listing["jobs"][0]["job_id"] == job_id

        assert run(services, "retry", job_id) == 0
        assert json.loads(capsys.readouterr().out) == {"job_id": job_id, "new_job_id": job_id}

    def test_retry_unknown_job(self, services):
        assert run(services, "retry", "missing") == 1

    def test_recover_unknown_execution(self, services):
        assert run(services, "recover-execution", "missing") == 1


class TestMain:
    def test_redis_unreachable_exits_with_error(self):
        with patch("sys.argv", ["recovery_cli.py", "scan"]):
            with patch("recovery_cli.redis.Redis") as mock_redis:
                mock_redis.from_url.return_value.ping.side_effect = redis.ConnectionError(
                    "refused"
                )

                assert main() == 1
