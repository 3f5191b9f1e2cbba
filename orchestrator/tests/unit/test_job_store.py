"""Unit tests for RedisJobStore."""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from pydantic import ValidationError

from models.jobs import QueueJob, QueueJobStatus
from services.job_store import DlqJobNotFoundError, QueueJobNotFoundError, RedisJobStore


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=False)


@pytest.fixture
def job_store(redis_client):
    return RedisJobStore(redis_client)


def in_future(seconds: int = 1) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def in_past(seconds: int = 3600) -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=seconds)


class TestRedisJobStoreInit:
    def test_init_without_client_raises(self):
        with pytest.raises(ValueError, match="redis_client is required"):
            RedisJobStore(None)


class TestCreateAndGet:
    """Tests for creating and reading records."""

    def test_create_record(self, job_store):
        record = job_store.create("exec-1-n1", "image-generation", "exec-1", "n1", {"k": "v"})

        assert record.status == QueueJobStatus.PENDING
        assert record.data == {"k": "v"}
        assert record.recovery_count == 0
        assert job_store.get(record.id) == record

    def test_create_missing_fields_raise(self, job_store):
        with pytest.raises(ValueError, match="job_id is required"):
            job_store.create("", "q", "exec-1", "n1")
        with pytest.raises(ValueError, match="queue_name is required"):
            job_store.create("j", "", "exec-1", "n1")
        with pytest.raises(ValueError, match="execution_id is required"):
            job_store.create("j", "q", "", "n1")
        with pytest.raises(ValueError, match="node_id is required"):
            job_store.create("j", "q", "exec-1", "")

    def test_get_unknown_raises(self, job_store):
        with pytest.raises(QueueJobNotFoundError) as exc:
            job_store.get("missing")
        assert exc.value.job_id == "missing"

    def test_get_by_job_id_returns_latest(self, job_store):
        first = job_store.create("exec-1-n1", "q", "exec-1", "n1")
        second = job_store.create("exec-1-n1", "q", "exec-1", "n1", recovery_count=1)

        latest = job_store.get_by_job_id("exec-1-n1")
        assert latest.id == second.id
        assert latest.id != first.id

    def test_get_by_unknown_job_id_returns_none(self, job_store):
        assert job_store.get_by_job_id("missing") is None

    def test_find_by_execution(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        job_store.create("b", "q", "exec-1", "n2")
        job_store.create("c", "q", "exec-2", "n1")

        records = job_store.find_by_execution("exec-1")
        assert sorted(r.job_id for r in records) == ["a", "b"]


class TestUpdates:
    """Tests for status, log and heartbeat updates."""

    def test_active_stamps_processed_at(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        record = job_store.update_status("a", QueueJobStatus.ACTIVE, attempts_made=1)

        assert record.status == QueueJobStatus.ACTIVE
        assert record.processed_at is not None
        assert record.attempts_made == 1

    def test_completed_stamps_finished_at(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        record = job_store.update_status("a", QueueJobStatus.COMPLETED, result={"x": 1})

        assert record.finished_at is not None
        assert record.result == {"x": 1}

    def test_error_sets_failed_reason(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        record = job_store.update_status("a", QueueJobStatus.FAILED, error="boom")

        assert record.error == "boom"
        assert record.failed_reason == "boom"

    def test_update_unknown_job_raises(self, job_store):
        with pytest.raises(QueueJobNotFoundError):
            job_store.update_status("missing", QueueJobStatus.ACTIVE)

    def test_append_log(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        job_store.append_log("a", "first")
        record = job_store.append_log("a", "second", "warn")

        assert [entry.message for entry in record.logs] == ["first", "second"]
        assert record.logs[1].level == "warn"

    def test_append_empty_log_raises(self, job_store):
        with pytest.raises(ValueError, match="message is required"):
            job_store.append_log("a", "")

    def test_heartbeat(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        record = job_store.heartbeat("a")
        assert record.last_heartbeat is not None

    def test_dlq_record_must_be_failed(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError, match="dead letter queue"):
            QueueJob(
                id="r",
                job_id="a",
                queue_name="q",
                execution_id="e",
                node_id="n",
                status=QueueJobStatus.PENDING,
                moved_to_dlq=True,
                created_at=now,
                updated_at=now,
            )


class TestDeadLetterQueue:
    """Tests for DLQ operations."""

    def test_move_to_dlq(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        record = job_store.move_to_dlq("a", "gave up")

        assert record.moved_to_dlq is True
        assert record.status == QueueJobStatus.FAILED
        assert record.failed_reason == "gave up"
        assert "Moved to dead letter queue" in record.logs[-1].message

        jobs, total = job_store.list_dlq()
        assert total == 1
        assert jobs[0].id == record.id

    def test_list_dlq_paginates(self, job_store):
        for job_id in ("a", "b", "c"):
            job_store.create(job_id, "q", "exec-1", job_id)
            job_store.move_to_dlq(job_id, "x")

        jobs, total = job_store.list_dlq(limit=2, offset=0)
        assert total == 3
        assert len(jobs) == 2

        rest, _ = job_store.list_dlq(limit=2, offset=2)
        assert len(rest) == 1

    def test_list_dlq_negative_limit_raises(self, job_store):
        with pytest.raises(ValueError, match="limit must be non-negative"):
            job_store.list_dlq(limit=-1)

    def test_reset_for_retry(self, job_store):
        record = job_store.create("a", "q", "exec-1", "n1", recovery_count=3)
        job_store.move_to_dlq("a", "x")

        reset = job_store.reset_for_retry(record.id)

        assert reset.moved_to_dlq is False
        assert reset.status == QueueJobStatus.PENDING
        assert reset.recovery_count == 0
        assert reset.logs[-1].message == "Job retried from DLQ"
        assert job_store.list_dlq()[1] == 0

    def test_reset_record_not_in_dlq_raises(self, job_store):
        record = job_store.create("a", "q", "exec-1", "n1")
        with pytest.raises(DlqJobNotFoundError, match="not found in DLQ"):
            job_store.reset_for_retry(record.id)


class TestRecoveryQueries:
    """Tests for stall detection queries and recovery bookkeeping."""

    def test_find_stale_returns_idle_in_flight_records(self, job_store):
        record = job_store.create("a", "q", "exec-1", "n1")

        stalled, _ = job_store.find_stale(in_future(), max_recovery_attempts=3)
        assert [r.id for r in stalled] == [record.id]

    def test_recent_records_are_not_stalled(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        assert job_store.find_stale(in_past(), max_recovery_attempts=3) == ([], [])

    def test_finished_records_are_not_stalled(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        job_store.update_status("a", QueueJobStatus.COMPLETED)
        assert job_store.find_stale(in_future(), max_recovery_attempts=3) == ([], [])

    def test_dlq_records_are_not_stalled(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        job_store.move_to_dlq("a", "x")
        assert job_store.find_stale(in_future(), max_recovery_attempts=3) == ([], [])

    def test_exhausted_records_are_split_out(self, job_store):
        job_store.create("a", "q", "exec-1", "n1", recovery_count=3)
        fresh = job_store.create("b", "q", "exec-1", "n2")

        recoverable, exhausted = job_store.find_stale(in_future(), 3)

        assert [r.id for r in recoverable] == [fresh.id]
        assert [r.job_id for r in exhausted] == ["a"]

    def test_stale_scan_reads_in_flight_index_once(self, job_store, redis_client, monkeypatch):
        job_store.create("a", "q", "exec-1", "n1", recovery_count=3)
        job_store.create("b", "q", "exec-1", "n2")
        reads = []
        smembers = redis_client.smembers
        monkeypatch.setattr(
            redis_client, "smembers", lambda key: reads.append(key) or smembers(key)
        )

        recoverable, exhausted = job_store.find_stale(in_future(), 3)

        assert len(reads) == 1
        assert len(recoverable) == len(exhausted) == 1

    def test_mark_recovered(self, job_store):
        record = job_store.create("a", "q", "exec-1", "n1")
        recovered = job_store.mark_recovered(record.id, 3)

        assert recovered.status == QueueJobStatus.RECOVERED
        assert recovered.recovery_count == 1
        assert recovered.logs[-1].level == "warn"
        assert "attempt 1/3" in recovered.logs[-1].message

    def test_mark_recovered_twice_counts_once(self, job_store):
        record = job_store.create("a", "q", "exec-1", "n1")
        job_store.mark_recovered(record.id, 3)

        assert job_store.mark_recovered(record.id, 3) is None
        assert job_store.get(record.id).recovery_count == 1

    def test_mark_abandoned(self, job_store):
        first = job_store.create("a", "q", "exec-1", "n1")
        second = job_store.create("b", "q", "exec-1", "n2")

        assert job_store.mark_abandoned([first.id, second.id]) == 2

        record = job_store.get(first.id)
        assert record.status == QueueJobStatus.COMPLETED
        assert record.abandoned is True
        assert "parent execution already terminal" in record.logs[-1].message
        assert job_store.find_stale(in_future(), 3) == ([], [])


class TestStats:
    def test_stats_counts_by_status(self, job_store):
        job_store.create("a", "q", "exec-1", "n1")
        job_store.create("b", "q", "exec-1", "n2")
        job_store.update_status("b", QueueJobStatus.ACTIVE)
        job_store.create("c", "q", "exec-1", "n3")
        job_store.move_to_dlq("c", "x")

        stats = job_store.stats()
        assert stats.total == 3
        assert stats.pending == 1
        assert stats.active == 1
        assert stats.failed == 1
        assert stats.in_dlq == 1
