"""Unit tests for logging configuration."""

import logging

import pytest

from services.log_service import JobContextFilter, configure_logging, job_context


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)


class TestJobContextFilter:
    """Tests for job context tagging."""

    def test_no_context(self):
        record = make_record()
        assert JobContextFilter().filter(record) is True
        assert record.job_context == ""
        assert record.execution_id == "-"

    def test_inside_job_context(self):
        record = make_record()
        with job_context("exec-1", "img"):
            JobContextFilter().filter(record)

        assert record.execution_id == "exec-1"
        assert record.node_id == "img"
        assert record.job_context == "[exec-1/img] "

    def test_context_is_reset_after_block(self):
        with job_context("exec-1", "img"):
            pass
        record = make_record()
        JobContextFilter().filter(record)
        assert record.job_context == ""


class TestConfigureLogging:
    def test_writes_tagged_lines_to_file(self, tmp_path, restore_root_logger):
        root = configure_logging(
            log_dir=str(tmp_path), log_file="test.log", level=logging.DEBUG, console=False
        )

        with job_context("exec-1", "root"):
            logging.getLogger("services.worker").info("Running node")
        for handler in root.handlers:
            handler.flush()

        content = (tmp_path / "test.log").read_text(encoding="utf-8")
        assert " - INFO - services.worker - [exec-1/root] Running node" in content
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1

    def test_console_handler_added(self, tmp_path, restore_root_logger):
        root = configure_logging(log_dir=str(tmp_path / "nested"), console=True)

        assert (tmp_path / "nested").is_dir()
        assert len(root.handlers) == 2
