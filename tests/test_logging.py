"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
import logging.handlers
from pathlib import Path

import pytest

from optledger.logging import log_op, setup_logging


def _records(path: Path) -> list[dict[str, object]]:
    for handler in logging.getLogger("optledger").handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestSetupLogging:
    def test_creates_log_file(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("test_message", extra={"op": "save", "args_data": {"collection": "pending"}})
        record = _records(tmp_path / "optledger.log")[-1]
        assert record["msg"] == "test_message"
        assert record["op"] == "save"
        assert record["args"] == {"collection": "pending"}
        assert record["level"] == "INFO"

    def test_session_fields(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("applied", extra={"session_id": "20240301_120000", "issue_ids": ["A"], "duration_ms": 1.5})
        record = _records(tmp_path / "optledger.log")[-1]
        assert record["session_id"] == "20240301_120000"
        assert record["issue_ids"] == ["A"]
        assert record["duration_ms"] == 1.5

    def test_child_loggers_propagate(self, tmp_path: Path) -> None:
        setup_logging(tmp_path)
        logging.getLogger("optledger.store").info("from child")
        assert _records(tmp_path / "optledger.log")[-1]["logger"] == "optledger.store"

    def test_idempotent_setup(self, tmp_path: Path) -> None:
        logger1 = setup_logging(tmp_path)
        logger2 = setup_logging(tmp_path)
        assert logger1 is logger2
        file_handlers = [h for h in logger1.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert len(file_handlers) == 1

    def test_switching_projects_replaces_handler(self, tmp_path: Path) -> None:
        first, second = tmp_path / "one", tmp_path / "two"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        logger = setup_logging(second)
        logger.info("second only")
        assert _records(second / "optledger.log")[-1]["msg"] == "second only"
        assert all(r["msg"] != "second only" for r in _records(first / "optledger.log"))


class TestLogOp:
    def test_logs_duration_and_late_fields(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        with log_op(logger, "review", "done", session_id="20240301_120000") as fields:
            fields["issue_ids"] = ["A", "B"]
        record = _records(tmp_path / "optledger.log")[-1]
        assert record["msg"] == "done"
        assert record["op"] == "review"
        assert record["issue_ids"] == ["A", "B"]
        assert record["duration_ms"] >= 0

    def test_failure_logged_and_reraised(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        with pytest.raises(RuntimeError), log_op(logger, "save", "Saved pending"):
            raise RuntimeError("disk full")
        record = _records(tmp_path / "optledger.log")[-1]
        assert record["level"] == "WARNING"
        assert record["msg"] == "Saved pending failed"
        assert record["error"] == "disk full"
