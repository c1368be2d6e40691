from __future__ import annotations

import json
import logging

import pytest

from agentloop.core.logging_config import (
    clear_logs,
    decision_logger,
    log_decision,
    log_host_event,
    setup_logging,
)


@pytest.fixture
def log_dir(tmp_path):
    path = tmp_path / "logs"
    setup_logging(str(path), "debug")
    yield path
    for handler in decision_logger.handlers:
        handler.close()


def _lines(path) -> list[dict]:
    for handler in logging.getLogger("agentloop._decisions").handlers + logging.getLogger("agentloop._events").handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_decisions_are_jsonl(log_dir) -> None:
    log_decision("continuation", "s1", "countdown_started", seconds=2, reason=None)
    records = _lines(log_dir / "decisions.log")
    assert records[-1]["action"] == "countdown_started"
    assert records[-1]["seconds"] == 2
    assert "reason" not in records[-1]


def test_oversized_event_is_truncated(log_dir) -> None:
    log_host_event({"type": "message.updated", "blob": "x" * 50000})
    record = _lines(log_dir / "events.log")[-1]
    assert "event" not in record
    assert len(record["truncated"]) == 20000


def test_clear_logs(tmp_path) -> None:
    (tmp_path / "agentloop.log").write_text("a")
    (tmp_path / "agentloop.log.1").write_text("b")
    (tmp_path / "keep.txt").write_text("c")
    assert clear_logs(str(tmp_path)) == 2
    assert [p.name for p in tmp_path.iterdir()] == ["keep.txt"]
    assert clear_logs(str(tmp_path / "missing")) == 0
