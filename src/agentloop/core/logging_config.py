"""Logging setup for agentloop.

Everything under the ``agentloop`` logger goes to stdout plus a rotating
``agentloop.log``. Three JSONL side channels record engine decisions, raw
host events and MCP calls, one JSON object per line.

Log directory structure::

    ~/.local/share/agentloop/logs/
    ├── agentloop.log       # All Python logger output (rotating)
    ├── decisions.log       # Every countdown / continuation / loop transition (JSONL)
    ├── events.log          # Raw host events accepted by the gateway (JSONL)
    └── mcp-calls.log       # Every MCP JSON-RPC request/response (JSONL)
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any, Optional

_MAX_BYTES = 10 * 1024 * 1024
_BACKUPS = 5
_LINE_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

decision_logger = logging.getLogger("agentloop._decisions")
event_logger = logging.getLogger("agentloop._events")
mcp_call_logger = logging.getLogger("agentloop._mcp_calls")

# JSONL side channels: logger -> file name inside the log directory
_JSONL_STREAMS: tuple[tuple[logging.Logger, str], ...] = (
    (decision_logger, "decisions.log"),
    (event_logger, "events.log"),
    (mcp_call_logger, "mcp-calls.log"),
)


def clear_logs(log_dir: str) -> int:
    """Delete rotated and JSONL log files under ``log_dir``.

    Must run before handlers are attached. Returns how many files were removed.
    """
    removed = 0
    if not os.path.isdir(log_dir):
        return removed
    targets = set()
    for pattern in ("*.log", "*.log.*", "*.jsonl"):
        targets.update(glob.glob(os.path.join(log_dir, pattern)))
    for path in sorted(targets):
        try:
            os.remove(path)
            removed += 1
        except OSError:
            continue
    return removed


def _rotating(path: str, formatter: logging.Formatter, level: int = logging.DEBUG) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Route all ``agentloop.*`` output to stdout and ``agentloop.log``.

    Also (re)binds the JSONL side channels. Safe to call more than once; prior
    handlers are replaced.
    """
    if clear_on_launch:
        clear_logs(log_dir)
    os.makedirs(log_dir, exist_ok=True)

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    text = logging.Formatter(_LINE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(text)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(console)
    root.addHandler(_rotating(os.path.join(log_dir, "agentloop.log"), text))

    raw = logging.Formatter("%(message)s")
    for stream, filename in _JSONL_STREAMS:
        stream.handlers.clear()
        stream.propagate = False
        stream.setLevel(logging.INFO)
        stream.addHandler(_rotating(os.path.join(log_dir, filename), raw, logging.INFO))

    logging.getLogger("agentloop").info("Logging to %s (level=%s)", log_dir, log_level)


def _emit(stream: logging.Logger, record: dict[str, Any], limit: Optional[int] = None) -> None:
    # Side-channel logging never interrupts the engines
    try:
        line = json.dumps(record, default=str)
        if limit is not None and len(line) > limit:
            line = json.dumps({"ts": record.get("ts"), "truncated": line[:limit]})
        stream.info(line)
    except (TypeError, ValueError):
        logging.getLogger("agentloop.logging").debug("Unserializable log record dropped")


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def log_decision(engine: str, session_id: str, action: str, **detail: Any) -> None:
    """Append one engine decision (countdown started, continuation sent, ...)."""
    record: dict[str, Any] = {"ts": _now(), "engine": engine, "session_id": session_id, "action": action}
    for key, value in detail.items():
        if value is not None:
            record[key] = value
    _emit(decision_logger, record)


def log_host_event(raw: Any) -> None:
    _emit(event_logger, {"ts": _now(), "event": raw}, limit=20000)


def log_mcp_call(
    method: str,
    params: dict[str, Any],
    result: Any = None,
    error: Optional[str] = None,
    duration_ms: Optional[float] = None,
    tool_name: Optional[str] = None,
) -> None:
    """Append one MCP JSON-RPC exchange to ``mcp-calls.log``."""
    record: dict[str, Any] = {"ts": _now(), "method": method}
    if tool_name:
        record["tool"] = tool_name
        if params.get("arguments") is not None:
            record["tool_args"] = params["arguments"]
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:5000]
    elif result is not None:
        record["result"] = result
    _emit(mcp_call_logger, record, limit=20000)
