"""Persisted iteration-loop record.

One record per working directory, stored as a small front-matter file::

    ---
    active: true
    iteration: 3
    max_iterations: 20
    completion_marker: "DONE"
    started_at: "2026-01-01T00:00:00+00:00"
    session_id: "ses_123"
    ---
    Original task prompt...

The file existing means a loop is in progress.  Reads never raise: a missing
or malformed file is reported as "no state".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
import re
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("agentloop.state_store")

DEFAULT_STATE_FILE = os.path.join(".agent-loop", "iteration-state.md")
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_COMPLETION_MARKER = "DONE"

_FRONTMATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n(.*)$", re.DOTALL)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class IterationState:
    active: bool
    iteration: int
    max_iterations: int
    completion_marker: str
    prompt: str
    started_at: str = field(default_factory=_utcnow_iso)
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "completion_marker": self.completion_marker,
            "started_at": self.started_at,
            "prompt": self.prompt,
            "session_id": self.session_id,
        }


def _strip_quotes(value: Any) -> str:
    return re.sub(r"^[\"']|[\"']$", "", str(value if value is not None else ""))


def _coerce_scalar(raw: str) -> Any:
    value: Any = raw
    if re.match(r"^[\"'].*[\"']$", raw, re.DOTALL) and len(raw) >= 2:
        return raw[1:-1]
    if value == "true":
        return True
    if value == "false":
        return False
    if value != "":
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            pass
    return value


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split ``content`` into (header fields, body).

    Only flat ``key: value`` lines are understood; quoted values are
    unquoted, ``true``/``false`` and numbers are converted.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content
    data: Dict[str, Any] = {}
    for line in match.group(1).split("\n"):
        if ":" not in line:
            continue
        key, _, raw = line.partition(":")
        data[key.strip()] = _coerce_scalar(raw.strip())
    return data, match.group(2)


def render_state(state: IterationState) -> str:
    session_line = f'session_id: "{state.session_id}"\n' if state.session_id else ""
    return (
        "---\n"
        f"active: {'true' if state.active else 'false'}\n"
        f"iteration: {state.iteration}\n"
        f"max_iterations: {state.max_iterations}\n"
        f'completion_marker: "{state.completion_marker}"\n'
        f'started_at: "{state.started_at}"\n'
        f"{session_line}"
        "---\n"
        f"{state.prompt}\n"
    )


class IterationStateStore:
    def __init__(self, directory: str, state_file: Optional[str] = None) -> None:
        self.directory = directory
        self._path = os.path.join(directory, state_file or DEFAULT_STATE_FILE)

    @property
    def path(self) -> str:
        return self._path

    def exists(self) -> bool:
        return os.path.exists(self._path)

    def read(self) -> Optional[IterationState]:
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                content = handle.read()
        except OSError as exc:
            logger.warning("Failed to read iteration state %s: %s", self._path, exc)
            return None
        data, body = parse_frontmatter(content)
        active = data.get("active")
        iteration = data.get("iteration")
        if active is None or iteration is None:
            logger.debug("Ignoring iteration state without active/iteration: %s", self._path)
            return None
        if isinstance(iteration, bool):
            return None
        try:
            iteration_num = int(iteration)
        except (TypeError, ValueError):
            return None
        try:
            max_iterations = int(data.get("max_iterations") or 0) or DEFAULT_MAX_ITERATIONS
        except (TypeError, ValueError):
            max_iterations = DEFAULT_MAX_ITERATIONS
        session_id = data.get("session_id")
        return IterationState(
            active=active is True or active == "true",
            iteration=iteration_num,
            max_iterations=max_iterations,
            completion_marker=_strip_quotes(data.get("completion_marker")) or DEFAULT_COMPLETION_MARKER,
            started_at=_strip_quotes(data.get("started_at")) or _utcnow_iso(),
            prompt=body.strip(),
            session_id=_strip_quotes(session_id) if session_id else None,
        )

    def write(self, state: IterationState) -> bool:
        dir_path = os.path.dirname(self._path)
        try:
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as handle:
                handle.write(render_state(state))
        except OSError as exc:
            logger.error("Failed to write iteration state %s: %s", self._path, exc)
            return False
        return True

    def clear(self) -> bool:
        try:
            if os.path.exists(self._path):
                os.remove(self._path)
        except OSError as exc:
            logger.error("Failed to clear iteration state %s: %s", self._path, exc)
            return False
        return True

    def increment(self) -> Optional[IterationState]:
        """Bump the iteration counter on disk. Returns the new state."""
        state = self.read()
        if state is None:
            return None
        state.iteration += 1
        if self.write(state):
            return state
        return None
