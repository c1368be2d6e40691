"""Interruption and cancellation classification.

Two questions are answered here, both from data tables so the pattern set can
grow without touching the engines:

* ``classify_error`` - does an error value mean the user interrupted or
  aborted the agent (ESC, Ctrl-C, a killed process)?
* ``classify_user_text`` - is a free-text user message asking to stop?
"""
from __future__ import annotations

import asyncio
import re
from typing import Any

INTERRUPTION_ERROR_NAMES = frozenset({
    "AbortError",
    "CancellationError",
    "ExitError",
    "TerminateError",
    "MessageAbortedError",
    "InterruptError",
})

INTERRUPTION_KEYWORDS = (
    "aborted",
    "cancelled",
    "canceled",
    "interrupted",
    "stopped",
    "terminated",
)

# Matched as prefixes against error codes, upper-cased.
INTERRUPTION_CODE_PREFIXES = (
    "SIG",
    "ECANCEL",
    "EABORT",
    "EINTR",
    "ABORT_ERR",
    "ERR_CANCELED",
    "ERR_CANCELLED",
    "ERR_ABORTED",
    "EXIT",
    "ETERMINATE",
    "TERMINATE",
)

_TASK_NOUNS = (
    r"(?:this|that|it|everything|now|please|"
    r"(?:the\s+|this\s+|that\s+)?(?:task|tasks|work|job|loop|process|operation|continuation|iteration|agent))"
)

CANCELLATION_PATTERNS = (
    # direct verbs, optionally softened: "please stop", "stop the task", "cancel it"
    re.compile(rf"^(?:please\s+|ok(?:ay)?,?\s+|no,?\s+)?(?:cancel|stop|abort|terminate|halt)\b(?:\s+{_TASK_NOUNS}\b|[.!]*$)"),
    re.compile(rf"\b(?:cancel|stop|abort|terminate|halt)\s+{_TASK_NOUNS}\b"),
    re.compile(r"\b(?:i\s+want\s+to|let'?s|please)\s+(?:cancel|stop|abort)\b"),
    # dismissals
    re.compile(r"\bnever\s*mind\b"),
    re.compile(r"\bnevermind\b"),
    re.compile(r"\bthat'?s\s+enough\b"),
    re.compile(r"\bon\s+second\s+thought\b"),
    re.compile(r"\bdon'?t\s+do\s+(?:this|that|it)\b"),
    re.compile(r"\bdo\s+not\s+do\s+(?:this|that|it)\b"),
    re.compile(r"\bskip\s+(?:this|that|it)\b"),
    re.compile(r"\bi\s+(?:have\s+)?changed\s+my\s+mind\b"),
    re.compile(r"\bwait,?\s+(?:cancel|stop)\b"),
    re.compile(r"\bforget\s+(?:it|about\s+it)\b"),
)


def _contains_keyword(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in INTERRUPTION_KEYWORDS)


def _is_interruption_code(code: Any) -> bool:
    if not isinstance(code, str) or not code:
        return False
    upper = code.strip().upper()
    return any(upper.startswith(prefix) for prefix in INTERRUPTION_CODE_PREFIXES)


def _field(value: Any, name: str) -> Any:
    if isinstance(value, dict):
        return value.get(name)
    return getattr(value, name, None)


def _messages_of(value: Any) -> list[str]:
    messages: list[str] = []
    for name in ("message", "description"):
        candidate = _field(value, name)
        if isinstance(candidate, str):
            messages.append(candidate)
    data = _field(value, "data")
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        messages.append(data["message"])
    if isinstance(value, BaseException) and not messages:
        messages.append(str(value))
    return messages


def _name_of(value: Any) -> str:
    name = _field(value, "name")
    if isinstance(name, str):
        return name
    if isinstance(value, BaseException):
        return type(value).__name__
    return ""


def classify_error(value: Any) -> bool:
    """Return True when *value* represents an abort or interruption."""
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return _contains_keyword(value)
    if isinstance(value, (asyncio.CancelledError, KeyboardInterrupt)):
        return True
    if _name_of(value) in INTERRUPTION_ERROR_NAMES:
        return True
    if any(_contains_keyword(message) for message in _messages_of(value)):
        return True
    for code_field in ("code", "signal"):
        if _is_interruption_code(_field(value, code_field)):
            return True
    return False


def classify_user_text(text: Any) -> bool:
    """Return True when a user message asks the agent to stop."""
    if not isinstance(text, str):
        return False
    normalized = " ".join(text.strip().lower().replace("’", "'").split())
    if not normalized:
        return False
    return any(pattern.search(normalized) for pattern in CANCELLATION_PATTERNS)


def explain_error(value: Any) -> str:
    """Short description of an error value for log lines."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value[:200]
    name = _name_of(value)
    messages = _messages_of(value)
    detail = messages[0] if messages else ""
    if name and detail:
        return f"{name}: {detail}"[:200]
    return (name or detail or repr(value))[:200]
