"""Host event normalization.

The host delivers events as ``{"type": "...", "properties": {...}}`` where the
property bag differs per event type.  Everything downstream works on the
typed events produced here; the raw bag is probed exactly once.

Session id resolution order::

    properties.sessionID  >  properties.info.sessionID  >  properties.info.id
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

IDLE_TYPES = {"session.idle"}
BUSY_TYPES = {"session.active", "session.busy", "tool.execute.before", "tool.execute.after"}


@dataclass(frozen=True)
class SessionIdle:
    session_id: str
    transcript_path: Optional[str] = None


@dataclass(frozen=True)
class SessionError:
    session_id: str
    error: Any = None


@dataclass(frozen=True)
class SessionDeleted:
    session_id: str


@dataclass(frozen=True)
class SessionBusy:
    session_id: str


@dataclass(frozen=True)
class SessionCancelled:
    session_id: str


@dataclass(frozen=True)
class MessageUpdated:
    session_id: str
    message_id: Optional[str] = None
    role: Optional[str] = None
    timestamp: Optional[float] = None
    text: str = ""
    error: Any = None
    has_summary: bool = False
    agent: Optional[str] = None
    model: Any = None

    @property
    def is_user_input(self) -> bool:
        """True for genuine user input (summary updates re-send old messages)."""
        return self.role == "user" and not self.has_summary


@dataclass(frozen=True)
class UnknownEvent:
    session_id: str
    type: str


HostEvent = Union[
    SessionIdle,
    SessionError,
    SessionDeleted,
    SessionBusy,
    SessionCancelled,
    MessageUpdated,
    UnknownEvent,
]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def extract_session_id(raw: dict) -> Optional[str]:
    """Resolve the session id of a raw event, or None if it has none."""
    props = _as_dict(raw.get("properties"))
    info = _as_dict(props.get("info"))
    return (
        _non_empty_str(props.get("sessionID"))
        or _non_empty_str(info.get("sessionID"))
        or _non_empty_str(info.get("id"))
    )


def _parse_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return float(value)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return None
    return None


def _message_text(props: dict, info: dict) -> str:
    for candidate in (props.get("text"), info.get("text")):
        if isinstance(candidate, str):
            return candidate
    parts = props.get("parts") or info.get("parts") or []
    chunks: list[str] = []
    if isinstance(parts, list):
        for part in parts:
            part = _as_dict(part)
            if part.get("type", "text") == "text" and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    return "\n".join(chunks)


def _decode_message(session_id: str, props: dict) -> MessageUpdated:
    info = _as_dict(props.get("info"))
    time_info = _as_dict(info.get("time"))
    timestamp = _parse_timestamp(time_info.get("created"))
    if timestamp is None:
        timestamp = _parse_timestamp(info.get("timestamp"))
    message_id = _non_empty_str(info.get("id"))
    # info.id doubles as the session id only when nothing better exists
    if message_id == session_id and not info.get("role"):
        message_id = None
    return MessageUpdated(
        session_id=session_id,
        message_id=message_id,
        role=_non_empty_str(info.get("role")),
        timestamp=timestamp,
        text=_message_text(props, info),
        error=info.get("error") if info.get("error") is not None else props.get("error"),
        has_summary=bool(info.get("summary")),
        agent=_non_empty_str(info.get("agent")),
        model=info.get("model") or None,
    )


def decode_event(raw: Any) -> Optional[HostEvent]:
    """Decode a raw host event into a typed event.

    Returns None when the event is not a mapping or carries no session id.
    """
    if not isinstance(raw, dict):
        return None
    session_id = extract_session_id(raw)
    if not session_id:
        return None
    event_type = raw.get("type") if isinstance(raw.get("type"), str) else ""
    props = _as_dict(raw.get("properties"))

    if event_type in IDLE_TYPES:
        return SessionIdle(session_id, transcript_path=_non_empty_str(props.get("transcriptPath")))
    if event_type == "session.status":
        status = _as_dict(props.get("status"))
        if status.get("type") == "idle":
            return SessionIdle(session_id, transcript_path=_non_empty_str(props.get("transcriptPath")))
        return SessionBusy(session_id)
    if event_type == "session.error":
        return SessionError(session_id, error=props.get("error"))
    if event_type == "session.deleted":
        return SessionDeleted(session_id)
    if event_type == "session.cancelled":
        return SessionCancelled(session_id)
    if event_type in BUSY_TYPES:
        return SessionBusy(session_id)
    if event_type == "message.updated":
        return _decode_message(session_id, props)
    return UnknownEvent(session_id, event_type)
