from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from agentloop.core.timers import ScheduledTimer

logger = logging.getLogger("agentloop.session")


@dataclass
class ContinuationSessionState:
    """Per-session state of the continuation engine.

    There is no single "state" field; the engine's state is the conjunction
    of these flags (recovering, cooldown, countdown pending, dormant).
    """
    session_id: str
    last_error_at: Optional[float] = None
    countdown_timer: Optional[ScheduledTimer] = None
    countdown_interval: Optional[ScheduledTimer] = None
    is_recovering: bool = False
    completion_shown: bool = False
    pending_cancellation: bool = False
    last_processed_message_id: Optional[str] = None
    last_message_timestamp: Optional[float] = None
    # Bumped on every countdown cancel; deferred actions compare against it
    generation: int = 0
    agent: Optional[str] = None
    model: Any = None

    @property
    def countdown_pending(self) -> bool:
        return self.countdown_timer is not None and self.countdown_timer.active

    def snapshot(self, now: float) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "countdown_pending": self.countdown_pending,
            "is_recovering": self.is_recovering,
            "completion_shown": self.completion_shown,
            "pending_cancellation": self.pending_cancellation,
            "seconds_since_error": None if self.last_error_at is None else round(now - self.last_error_at, 3),
            "last_processed_message_id": self.last_processed_message_id,
        }


class SessionStateTable:
    """In-memory table of continuation state, keyed by session id.

    One table belongs to one engine; it is passed in explicitly rather than
    shared at module level so two engines can never fight over a session.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ContinuationSessionState] = {}

    def get(self, session_id: str) -> Optional[ContinuationSessionState]:
        return self._sessions.get(session_id)

    def upsert(self, session_id: str) -> ContinuationSessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = ContinuationSessionState(session_id=session_id)
            self._sessions[session_id] = state
            logger.debug("Session state created: %s", session_id)
        return state

    def is_current(self, state: ContinuationSessionState) -> bool:
        """True if *state* is still the live record for its session."""
        return self._sessions.get(state.session_id) is state

    def drop(self, session_id: str) -> Optional[ContinuationSessionState]:
        return self._sessions.pop(session_id, None)

    def values(self) -> list[ContinuationSessionState]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
