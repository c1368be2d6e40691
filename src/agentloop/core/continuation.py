"""Task-list continuation engine.

When a session goes idle with unfinished task items, a short countdown starts;
when it runs out the agent is told to keep going.  Anything that suggests the
user took over (a new message, an interruption, a cancellation request, the
agent becoming busy again) cancels the countdown.

Every deferred action captures the session's ``generation`` when it is
scheduled and re-validates it, together with the cancellation, recovery and
cooldown guards, before and after each await.  Cancelling a countdown bumps the
generation, so a countdown that already fired into a fetch still cannot send.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from agentloop.core.classifier import classify_error, classify_user_text, explain_error
from agentloop.core.logging_config import log_decision
from agentloop.core.session import ContinuationSessionState, SessionStateTable
from agentloop.core.templates import continuation_template
from agentloop.core.timers import TimerScheduler
from agentloop.core.todos import TaskItem, incomplete_items
from agentloop.integrations.host_client import HostClient

logger = logging.getLogger("agentloop.continuation")

ENGINE = "continuation"


@dataclass
class ContinuationOptions:
    countdown_seconds: float = 2
    error_cooldown_ms: int = 3000
    toast_duration_ms: int = 900
    agent: Optional[str] = None
    model: Any = None
    template_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.countdown_seconds < 0:
            raise ValueError("countdown_seconds must not be negative")
        if self.error_cooldown_ms < 0:
            raise ValueError("error_cooldown_ms must not be negative")


class ContinuationEngine:
    def __init__(
        self,
        host: HostClient,
        scheduler: TimerScheduler,
        options: Optional[ContinuationOptions] = None,
        sessions: Optional[SessionStateTable] = None,
    ) -> None:
        self.host = host
        self.scheduler = scheduler
        self.options = options or ContinuationOptions()
        self.sessions = sessions if sessions is not None else SessionStateTable()

    # ── guards ────────────────────────────────────────────────

    def _in_cooldown(self, state: ContinuationSessionState) -> bool:
        if state.last_error_at is None:
            return False
        return (self.scheduler.now() - state.last_error_at) * 1000 < self.options.error_cooldown_ms

    def _blocked_reason(self, state: ContinuationSessionState) -> Optional[str]:
        if state.is_recovering:
            return "recovering"
        if state.pending_cancellation:
            return "pending_cancellation"
        if self._in_cooldown(state):
            return "cooldown"
        return None

    def _stale_reason(self, state: ContinuationSessionState, generation: int) -> Optional[str]:
        if not self.sessions.is_current(state):
            return "session_gone"
        if state.generation != generation:
            return "superseded"
        return self._blocked_reason(state)

    def _cancel_countdown(self, state: ContinuationSessionState, mark_pending: bool = False) -> bool:
        """Cancel both timers and invalidate in-flight actions in one step.

        No await may be placed in here.  Returns True if a countdown was live.
        """
        was_pending = state.countdown_pending
        self.scheduler.cancel(state.countdown_timer)
        self.scheduler.cancel(state.countdown_interval)
        state.countdown_timer = None
        state.countdown_interval = None
        state.generation += 1
        if mark_pending:
            state.pending_cancellation = True
        return was_pending

    # ── host calls (never raise) ──────────────────────────────

    async def _fetch_items(self, session_id: str) -> list[TaskItem]:
        try:
            return list(await self.host.fetch_task_items(session_id))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch task items for %s: %s", session_id, exc)
            return []

    async def _toast(self, title: str, text: str, severity: str) -> None:
        try:
            await self.host.show_countdown_notice(title, text, severity, self.options.toast_duration_ms)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Toast failed (non-critical): %s", exc)

    async def _status(self, state: ContinuationSessionState, text: str) -> None:
        agent, model = self._agent_model(state)
        try:
            await self.host.send_transient_notice(state.session_id, text, agent=agent, model=model)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Status notice failed for %s (non-critical): %s", state.session_id, exc)

    def _agent_model(self, state: ContinuationSessionState) -> tuple[Optional[str], Any]:
        if state.agent or state.model:
            return state.agent, state.model
        return self.options.agent, self.options.model

    async def _show_countdown(self, seconds: float, incomplete_count: int) -> None:
        await self._toast(
            "Task Continuation",
            f"Resuming in {seconds:g}s... ({incomplete_count} tasks remaining)",
            "warning",
        )

    async def _notify_interrupted(self) -> None:
        await self._toast("Session Interrupted", "Task continuation paused due to interruption", "warning")

    # ── event handlers ────────────────────────────────────────

    async def on_session_idle(self, session_id: str) -> None:
        state = self.sessions.upsert(session_id)
        reason = self._blocked_reason(state)
        if reason:
            logger.debug("Idle ignored for %s: %s", session_id, reason)
            return
        if state.countdown_pending:
            logger.debug("Idle ignored for %s: countdown already pending", session_id)
            return

        generation = state.generation
        items = await self._fetch_items(session_id)
        incomplete = incomplete_items(items)
        if not self.sessions.is_current(state):
            return

        if not incomplete:
            if items and not state.completion_shown:
                state.completion_shown = True
                logger.info("All %d task(s) complete for %s", len(items), session_id)
                log_decision(ENGINE, session_id, "all_complete", total=len(items))
                await self._status(state, "All tasks completed!")
            return

        state.completion_shown = False
        reason = self._stale_reason(state, generation)
        if reason:
            logger.debug("Countdown not started for %s: %s", session_id, reason)
            return
        await self.start_countdown(session_id, len(incomplete))

    async def start_countdown(self, session_id: str, incomplete_count: int) -> bool:
        """Schedule the continuation. Returns False if one is already pending."""
        state = self.sessions.upsert(session_id)
        if state.countdown_pending:
            return False

        generation = state.generation
        seconds = self.options.countdown_seconds
        remaining = [seconds]

        def _tick() -> Any:
            remaining[0] -= 1
            if remaining[0] > 0:
                return self._show_countdown(remaining[0], incomplete_count)
            return None

        if seconds > 1:
            state.countdown_interval = self.scheduler.call_every(1.0, _tick, name=f"countdown-tick:{session_id}")
        state.countdown_timer = self.scheduler.call_later(
            seconds,
            lambda: self._fire_countdown(state, generation),
            name=f"countdown:{session_id}",
        )
        logger.info(
            "Countdown started for %s: %gs, %d task(s) remaining", session_id, seconds, incomplete_count
        )
        log_decision(ENGINE, session_id, "countdown_started", seconds=seconds, incomplete=incomplete_count)
        await self._show_countdown(seconds, incomplete_count)
        return True

    async def _fire_countdown(self, state: ContinuationSessionState, generation: int) -> None:
        session_id = state.session_id
        self.scheduler.cancel(state.countdown_interval)
        state.countdown_interval = None
        state.countdown_timer = None

        reason = self._stale_reason(state, generation)
        if reason:
            logger.debug("Continuation aborted for %s: %s", session_id, reason)
            log_decision(ENGINE, session_id, "continuation_aborted", reason=reason)
            return

        items = await self._fetch_items(session_id)
        incomplete = incomplete_items(items)
        if not incomplete:
            logger.debug("Continuation skipped for %s: no incomplete tasks", session_id)
            log_decision(ENGINE, session_id, "continuation_aborted", reason="no_incomplete_tasks")
            return

        reason = self._stale_reason(state, generation)
        if reason:
            logger.debug("Continuation aborted after fetch for %s: %s", session_id, reason)
            log_decision(ENGINE, session_id, "continuation_aborted", reason=reason)
            return

        prompt = continuation_template(items, self.options.template_path)
        agent, model = self._agent_model(state)
        try:
            await self.host.send_instruction(session_id, prompt, agent=agent, model=model)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send continuation to %s: %s", session_id, exc)
            log_decision(ENGINE, session_id, "continuation_failed", error=str(exc))
            return
        logger.info("Continuation sent to %s (%d task(s) remaining)", session_id, len(incomplete))
        log_decision(ENGINE, session_id, "continuation_sent", incomplete=len(incomplete), total=len(items))

    async def on_session_error(self, session_id: str, error: Any = None) -> None:
        state = self.sessions.upsert(session_id)
        self._cancel_countdown(state)
        state.last_error_at = self.scheduler.now()
        interrupted = classify_error(error)
        logger.debug("Session error for %s (interruption=%s): %s", session_id, interrupted, explain_error(error))
        log_decision(ENGINE, session_id, "cooldown_started", interruption=interrupted)
        if interrupted:
            await self._notify_interrupted()

    async def on_user_message(
        self,
        session_id: str,
        message_id: Optional[str] = None,
        timestamp: Optional[float] = None,
        text: str = "",
        error: Any = None,
        agent: Optional[str] = None,
        model: Any = None,
    ) -> bool:
        """Handle a user message. Returns False if it was dropped as a duplicate."""
        state = self.sessions.upsert(session_id)
        if message_id is not None and message_id == state.last_processed_message_id:
            logger.debug("Duplicate message %s for %s dropped", message_id, session_id)
            return False
        if (
            timestamp is not None
            and state.last_message_timestamp is not None
            and timestamp <= state.last_message_timestamp
        ):
            logger.debug("Out-of-order message %s for %s dropped", message_id, session_id)
            return False
        if message_id is not None:
            state.last_processed_message_id = message_id
        if timestamp is not None:
            state.last_message_timestamp = timestamp

        if error is not None and classify_error(error):
            self._cancel_countdown(state, mark_pending=True)
            state.last_error_at = self.scheduler.now()
            logger.info("Interruption on %s: %s", session_id, explain_error(error))
            log_decision(ENGINE, session_id, "cancelled", reason="interruption")
            await self._notify_interrupted()
            return True

        if classify_user_text(text):
            self._cancel_countdown(state, mark_pending=True)
            state.last_error_at = self.scheduler.now()
            logger.info("Cancellation requested by user on %s", session_id)
            log_decision(ENGINE, session_id, "cancelled", reason="user_request")
            return True

        if self._cancel_countdown(state):
            logger.debug("Countdown cancelled for %s: user activity", session_id)
            log_decision(ENGINE, session_id, "countdown_cancelled", reason="user_activity")
        state.last_error_at = None
        state.pending_cancellation = False
        if agent or model:
            state.agent = agent
            state.model = model
        return True

    async def on_message_error(self, session_id: str, error: Any) -> None:
        """Interruption errors carried on agent messages."""
        if not classify_error(error):
            return
        state = self.sessions.upsert(session_id)
        self._cancel_countdown(state, mark_pending=True)
        state.last_error_at = self.scheduler.now()
        logger.info("Interrupted message on %s: %s", session_id, explain_error(error))
        log_decision(ENGINE, session_id, "cancelled", reason="message_interrupted")
        await self._notify_interrupted()

    async def on_session_busy(self, session_id: str) -> None:
        state = self.sessions.get(session_id)
        if state is None:
            return
        if self._cancel_countdown(state):
            logger.debug("Countdown cancelled for %s: session busy", session_id)
            log_decision(ENGINE, session_id, "countdown_cancelled", reason="busy")

    async def on_session_cancelled(self, session_id: str) -> None:
        state = self.sessions.upsert(session_id)
        self._cancel_countdown(state, mark_pending=True)
        state.last_error_at = self.scheduler.now()
        log_decision(ENGINE, session_id, "cancelled", reason="session_cancelled")

    async def on_session_deleted(self, session_id: str) -> None:
        state = self.sessions.drop(session_id)
        if state is not None:
            self._cancel_countdown(state)
            logger.debug("Session %s deleted: continuation state dropped", session_id)

    # ── external control ──────────────────────────────────────

    def mark_recovering(self, session_id: str) -> None:
        state = self.sessions.upsert(session_id)
        state.is_recovering = True
        self._cancel_countdown(state)
        log_decision(ENGINE, session_id, "recovering")

    def mark_recovery_complete(self, session_id: str) -> None:
        state = self.sessions.get(session_id)
        if state is not None:
            state.is_recovering = False
            log_decision(ENGINE, session_id, "recovery_complete")

    def cancel(self, session_id: str) -> None:
        """Drop any countdown and reset cooldown, recovery and cancellation flags."""
        state = self.sessions.get(session_id)
        if state is None:
            return
        self._cancel_countdown(state)
        state.last_error_at = None
        state.is_recovering = False
        state.pending_cancellation = False

    def cleanup(self) -> None:
        for state in self.sessions.values():
            self._cancel_countdown(state)
        self.sessions.clear()

    def has_pending_countdown(self, session_id: str) -> bool:
        state = self.sessions.get(session_id)
        return state is not None and state.countdown_pending

    def status(self) -> list[dict[str, Any]]:
        now = self.scheduler.now()
        return [state.snapshot(now) for state in self.sessions.values()]
