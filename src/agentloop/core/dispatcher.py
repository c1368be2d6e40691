"""Route host events to the loop engines.

``LoopDispatcher.handle`` decodes a raw event once and hands the typed event
to each configured engine.  One engine failing never affects the other or the
caller.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Optional

from agentloop.core.config import Settings
from agentloop.core.continuation import ContinuationEngine, ContinuationOptions
from agentloop.core.events import (
    HostEvent,
    MessageUpdated,
    SessionBusy,
    SessionCancelled,
    SessionDeleted,
    SessionError,
    SessionIdle,
    UnknownEvent,
    decode_event,
)
from agentloop.core.iteration import Evaluator, IterationEngine, IterationOptions
from agentloop.core.state_store import IterationStateStore
from agentloop.core.templates import is_injected_text
from agentloop.core.timers import AsyncioTimerScheduler, TimerScheduler
from agentloop.integrations.advisor import AdvisorEvaluator
from agentloop.integrations.host_client import HostClient

logger = logging.getLogger("agentloop.dispatcher")


class LoopDispatcher:
    def __init__(
        self,
        continuation: Optional[ContinuationEngine] = None,
        iteration: Optional[IterationEngine] = None,
    ) -> None:
        self.continuation = continuation
        self.iteration = iteration

    async def _guarded(self, engine: str, call: Awaitable[Any]) -> None:
        try:
            await call
        except Exception:  # noqa: BLE001
            logger.exception("%s engine failed while handling event", engine)

    async def handle(self, raw: Any) -> Optional[HostEvent]:
        """Decode and route one raw event. Returns the decoded event, if any."""
        event = decode_event(raw)
        if event is None:
            logger.debug("Dropping event without session id: %s", raw.get("type") if isinstance(raw, dict) else raw)
            return None
        await self.dispatch(event)
        return event

    async def dispatch(self, event: HostEvent) -> None:
        cont, it = self.continuation, self.iteration
        sid = event.session_id

        if isinstance(event, SessionIdle):
            if cont:
                await self._guarded("continuation", cont.on_session_idle(sid))
            if it:
                await self._guarded("iteration", it.on_session_idle(sid, event.transcript_path))
        elif isinstance(event, SessionError):
            if cont:
                await self._guarded("continuation", cont.on_session_error(sid, event.error))
            if it:
                await self._guarded("iteration", it.on_session_error(sid))
        elif isinstance(event, MessageUpdated):
            await self._dispatch_message(event)
        elif isinstance(event, SessionBusy):
            if cont:
                await self._guarded("continuation", cont.on_session_busy(sid))
        elif isinstance(event, SessionCancelled):
            if cont:
                await self._guarded("continuation", cont.on_session_cancelled(sid))
            if it:
                await self._guarded("iteration", it.on_session_error(sid))
        elif isinstance(event, SessionDeleted):
            if cont:
                await self._guarded("continuation", cont.on_session_deleted(sid))
            if it:
                await self._guarded("iteration", it.on_session_deleted(sid))
        elif isinstance(event, UnknownEvent):
            logger.debug("Ignoring event %s for %s", event.type, sid)

    async def _dispatch_message(self, event: MessageUpdated) -> None:
        cont, it = self.continuation, self.iteration
        sid = event.session_id
        if event.is_user_input:
            if is_injected_text(event.text):
                logger.debug("Ignoring echo of injected instruction on %s", sid)
                return
            if cont:
                await self._guarded(
                    "continuation",
                    cont.on_user_message(
                        sid,
                        message_id=event.message_id,
                        timestamp=event.timestamp,
                        text=event.text,
                        error=event.error,
                        agent=event.agent,
                        model=event.model,
                    ),
                )
            if it:
                await self._guarded("iteration", it.on_user_message(sid, text=event.text, error=event.error))
        elif event.error is not None:
            if cont:
                await self._guarded("continuation", cont.on_message_error(sid, event.error))
            if it:
                await self._guarded("iteration", it.on_user_message(sid, error=event.error))


def build_dispatcher(
    settings: Settings,
    host: HostClient,
    scheduler: Optional[TimerScheduler] = None,
    evaluator: Optional[Evaluator] = None,
) -> LoopDispatcher:
    """Wire both engines from settings (either may be disabled)."""
    scheduler = scheduler or AsyncioTimerScheduler()
    continuation = None
    iteration = None
    if settings.task_continuation_enabled:
        continuation = ContinuationEngine(
            host,
            scheduler,
            ContinuationOptions(
                countdown_seconds=settings.countdown_seconds,
                error_cooldown_ms=settings.error_cooldown_ms,
                toast_duration_ms=settings.toast_duration_ms,
                agent=settings.agent,
                model=settings.model,
                template_path=settings.continuation_template_path,
            ),
        )
    if settings.iteration_loop_enabled:
        if settings.completion_mode == "evaluator" and evaluator is None:
            evaluator = AdvisorEvaluator(host, agent=settings.advisor_agent)
        store = IterationStateStore(os.path.abspath(settings.workspace_dir), settings.state_file_path)
        iteration = IterationEngine(
            host,
            store,
            scheduler,
            IterationOptions(
                default_max_iterations=settings.default_max_iterations,
                default_completion_marker=settings.default_completion_marker,
                codename_markers=settings.codename_markers,
                completion_mode=settings.completion_mode,
                debounce_ms=settings.iteration_debounce_ms,
                recovery_window_ms=settings.recovery_window_ms,
                agent=settings.agent,
                model=settings.model,
            ),
            evaluator=evaluator,
        )
    logger.info(
        "Dispatcher ready: continuation=%s iteration=%s (mode=%s)",
        continuation is not None,
        iteration is not None,
        settings.completion_mode,
    )
    return LoopDispatcher(continuation=continuation, iteration=iteration)
