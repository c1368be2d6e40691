"""Bounded iteration loop.

A loop repeats one task until the agent signals completion or the iteration
bound is hit.  The persisted record (``IterationStateStore``) is the source of
truth and is re-read on every operation; a record existing means a loop is in
progress, and every terminal transition deletes it.

Completion is detected one of two ways per deployment:

* ``marker``: the transcript contains ``<completion>MARKER</completion>``.
* ``evaluator``: an async judge inspects the transcript and returns an
  ``EvaluationResult``; its feedback is fed into the next instruction.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from agentloop.core.classifier import classify_error, classify_user_text
from agentloop.core.debounce import Debouncer
from agentloop.core.logging_config import log_decision
from agentloop.core.names import generate_codename
from agentloop.core.prompt_parser import build_iteration_start_prompt, parse_iteration_loop_tag
from agentloop.core.state_store import (
    DEFAULT_COMPLETION_MARKER,
    DEFAULT_MAX_ITERATIONS,
    IterationState,
    IterationStateStore,
)
from agentloop.core.templates import iteration_feedback_template, iteration_marker_template
from agentloop.core.timers import ScheduledTimer, TimerScheduler
from agentloop.integrations.host_client import HostClient

logger = logging.getLogger("agentloop.iteration")

ENGINE = "iteration"
COMPLETION_MODES = ("marker", "evaluator")
NOTICE_DURATION_MS = 5000


@dataclass(frozen=True)
class EvaluationRequest:
    session_id: str
    iteration: int
    max_iterations: int
    prompt: str
    transcript: str


@dataclass(frozen=True)
class EvaluationResult:
    is_complete: bool
    feedback: str = ""
    missing_items: Optional[list[str]] = None
    confidence: Optional[float] = None

    @classmethod
    def from_dict(cls, d: dict) -> "EvaluationResult":
        return cls(
            is_complete=bool(d.get("is_complete", d.get("isComplete", False))),
            feedback=str(d.get("feedback") or ""),
            missing_items=d.get("missing_items", d.get("missingItems")),
            confidence=d.get("confidence"),
        )


Evaluator = Callable[[EvaluationRequest], Awaitable[EvaluationResult]]


@dataclass(frozen=True)
class LoopResult:
    success: bool
    iterations: int
    message: str

    def to_dict(self) -> dict:
        return {"success": self.success, "iterations": self.iterations, "message": self.message}


@dataclass(frozen=True)
class PromptInterception:
    should_intercept: bool
    modified_prompt: str


@dataclass
class IterationOptions:
    default_max_iterations: int = DEFAULT_MAX_ITERATIONS
    default_completion_marker: str = DEFAULT_COMPLETION_MARKER
    codename_markers: bool = False
    completion_mode: str = "marker"
    debounce_ms: int = 3000
    recovery_window_ms: int = 5000
    agent: Optional[str] = None
    model: Any = None

    def __post_init__(self) -> None:
        if self.completion_mode not in COMPLETION_MODES:
            raise ValueError(
                f"completion_mode must be one of {', '.join(COMPLETION_MODES)}, got {self.completion_mode!r}"
            )
        if self.default_max_iterations < 1:
            raise ValueError("default_max_iterations must be at least 1")


def completion_pattern(marker: str) -> re.Pattern:
    """Pattern matching ``<completion>marker</completion>``; the marker is literal."""
    return re.compile(rf"<completion>\s*{re.escape(marker)}\s*</completion>", re.IGNORECASE | re.DOTALL)


def detect_completion_marker(transcript: str, marker: str) -> bool:
    if not transcript or not marker:
        return False
    return completion_pattern(marker).search(transcript) is not None


def _owned_by(state: IterationState, session_id: str) -> bool:
    return not state.session_id or state.session_id == session_id


class IterationEngine:
    def __init__(
        self,
        host: HostClient,
        store: IterationStateStore,
        scheduler: TimerScheduler,
        options: Optional[IterationOptions] = None,
        evaluator: Optional[Evaluator] = None,
    ) -> None:
        self.host = host
        self.store = store
        self.scheduler = scheduler
        self.options = options or IterationOptions()
        self.evaluator = evaluator
        if self.options.completion_mode == "evaluator" and evaluator is None:
            raise ValueError("completion_mode 'evaluator' requires an evaluator")
        self._debounce = Debouncer(self.options.debounce_ms / 1000.0, clock=scheduler.now)
        self._recovering: Dict[str, ScheduledTimer] = {}

    # ── recovery window ───────────────────────────────────────

    def is_recovering(self, session_id: str) -> bool:
        timer = self._recovering.get(session_id)
        return timer is not None and timer.active

    def _open_recovery_window(self, session_id: str) -> None:
        self.scheduler.cancel(self._recovering.pop(session_id, None))
        timer: Optional[ScheduledTimer] = None

        def _close() -> None:
            if self._recovering.get(session_id) is timer:
                del self._recovering[session_id]

        timer = self.scheduler.call_later(
            self.options.recovery_window_ms / 1000.0, _close, name=f"recovery:{session_id}"
        )
        self._recovering[session_id] = timer
        logger.debug("Recovery window opened for %s", session_id)

    def _drop_session(self, session_id: str) -> None:
        self.scheduler.cancel(self._recovering.pop(session_id, None))
        self._debounce.reset(session_id)

    # ── host calls (never raise) ──────────────────────────────

    async def _toast(self, title: str, text: str, severity: str) -> None:
        try:
            await self.host.show_countdown_notice(title, text, severity, NOTICE_DURATION_MS)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Toast failed (non-critical): %s", exc)

    async def _status(self, session_id: str, text: str) -> None:
        try:
            await self.host.send_transient_notice(
                session_id, text, agent=self.options.agent, model=self.options.model
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Status notice failed for %s (non-critical): %s", session_id, exc)

    async def _read_transcript(self, session_id: str, transcript_path: Optional[str]) -> str:
        if transcript_path:
            try:
                with open(transcript_path, "r", encoding="utf-8") as handle:
                    return handle.read()
            except OSError as exc:
                logger.warning("Failed to read transcript %s: %s", transcript_path, exc)
                return ""
        try:
            return await self.host.fetch_transcript(session_id) or ""
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch transcript for %s: %s", session_id, exc)
            return ""

    # ── loop control ──────────────────────────────────────────

    async def start_loop(
        self,
        session_id: str,
        task: str,
        max_iterations: Optional[int] = None,
        marker: Optional[str] = None,
    ) -> bool:
        existing = self.store.read()
        if existing is not None and existing.session_id and existing.session_id != session_id:
            logger.warning(
                "Refusing to start loop for %s: session %s already owns the active loop",
                session_id,
                existing.session_id,
            )
            return False

        max_iter = max(int(max_iterations or self.options.default_max_iterations), 1)
        if not marker:
            if self.options.codename_markers:
                marker = generate_codename()
            else:
                marker = self.options.default_completion_marker or DEFAULT_COMPLETION_MARKER
        state = IterationState(
            active=True,
            iteration=1,
            max_iterations=max_iter,
            completion_marker=marker,
            prompt=task,
            session_id=session_id,
        )
        if not self.store.write(state):
            return False
        self._debounce.reset(session_id)
        logger.info("Starting iteration 1 of %d for %s (marker=%s)", max_iter, session_id, marker)
        log_decision(ENGINE, session_id, "loop_started", max_iterations=max_iter, marker=marker)
        await self._status(session_id, f"Iteration Loop: Started (1/{max_iter})")
        return True

    async def cancel_loop(self, session_id: str) -> LoopResult:
        state = self.store.read()
        if state is None:
            return LoopResult(False, 0, "No active iteration loop to cancel")
        if not _owned_by(state, session_id):
            return LoopResult(False, 0, "Session ID does not match active loop")
        if not self.store.clear():
            return LoopResult(False, state.iteration, "Failed to clear iteration state")
        message = f"Loop cancelled at iteration {state.iteration}/{state.max_iterations}"
        logger.info("Iteration loop cancelled for %s at %d", session_id, state.iteration)
        log_decision(ENGINE, session_id, "loop_cancelled", iteration=state.iteration)
        await self._toast("Iteration Loop Cancelled", message, "warning")
        return LoopResult(True, state.iteration, message)

    async def complete_loop(self, session_id: str, summary: Optional[str] = None) -> LoopResult:
        state = self.store.read()
        if state is None:
            return LoopResult(False, 0, "No active iteration loop to complete")
        if not _owned_by(state, session_id):
            return LoopResult(False, 0, "Session ID does not match active loop")
        if not self.store.clear():
            return LoopResult(False, state.iteration, "Failed to clear iteration state")
        summary_text = f" - {summary}" if summary else ""
        message = f"Loop completed successfully after {state.iteration} iteration(s){summary_text}"
        logger.info("Iteration loop completed for %s after %d iteration(s)", session_id, state.iteration)
        log_decision(ENGINE, session_id, "loop_completed", iteration=state.iteration, source="explicit")
        await self._toast("Iteration Loop Complete!", f"Task completed after {state.iteration} iteration(s)", "success")
        return LoopResult(True, state.iteration, message)

    def get_state(self) -> Optional[IterationState]:
        return self.store.read()

    async def process_prompt(self, session_id: str, text: str) -> PromptInterception:
        """Start a loop from an ``<iterationLoop>`` tag and rewrite the prompt."""
        parsed = parse_iteration_loop_tag(text)
        if not parsed.found or not parsed.task:
            return PromptInterception(False, text)
        max_iter = parsed.max_iterations or self.options.default_max_iterations
        if not await self.start_loop(session_id, parsed.task, max_iter, parsed.marker):
            return PromptInterception(False, text)
        state = self.store.read()
        marker = state.completion_marker if state else "UNKNOWN"
        return PromptInterception(
            True,
            build_iteration_start_prompt(parsed.task, max_iter, marker, parsed.cleaned_prompt),
        )

    # ── event handlers ────────────────────────────────────────

    async def on_session_idle(self, session_id: str, transcript_path: Optional[str] = None) -> None:
        state = self.store.read()
        if state is None or not state.active:
            return
        if state.session_id and state.session_id != session_id:
            return
        if self.is_recovering(session_id):
            logger.debug("Idle ignored for %s: recovering", session_id)
            return
        if not self._debounce.allow(session_id):
            logger.debug("Idle ignored for %s: too soon since last action", session_id)
            return

        transcript = await self._read_transcript(session_id, transcript_path)
        feedback = ""
        if self.options.completion_mode == "marker":
            complete = detect_completion_marker(transcript, state.completion_marker)
        else:
            request = EvaluationRequest(
                session_id=session_id,
                iteration=state.iteration,
                max_iterations=state.max_iterations,
                prompt=state.prompt,
                transcript=transcript,
            )
            try:
                result = await self.evaluator(request)  # type: ignore[misc]
                if isinstance(result, dict):
                    result = EvaluationResult.from_dict(result)
            except Exception as exc:  # noqa: BLE001
                logger.error("Evaluation failed for %s: %s", session_id, exc)
                if self._still_current(state):
                    self.store.clear()
                log_decision(ENGINE, session_id, "loop_error", error=str(exc))
                await self._toast("Iteration Loop Error", f"Error during evaluation: {exc}", "error")
                return
            complete = result.is_complete
            feedback = result.feedback

        if not self._still_current(state):
            logger.debug("Loop for %s changed during evaluation; skipping", session_id)
            return

        if complete:
            self.store.clear()
            logger.info("Completion detected for %s after %d iteration(s)", session_id, state.iteration)
            log_decision(ENGINE, session_id, "loop_completed", iteration=state.iteration, source=self.options.completion_mode)
            detail = f": {feedback}" if feedback else ""
            await self._toast(
                "Iteration Loop Complete!",
                f"Task completed after {state.iteration} iteration(s){detail}",
                "success",
            )
            await self._status(
                session_id, f"Iteration Loop: Complete! Finished in {state.iteration} iteration(s){detail}"
            )
            return

        if state.iteration >= state.max_iterations:
            self.store.clear()
            logger.warning(
                "Max iterations reached without completion for %s (%d/%d)",
                session_id,
                state.iteration,
                state.max_iterations,
            )
            log_decision(ENGINE, session_id, "loop_stopped", iteration=state.iteration, max_iterations=state.max_iterations)
            await self._toast(
                "Iteration Loop Stopped",
                f"Max iterations ({state.max_iterations}) reached without completion",
                "warning",
            )
            await self._status(
                session_id, f"Iteration Loop: Stopped - Max iterations ({state.max_iterations}) reached"
            )
            return

        new_state = self.store.increment()
        if new_state is None:
            logger.error("Failed to increment iteration for %s", session_id)
            return
        if self.options.completion_mode == "marker":
            instruction = iteration_marker_template(
                iteration=new_state.iteration,
                max_iterations=new_state.max_iterations,
                marker=new_state.completion_marker,
                prompt=new_state.prompt,
            )
        else:
            instruction = iteration_feedback_template(
                iteration=new_state.iteration,
                max_iterations=new_state.max_iterations,
                feedback=feedback,
                prompt=new_state.prompt,
            )
        logger.info("Starting iteration %d of %d for %s", new_state.iteration, new_state.max_iterations, session_id)
        log_decision(
            ENGINE,
            session_id,
            "iteration_advanced",
            iteration=new_state.iteration,
            max_iterations=new_state.max_iterations,
        )
        await self._toast("Iteration Loop", f"Iteration {new_state.iteration}/{new_state.max_iterations}", "info")
        try:
            await self.host.send_instruction(
                session_id, instruction, agent=self.options.agent, model=self.options.model
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send iteration instruction to %s: %s", session_id, exc)

    def _still_current(self, state: IterationState) -> bool:
        current = self.store.read()
        return (
            current is not None
            and current.session_id == state.session_id
            and current.iteration == state.iteration
            and current.started_at == state.started_at
        )

    async def on_session_error(self, session_id: str) -> None:
        self._open_recovery_window(session_id)

    async def on_user_message(self, session_id: str, text: str = "", error: Any = None) -> None:
        if error is not None and classify_error(error):
            self._open_recovery_window(session_id)
            return
        if not text or parse_iteration_loop_tag(text).found:
            return
        if not classify_user_text(text):
            return
        state = self.store.read()
        if state is not None and _owned_by(state, session_id):
            result = await self.cancel_loop(session_id)
            logger.info("Loop cancelled by user request on %s: %s", session_id, result.message)

    async def on_session_deleted(self, session_id: str) -> None:
        state = self.store.read()
        if state is not None and state.session_id == session_id:
            self.store.clear()
            logger.debug("Session %s deleted: loop cleared", session_id)
            log_decision(ENGINE, session_id, "loop_cleared", reason="session_deleted")
        self._drop_session(session_id)

    def status(self) -> dict[str, Any]:
        state = self.store.read()
        return {
            "active": state is not None,
            "state": state.to_dict() if state else None,
            "completion_mode": self.options.completion_mode,
            "recovering_sessions": sorted(s for s in self._recovering if self.is_recovering(s)),
        }
