"""Tests for the task continuation engine (countdown, cooldown, cancellation)."""
from __future__ import annotations

import asyncio

import pytest

from agentloop.core.continuation import ContinuationEngine, ContinuationOptions


def _engine(host, clock, **options) -> ContinuationEngine:
    return ContinuationEngine(host, clock, ContinuationOptions(**options))


def test_options_validation() -> None:
    with pytest.raises(ValueError):
        ContinuationOptions(countdown_seconds=-1)
    with pytest.raises(ValueError):
        ContinuationOptions(error_cooldown_ms=-5)


class TestCountdown:
    def test_two_pending_one_completed(self, host, clock) -> None:
        host.set_items(("Write parser", "completed"), ("Write tests", "pending"), ("Update docs", "in_progress"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            assert engine.has_pending_countdown("s")
            assert host.toasts[0]["text"] == "Resuming in 2s... (2 tasks remaining)"
            assert host.toasts[0]["title"] == "Task Continuation"
            assert host.toasts[0]["duration_ms"] == 900
            await clock.advance(1)
            assert host.instructions == []
            assert host.toasts[1]["text"] == "Resuming in 1s... (2 tasks remaining)"
            await clock.advance(1)

        asyncio.run(scenario())
        assert len(host.instructions) == 1
        text = host.instructions[0]["text"]
        assert text.startswith("[SYSTEM - AUTO-CONTINUATION]")
        assert "1. [pending] Write tests" in text
        assert "2. [in_progress] Update docs" in text
        assert text.endswith("[Status: 1/3 completed, 2 remaining]")
        assert not engine.has_pending_countdown("s")

    def test_repeated_idle_starts_one_countdown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_idle("s")
            await engine.on_session_idle("s")
            await clock.advance(5)

        asyncio.run(scenario())
        assert len(host.instructions) == 1

    def test_short_countdown_has_no_ticks(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock, countdown_seconds=0.5)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            assert len(clock.list()) == 1
            await clock.advance(0.5)

        asyncio.run(scenario())
        assert len(host.toasts) == 1
        assert len(host.instructions) == 1

    def test_nothing_when_no_items(self, host, clock) -> None:
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert host.notices == []
        assert host.toasts == []

    def test_all_complete_notice_shown_once(self, host, clock) -> None:
        host.set_items(("a", "completed"), ("b", "cancelled"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_idle("s")

        asyncio.run(scenario())
        assert [n["text"] for n in host.notices] == ["All tasks completed!"]
        assert host.instructions == []

    def test_tasks_finishing_during_countdown_abort_send(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            host.set_items(("a", "completed"))
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions == []

    def test_fetch_failure_is_quiet(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        host.fail_fetch = True
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert not engine.has_pending_countdown("s")

    def test_send_and_toast_failures_do_not_raise(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        host.fail_send = True
        host.fail_toast = True
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions == []

    def test_tracked_agent_and_model_used(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock, agent="default-agent")

        async def scenario() -> None:
            await engine.on_user_message("s", message_id="m1", text="do it", agent="build", model={"modelID": "x"})
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions[0]["agent"] == "build"
        assert host.instructions[0]["model"] == {"modelID": "x"}

    def test_configured_agent_is_default(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock, agent="default-agent")

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions[0]["agent"] == "default-agent"

    def test_custom_template(self, host, clock, tmp_path) -> None:
        template = tmp_path / "c.md"
        template.write_text("Continue {pending_count}/{total_count}", encoding="utf-8")
        host.set_items(("a", "pending"), ("b", "completed"))
        engine = _engine(host, clock, template_path=str(template))

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions[0]["text"] == "Continue 1/2"


class TestCancellation:
    def test_user_message_cancels_countdown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await clock.advance(1)
            assert await engine.on_user_message("s", message_id="m1", text="also add logging")
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert clock.list() == []

    def test_cancel_during_fire_fetch_wins(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def interrupt() -> None:
            host.on_fetch = None
            await engine.on_user_message("s", message_id="m1", text="wait")

        async def scenario() -> None:
            await engine.on_session_idle("s")
            host.on_fetch = interrupt
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.fetch_count == 2
        assert host.instructions == []

    def test_busy_cancels_countdown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_busy("s")
            await clock.advance(5)
            # Busy does not block the next idle
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert len(host.instructions) == 1

    def test_busy_for_unknown_session_is_ignored(self, host, clock) -> None:
        engine = _engine(host, clock)
        asyncio.run(engine.on_session_busy("nobody"))
        assert len(engine.sessions) == 0

    def test_stop_request_blocks_until_next_user_message(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_user_message("s", message_id="m1", text="stop")
            await clock.advance(10)
            await engine.on_session_idle("s")
            await clock.advance(10)
            assert host.instructions == []
            await engine.on_user_message("s", message_id="m2", text="ok, carry on")
            await engine.on_session_idle("s")
            await clock.advance(2)

        asyncio.run(scenario())
        assert len(host.instructions) == 1

    def test_interruption_error_on_user_message(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_user_message("s", message_id="m1", error={"name": "MessageAbortedError"})
            await clock.advance(10)
            await engine.on_session_idle("s")
            await clock.advance(10)

        asyncio.run(scenario())
        assert host.instructions == []
        assert "Session Interrupted" in host.toast_titles()

    def test_message_error_interruption(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_message_error("s", {"name": "APIError", "message": "overloaded"})
            assert engine.has_pending_countdown("s")
            await engine.on_message_error("s", {"name": "AbortError"})
            assert not engine.has_pending_countdown("s")

        asyncio.run(scenario())

    def test_session_cancelled(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_cancelled("s")
            await clock.advance(10)
            await engine.on_session_idle("s")
            await clock.advance(10)

        asyncio.run(scenario())
        assert host.instructions == []

    def test_session_deleted_drops_state(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_deleted("s")
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert engine.sessions.get("s") is None
        assert clock.list() == []

    def test_deleted_during_fetch(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def delete() -> None:
            host.on_fetch = None
            await engine.on_session_deleted("s")

        async def scenario() -> None:
            await engine.on_session_idle("s")
            host.on_fetch = delete
            await clock.advance(2)

        asyncio.run(scenario())
        assert host.instructions == []

    def test_cancel_and_cleanup(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s1")
            await engine.on_session_idle("s2")
            engine.cancel("s1")
            assert not engine.has_pending_countdown("s1")
            assert engine.has_pending_countdown("s2")
            engine.cleanup()
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert len(engine.sessions) == 0


class TestCooldownAndRecovery:
    def test_error_cooldown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_error("s", {"name": "APIError", "message": "overloaded"})
            await engine.on_session_idle("s")
            assert not engine.has_pending_countdown("s")
            await clock.advance(2.9)
            await engine.on_session_idle("s")
            assert not engine.has_pending_countdown("s")
            await clock.advance(0.2)
            await engine.on_session_idle("s")
            assert engine.has_pending_countdown("s")

        asyncio.run(scenario())
        # A plain error is not an interruption
        assert "Session Interrupted" not in host.toast_titles()

    def test_error_cancels_running_countdown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_idle("s")
            await engine.on_session_error("s", {"name": "AbortError"})
            await clock.advance(5)

        asyncio.run(scenario())
        assert host.instructions == []
        assert "Session Interrupted" in host.toast_titles()

    def test_user_message_clears_cooldown(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            await engine.on_session_error("s", "boom")
            await engine.on_user_message("s", message_id="m1", text="try again")
            await engine.on_session_idle("s")
            assert engine.has_pending_countdown("s")

        asyncio.run(scenario())

    def test_recovering_blocks_idle(self, host, clock) -> None:
        host.set_items(("a", "pending"))
        engine = _engine(host, clock)

        async def scenario() -> None:
            engine.mark_recovering("s")
            await engine.on_session_idle("s")
            assert not engine.has_pending_countdown("s")
            engine.mark_recovery_complete("s")
            await engine.on_session_idle("s")
            assert engine.has_pending_countdown("s")

        asyncio.run(scenario())


class TestMessageDedup:
    def test_duplicate_message_id_dropped(self, host, clock) -> None:
        engine = _engine(host, clock)

        async def scenario() -> None:
            assert await engine.on_user_message("s", message_id="m1", timestamp=10.0, text="hi")
            assert not await engine.on_user_message("s", message_id="m1", timestamp=11.0, text="hi")

        asyncio.run(scenario())

    def test_older_timestamp_dropped(self, host, clock) -> None:
        engine = _engine(host, clock)

        async def scenario() -> None:
            assert await engine.on_user_message("s", message_id="m2", timestamp=20.0, text="new")
            assert not await engine.on_user_message("s", message_id="m1", timestamp=10.0, text="stop")

        asyncio.run(scenario())
        assert engine.sessions.get("s").pending_cancellation is False

    def test_messages_without_ids_always_processed(self, host, clock) -> None:
        engine = _engine(host, clock)

        async def scenario() -> None:
            assert await engine.on_user_message("s", text="one")
            assert await engine.on_user_message("s", text="two")

        asyncio.run(scenario())


def test_status_snapshot(host, clock) -> None:
    host.set_items(("a", "pending"))
    engine = _engine(host, clock)

    async def scenario() -> None:
        await engine.on_session_idle("s")

    asyncio.run(scenario())
    [snapshot] = engine.status()
    assert snapshot["session_id"] == "s"
    assert snapshot["countdown_pending"] is True
    assert snapshot["seconds_since_error"] is None
