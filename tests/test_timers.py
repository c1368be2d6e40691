"""Tests for the timer schedulers and the debouncer."""
from __future__ import annotations

import asyncio

import pytest

from agentloop.core.debounce import Debouncer
from agentloop.core.timers import AsyncioTimerScheduler, VirtualTimerScheduler


class TestVirtualTimerScheduler:
    def test_call_later_fires_once_when_due(self) -> None:
        sched = VirtualTimerScheduler()
        fired: list[float] = []
        sched.call_later(2.0, lambda: fired.append(sched.now()))

        async def scenario() -> None:
            assert await sched.advance(1.5) == 0
            assert await sched.advance(0.5) == 1
            assert await sched.advance(10) == 0

        asyncio.run(scenario())
        assert fired == [2.0]
        assert sched.list() == []

    def test_cancel_prevents_fire(self) -> None:
        sched = VirtualTimerScheduler()
        fired: list[str] = []
        timer = sched.call_later(1.0, lambda: fired.append("x"))
        assert sched.cancel(timer) is True
        assert sched.cancel(timer) is False
        assert sched.cancel(None) is False
        asyncio.run(sched.advance(5))
        assert fired == []
        assert timer.cancelled

    def test_cancel_by_id(self) -> None:
        sched = VirtualTimerScheduler()
        timer = sched.call_later(1.0, lambda: None)
        assert sched.get(timer.timer_id) is timer
        assert sched.cancel(timer.timer_id) is True
        assert sched.cancel("timer-missing") is False

    def test_interval_fires_repeatedly(self) -> None:
        sched = VirtualTimerScheduler()
        ticks: list[float] = []
        timer = sched.call_every(1.0, lambda: ticks.append(sched.now()))
        asyncio.run(sched.advance(3.5))
        assert ticks == [1.0, 2.0, 3.0]
        assert timer.fire_count == 3
        sched.cancel(timer)
        asyncio.run(sched.advance(3))
        assert len(ticks) == 3

    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            VirtualTimerScheduler().call_every(0, lambda: None)

    def test_order_by_run_at_then_creation(self) -> None:
        sched = VirtualTimerScheduler()
        order: list[str] = []
        sched.call_later(2.0, lambda: order.append("late"))
        sched.call_later(1.0, lambda: order.append("first"))
        sched.call_later(1.0, lambda: order.append("second"))
        asyncio.run(sched.advance(2))
        assert order == ["first", "second", "late"]

    def test_async_callbacks_are_awaited(self) -> None:
        sched = VirtualTimerScheduler()
        done: list[str] = []

        async def job() -> None:
            await asyncio.sleep(0)
            done.append("ok")

        sched.call_later(1.0, job)
        asyncio.run(sched.advance(1))
        assert done == ["ok"]

    def test_failing_callback_does_not_stop_others(self) -> None:
        sched = VirtualTimerScheduler()
        done: list[str] = []

        def boom() -> None:
            raise RuntimeError("boom")

        sched.call_later(1.0, boom)
        sched.call_later(1.0, lambda: done.append("after"))
        asyncio.run(sched.advance(1))
        assert done == ["after"]

    def test_clear_all(self) -> None:
        sched = VirtualTimerScheduler()
        sched.call_later(1.0, lambda: None)
        sched.call_every(1.0, lambda: None)
        assert sched.clear_all() == 2
        assert sched.list() == []


class TestAsyncioTimerScheduler:
    def test_fires_on_running_loop(self) -> None:
        async def scenario() -> list[str]:
            sched = AsyncioTimerScheduler()
            fired: list[str] = []
            sched.call_later(0.01, lambda: fired.append("a"))
            cancelled = sched.call_later(0.01, lambda: fired.append("b"))
            sched.cancel(cancelled)
            await asyncio.sleep(0.05)
            await sched.drain()
            return fired

        assert asyncio.run(scenario()) == ["a"]


class TestDebouncer:
    def test_first_action_allowed_then_suppressed(self) -> None:
        now = [0.0]
        debounce = Debouncer(3.0, clock=lambda: now[0])
        assert debounce.allow("s")
        now[0] = 2.9
        assert not debounce.allow("s")
        assert debounce.remaining("s") == pytest.approx(0.1)
        now[0] = 3.0
        assert debounce.allow("s")

    def test_repeated_calls_inside_window_are_idempotent(self) -> None:
        now = [0.0]
        debounce = Debouncer(3.0, clock=lambda: now[0])
        assert debounce.allow("s")
        for t in (0.5, 1.0, 2.0, 2.5):
            now[0] = t
            assert not debounce.allow("s")
        # Suppressed calls do not extend the window
        now[0] = 3.0
        assert debounce.allow("s")

    def test_keys_are_independent_and_reset(self) -> None:
        now = [0.0]
        debounce = Debouncer(3.0, clock=lambda: now[0])
        assert debounce.allow("a")
        assert debounce.allow("b")
        assert not debounce.allow("a")
        debounce.reset("a")
        assert debounce.allow("a")
        debounce.reset()
        assert debounce.remaining("b") == 0.0
