"""Cancelable timers for the loop engines.

Engines never touch ``asyncio`` timers directly; they go through a
``TimerScheduler`` so that tests can swap in ``VirtualTimerScheduler`` and
advance time deterministically.  Engines also read the clock through
``scheduler.now()`` so cooldowns and debounce windows follow the same time
source as the timers.

Callbacks may be plain functions or coroutine functions.  A failing callback
is logged and never takes the scheduler down with it.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

logger = logging.getLogger("agentloop.timers")

TimerCallback = Callable[[], Union[None, Awaitable[None]]]

_seq = itertools.count()


@dataclass
class ScheduledTimer:
    timer_id: str
    name: str
    run_at: float
    callback: TimerCallback = field(repr=False)
    interval: Optional[float] = None  # If set, the timer re-arms after each fire
    created_at: float = 0.0
    completed_at: Optional[float] = None
    cancelled: bool = False
    fire_count: int = 0
    seq: int = field(default_factory=lambda: next(_seq))
    _handle: Any = field(default=None, repr=False, compare=False)

    @property
    def active(self) -> bool:
        return not self.cancelled and self.completed_at is None


class TimerScheduler:
    """Bookkeeping shared by the real and the virtual scheduler."""

    def __init__(self) -> None:
        self._timers: Dict[str, ScheduledTimer] = {}

    # ── clock / arming hooks ──────────────────────────────────

    def now(self) -> float:
        raise NotImplementedError

    def _arm(self, timer: ScheduledTimer) -> None:
        raise NotImplementedError

    def _disarm(self, timer: ScheduledTimer) -> None:
        raise NotImplementedError

    # ── public API ────────────────────────────────────────────

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> ScheduledTimer:
        """Run *callback* once, *delay* seconds from now."""
        now = self.now()
        timer = ScheduledTimer(
            timer_id=f"timer-{uuid.uuid4().hex[:12]}",
            name=name,
            run_at=now + max(delay, 0.0),
            callback=callback,
            created_at=now,
        )
        self._timers[timer.timer_id] = timer
        self._arm(timer)
        return timer

    def call_every(self, interval: float, callback: TimerCallback, name: str = "interval") -> ScheduledTimer:
        """Run *callback* every *interval* seconds until cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        now = self.now()
        timer = ScheduledTimer(
            timer_id=f"timer-{uuid.uuid4().hex[:12]}",
            name=name,
            run_at=now + interval,
            callback=callback,
            interval=interval,
            created_at=now,
        )
        self._timers[timer.timer_id] = timer
        self._arm(timer)
        return timer

    def cancel(self, timer: Union[ScheduledTimer, str, None]) -> bool:
        """Cancel a timer. Returns True if it was still pending."""
        if timer is None:
            return False
        if isinstance(timer, str):
            timer = self._timers.get(timer)
            if timer is None:
                return False
        if not timer.active:
            return False
        timer.cancelled = True
        timer.completed_at = self.now()
        self._disarm(timer)
        self._timers.pop(timer.timer_id, None)
        return True

    def get(self, timer_id: str) -> Optional[ScheduledTimer]:
        return self._timers.get(timer_id)

    def list(self) -> list[ScheduledTimer]:
        return [t for t in self._timers.values() if t.active]

    def clear_all(self) -> int:
        """Cancel every pending timer. Returns the number cancelled."""
        count = 0
        for timer in list(self._timers.values()):
            if self.cancel(timer):
                count += 1
        return count

    def due(self, now: Optional[float] = None) -> list[ScheduledTimer]:
        now = self.now() if now is None else now
        result = [t for t in self._timers.values() if t.active and t.run_at <= now]
        result.sort(key=lambda t: (t.run_at, t.seq))
        return result

    # ── firing ────────────────────────────────────────────────

    async def _run(self, timer: ScheduledTimer) -> None:
        if not timer.active:
            return
        timer.fire_count += 1
        if timer.interval:
            # Recurring: advance run_at and re-arm before running the callback
            timer.run_at += timer.interval
            self._arm(timer)
        else:
            timer.completed_at = self.now()
            self._timers.pop(timer.timer_id, None)
        try:
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Timer %s (%s) callback failed", timer.name, timer.timer_id)


class AsyncioTimerScheduler(TimerScheduler):
    """Timers on the running asyncio loop (wall-clock, monotonic)."""

    def __init__(self) -> None:
        super().__init__()
        self._tasks: Set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def _arm(self, timer: ScheduledTimer) -> None:
        loop = asyncio.get_running_loop()
        delay = max(timer.run_at - self.now(), 0.0)
        timer._handle = loop.call_later(delay, self._spawn, timer)

    def _disarm(self, timer: ScheduledTimer) -> None:
        if timer._handle is not None:
            timer._handle.cancel()
            timer._handle = None

    def _spawn(self, timer: ScheduledTimer) -> None:
        if not timer.active:
            return
        task = asyncio.ensure_future(self._run(timer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for callbacks that are already running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class VirtualTimerScheduler(TimerScheduler):
    """Manually advanced clock for deterministic tests.

    Nothing fires on its own; ``await advance(seconds)`` runs every timer that
    becomes due, in ``run_at`` order, awaiting each callback to completion.
    """

    def __init__(self, start: float = 0.0) -> None:
        super().__init__()
        self._now = start

    def now(self) -> float:
        return self._now

    def _arm(self, timer: ScheduledTimer) -> None:
        pass

    def _disarm(self, timer: ScheduledTimer) -> None:
        pass

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due timers. Returns fires run."""
        target = self._now + max(seconds, 0.0)
        fired = 0
        while True:
            pending = self.due(target)
            if not pending:
                break
            timer = pending[0]
            self._now = max(self._now, timer.run_at)
            await self._run(timer)
            fired += 1
        self._now = target
        return fired

    async def run_pending(self) -> int:
        """Fire whatever is due at the current instant."""
        return await self.advance(0.0)
