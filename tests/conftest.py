"""Shared fixtures: a recording in-memory host and a virtual clock."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import pytest

from agentloop.core.timers import VirtualTimerScheduler
from agentloop.core.todos import TaskItem
from agentloop.integrations.host_client import HostClient, HostError


class FakeHost(HostClient):
    """HostClient that records every call instead of talking HTTP."""

    def __init__(self) -> None:
        self.items: list[TaskItem] = []
        self.transcript = ""
        self.instructions: list[dict[str, Any]] = []
        self.notices: list[dict[str, Any]] = []
        self.toasts: list[dict[str, Any]] = []
        self.fetch_count = 0
        self.fail_fetch = False
        self.fail_send = False
        self.fail_toast = False
        # Awaited inside fetch_task_items, after the counter is bumped
        self.on_fetch: Optional[Callable[[], Awaitable[None]]] = None

    def set_items(self, *pairs: tuple[str, str]) -> None:
        self.items = [TaskItem(id=str(i), content=content, status=status) for i, (content, status) in enumerate(pairs)]

    async def fetch_task_items(self, session_id: str) -> list[TaskItem]:
        self.fetch_count += 1
        if self.on_fetch is not None:
            await self.on_fetch()
        if self.fail_fetch:
            raise HostError("todo endpoint unavailable")
        return list(self.items)

    async def fetch_transcript(self, session_id: str) -> str:
        return self.transcript

    async def send_instruction(self, session_id: str, text: str, agent: Optional[str] = None, model: Any = None) -> None:
        if self.fail_send:
            raise HostError("send failed")
        self.instructions.append({"session_id": session_id, "text": text, "agent": agent, "model": model})

    async def send_transient_notice(self, session_id: str, text: str, agent: Optional[str] = None, model: Any = None) -> None:
        self.notices.append({"session_id": session_id, "text": text, "agent": agent, "model": model})

    async def show_countdown_notice(self, title: str, text: str, severity: str = "info", duration_ms: int = 900) -> None:
        if self.fail_toast:
            raise HostError("toast failed")
        self.toasts.append({"title": title, "text": text, "severity": severity, "duration_ms": duration_ms})

    def toast_titles(self) -> list[str]:
        return [t["title"] for t in self.toasts]


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def clock() -> VirtualTimerScheduler:
    return VirtualTimerScheduler(start=1000.0)
