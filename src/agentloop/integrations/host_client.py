"""Outbound operations against the agent host.

The engines only know the abstract ``HostClient``.  ``HttpHostClient`` talks to
the host's REST API; embedders can pass any other implementation.

Implementations may raise on failure; the engines catch and log every host
error and carry on.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from agentloop.core.todos import TaskItem, parse_task_items

logger = logging.getLogger("agentloop.host_client")


class HostError(RuntimeError):
    """A host API call failed (transport error or non-2xx status)."""


class HostClient(ABC):
    @abstractmethod
    async def fetch_task_items(self, session_id: str) -> list[TaskItem]:
        ...

    @abstractmethod
    async def fetch_transcript(self, session_id: str) -> str:
        ...

    @abstractmethod
    async def send_instruction(
        self,
        session_id: str,
        text: str,
        agent: Optional[str] = None,
        model: Any = None,
    ) -> None:
        ...

    @abstractmethod
    async def send_transient_notice(
        self,
        session_id: str,
        text: str,
        agent: Optional[str] = None,
        model: Any = None,
    ) -> None:
        """Post a status line the agent does not reply to."""

    @abstractmethod
    async def show_countdown_notice(
        self,
        title: str,
        text: str,
        severity: str = "info",
        duration_ms: int = 900,
    ) -> None:
        """Show a short-lived toast in the host UI."""


def _transcript_from_messages(payload: Any) -> str:
    if isinstance(payload, dict):
        payload = payload.get("data") or []
    if not isinstance(payload, list):
        return ""
    chunks: list[str] = []
    for message in payload:
        if not isinstance(message, dict):
            continue
        for part in message.get("parts") or []:
            if isinstance(part, dict) and part.get("type", "text") == "text" and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    return "\n".join(chunks)


class HttpHostClient(HostClient):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        directory: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.directory = directory
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        params = kwargs.pop("params", None) or {}
        if self.directory:
            params.setdefault("directory", self.directory)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=self._headers(), params=params, **kwargs)
        except httpx.RequestError as exc:
            raise HostError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise HostError(f"{method} {path} returned {resp.status_code}: {resp.text[:500]}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def fetch_task_items(self, session_id: str) -> list[TaskItem]:
        payload = await self._request("GET", f"session/{session_id}/todo")
        return parse_task_items(payload)

    async def fetch_transcript(self, session_id: str) -> str:
        payload = await self._request("GET", f"session/{session_id}/message")
        return _transcript_from_messages(payload)

    async def send_instruction(
        self,
        session_id: str,
        text: str,
        agent: Optional[str] = None,
        model: Any = None,
    ) -> None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = model
        await self._request("POST", f"session/{session_id}/message", json=body)

    async def send_transient_notice(
        self,
        session_id: str,
        text: str,
        agent: Optional[str] = None,
        model: Any = None,
    ) -> None:
        body: dict[str, Any] = {
            "noReply": True,
            "parts": [{"type": "text", "text": text, "ignored": True}],
        }
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = model
        await self._request("POST", f"session/{session_id}/message", json=body)

    async def show_countdown_notice(
        self,
        title: str,
        text: str,
        severity: str = "info",
        duration_ms: int = 900,
    ) -> None:
        body = {"title": title, "message": text, "variant": severity, "duration": duration_ms}
        await self._request("POST", "tui/show-toast", json=body)
