"""Tests for the MCP JSON-RPC handler exposing the loop tools."""
from __future__ import annotations

import asyncio

import pytest

from agentloop.core.iteration import IterationEngine
from agentloop.core.state_store import IterationStateStore
from agentloop.mcp.protocol import LOOP_TOOLS, MCPProtocolHandler


@pytest.fixture
def engine(host, clock, tmp_path) -> IterationEngine:
    return IterationEngine(host, IterationStateStore(str(tmp_path)), clock)


def _call(handler: MCPProtocolHandler, name: str, arguments: dict | None = None, **kwargs) -> dict:
    body = {"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {"name": name, "arguments": arguments or {}}}
    return asyncio.run(handler.handle_request(body, **kwargs))


def _text(response: dict) -> str:
    return response["result"]["content"][0]["text"]


def test_initialize(engine) -> None:
    handler = MCPProtocolHandler(engine)
    resp = asyncio.run(handler.handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}))
    assert resp["id"] == 1
    assert resp["result"]["protocolVersion"] == "2025-03-26"
    assert resp["result"]["serverInfo"]["name"] == "agentloop"


def test_tools_list(engine) -> None:
    handler = MCPProtocolHandler(engine)
    resp = asyncio.run(handler.handle_request({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}))
    names = [tool["name"] for tool in resp["result"]["tools"]]
    assert names == [tool["name"] for tool in LOOP_TOOLS]
    assert "iteration_loop_complete" in names


def test_notification_gets_empty_response(engine) -> None:
    handler = MCPProtocolHandler(engine)
    assert asyncio.run(handler.handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"})) == {}


def test_unknown_method(engine) -> None:
    handler = MCPProtocolHandler(engine)
    resp = asyncio.run(handler.handle_request({"jsonrpc": "2.0", "id": 3, "method": "resources/list"}))
    assert resp["error"]["code"] == -32603
    assert "Unknown method" in resp["error"]["message"]


def test_start_status_cancel(engine) -> None:
    handler = MCPProtocolHandler(engine)
    started = _call(handler, "iteration_loop_start", {"task": "Port the CLI", "maxIterations": 4}, session_id="s")
    assert started["result"]["isError"] is False
    assert "Max Iterations: 4" in _text(started)
    assert engine.get_state().session_id == "s"

    status = _text(_call(handler, "iteration_loop_status"))
    assert "- Iteration: 1/4" in status
    assert "- Task: Port the CLI" in status

    assert _text(_call(handler, "iteration_loop_cancel", {"session_id": "s"})) == "Iteration loop cancelled successfully."
    assert _text(_call(handler, "iteration_loop_cancel", session_id="s")) == "No active iteration loop to cancel."
    assert _text(_call(handler, "iteration_loop_status")) == "No active iteration loop."


def test_start_requires_task_and_session(engine) -> None:
    handler = MCPProtocolHandler(engine)
    no_session = _call(handler, "iteration_loop_start", {"task": "x"})
    assert no_session["result"]["isError"] is True
    no_task = _call(handler, "iteration_loop_start", {"task": "  "}, session_id="s")
    assert no_task["result"]["isError"] is True
    assert "task is required" in _text(no_task)


def test_complete(engine) -> None:
    handler = MCPProtocolHandler(engine)
    _call(handler, "iteration_loop_start", {"task": "t"}, session_id="s")
    text = _text(_call(handler, "iteration_loop_complete", {"summary": "all tests pass"}, session_id="s"))
    assert text == "Iteration loop completed successfully!\n\nIterations: 1\nSummary: all tests pass"
    assert engine.get_state() is None


def test_complete_restricted_to_advisor(engine) -> None:
    handler = MCPProtocolHandler(engine, completion_agent="advisor")
    _call(handler, "iteration_loop_start", {"task": "t", "maxIterations": 6}, session_id="s")
    refused = _text(_call(handler, "iteration_loop_complete", session_id="s", agent="build"))
    assert "Completion is controlled by the **advisor** agent" in refused
    assert "Current iteration: 1/6" in refused
    assert engine.get_state() is not None

    accepted = _text(_call(handler, "iteration_loop_complete", session_id="s", agent="advisor"))
    assert accepted.startswith("Iteration loop completed successfully!")


def test_unknown_tool(engine) -> None:
    handler = MCPProtocolHandler(engine)
    resp = _call(handler, "iteration_loop_explode", session_id="s")
    assert resp["result"]["isError"] is True
    assert "Unknown tool" in _text(resp)
