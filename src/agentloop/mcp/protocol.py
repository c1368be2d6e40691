"""MCP JSON-RPC protocol handler.

Implements the Model Context Protocol over HTTP (Streamable HTTP transport)
for the iteration-loop tools.  The agent POSTs JSON-RPC requests to a single
endpoint and gets JSON-RPC responses back.

The calling session is taken from the tool arguments (``session_id``) or from
the ``?session_id=`` query parameter of the MCP URL; the calling agent from
``agent`` likewise.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

from agentloop import __version__
from agentloop.core.iteration import IterationEngine
from agentloop.core.logging_config import log_mcp_call

logger = logging.getLogger("agentloop.mcp.protocol")

# ── Tool definitions (returned by tools/list) ────────────────────

LOOP_TOOLS = [
    {
        "name": "iteration_loop_start",
        "description": (
            "Start an iteration loop for a complex task. The loop continues until the task is "
            "signalled complete or max iterations are reached. Use this when you see "
            "<iterationLoop> tags in user prompts, or when a task needs several attempts."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "The task to work on iteratively"},
                "maxIterations": {"type": "integer", "description": "Maximum number of iterations"},
                "marker": {"type": "string", "description": "Completion marker (generated or default if omitted)"},
                "session_id": {"type": "string", "description": "Session the loop belongs to"},
            },
            "required": ["task"],
        },
    },
    {
        "name": "iteration_loop_complete",
        "description": (
            "Signal that the iteration loop task is complete. Call this only when the task is "
            "fully done."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "Optional summary of what was accomplished"},
                "session_id": {"type": "string"},
            },
        },
    },
    {
        "name": "iteration_loop_cancel",
        "description": "Cancel the active iteration loop (use when abandoning the task).",
        "inputSchema": {"type": "object", "properties": {"session_id": {"type": "string"}}},
    },
    {
        "name": "iteration_loop_status",
        "description": "Get the current status of the iteration loop.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


class MCPProtocolHandler:
    """Handles MCP JSON-RPC requests and dispatches loop tool calls."""

    def __init__(
        self,
        iteration: IterationEngine,
        completion_agent: Optional[str] = None,
    ) -> None:
        self.iteration = iteration
        # When set, only this agent may call iteration_loop_complete
        self.completion_agent = completion_agent

    async def handle_request(
        self,
        body: dict[str, Any],
        session_id: str | None = None,
        agent: str | None = None,
    ) -> dict[str, Any]:
        """Process a single JSON-RPC request and return a JSON-RPC response.

        Parameters
        ----------
        body : dict
            The JSON-RPC request body.
        session_id : str, optional
            Default session for tool calls (from the MCP URL query).
        agent : str, optional
            Name of the calling agent, if the host reports it.
        """
        if not isinstance(body, dict):
            return self._error_response(None, -32600, "Invalid request")
        jsonrpc = body.get("jsonrpc", "2.0")
        method = body.get("method", "")
        params = body.get("params") or {}
        req_id = body.get("id")

        logger.info("MCP request: method=%s id=%s session=%s", method, req_id, session_id)
        log_mcp_call(method=method, params=params)

        try:
            result = await self._dispatch(method, params, session_id=session_id, agent=agent)
        except Exception as exc:  # noqa: BLE001
            logger.error("MCP method %s failed: %s", method, exc)
            return self._error_response(req_id, -32603, str(exc))

        if req_id is None:
            return {}

        return {"jsonrpc": jsonrpc, "id": req_id, "result": result}

    async def _dispatch(
        self,
        method: str,
        params: dict[str, Any],
        session_id: str | None = None,
        agent: str | None = None,
    ) -> Any:
        if method == "initialize":
            return self._handle_initialize(params)
        if method in ("initialized", "notifications/initialized"):
            return {}
        if method == "tools/list":
            return {"tools": LOOP_TOOLS}
        if method == "tools/call":
            return await self._handle_tools_call(params, session_id=session_id, agent=agent)
        if method == "ping":
            return {}
        raise ValueError(f"Unknown method: {method}")

    def _handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": "2025-03-26",
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": "agentloop", "version": __version__},
        }

    async def _handle_tools_call(
        self,
        params: dict[str, Any],
        session_id: str | None = None,
        agent: str | None = None,
    ) -> dict[str, Any]:
        name = params.get("name", "")
        arguments = params.get("arguments") or {}
        logger.info("MCP tools/call: %s args=%s (session=%s)", name, json.dumps(arguments)[:200], session_id)
        started = time.monotonic()
        try:
            text = await self._call_tool(
                name,
                arguments,
                session_id=arguments.get("session_id") or session_id,
                agent=arguments.get("agent") or agent,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Tool %s failed: %s", name, exc)
            log_mcp_call(
                method="tools/call",
                params={"name": name, "arguments": arguments},
                error=str(exc),
                duration_ms=(time.monotonic() - started) * 1000,
                tool_name=name,
            )
            return {"content": [{"type": "text", "text": f"Error: {exc}"}], "isError": True}
        log_mcp_call(
            method="tools/call",
            params={"name": name, "arguments": arguments},
            result=text,
            duration_ms=(time.monotonic() - started) * 1000,
            tool_name=name,
        )
        return {"content": [{"type": "text", "text": text}], "isError": False}

    async def _call_tool(
        self,
        name: str,
        args: dict[str, Any],
        session_id: str | None,
        agent: str | None,
    ) -> str:
        if name == "iteration_loop_start":
            return await self._tool_start(args, session_id)
        if name == "iteration_loop_complete":
            return await self._tool_complete(args, session_id, agent)
        if name == "iteration_loop_cancel":
            return await self._tool_cancel(session_id)
        if name == "iteration_loop_status":
            return self._tool_status()
        raise ValueError(f"Unknown tool: {name}")

    @staticmethod
    def _require_session(session_id: str | None) -> str:
        if not session_id:
            raise ValueError("session_id is required")
        return session_id

    async def _tool_start(self, args: dict[str, Any], session_id: str | None) -> str:
        sid = self._require_session(session_id)
        task = str(args.get("task") or "").strip()
        if not task:
            raise ValueError("task is required")
        max_iterations = args.get("maxIterations") or args.get("max_iterations")
        max_iterations = int(max_iterations) if max_iterations else None
        if not await self.iteration.start_loop(sid, task, max_iterations, args.get("marker") or None):
            return "Failed to start iteration loop. There may already be an active loop."
        state = self.iteration.get_state()
        return (
            "Iteration loop started successfully!\n\n"
            f"Task: {task}\n"
            f"Max Iterations: {state.max_iterations if state else max_iterations}\n"
            f"Codename: {state.completion_marker if state else 'UNKNOWN'}"
        )

    async def _tool_complete(self, args: dict[str, Any], session_id: str | None, agent: str | None) -> str:
        sid = self._require_session(session_id)
        if self.completion_agent and agent and agent != self.completion_agent:
            state = self.iteration.get_state()
            progress = f"{state.iteration}/{state.max_iterations}" if state else "unknown"
            return (
                "You cannot complete this iteration loop directly. Completion is controlled by the "
                f"**{self.completion_agent}** agent.\n\n"
                f"Ask the {self.completion_agent} to review your progress; it will signal completion "
                f"when all requirements are met.\n\nCurrent iteration: {progress}"
            )
        summary = args.get("summary") or None
        result = await self.iteration.complete_loop(sid, summary)
        if not result.success:
            return result.message
        lines = ["Iteration loop completed successfully!", "", f"Iterations: {result.iterations}"]
        if summary:
            lines.append(f"Summary: {summary}")
        return "\n".join(lines)

    async def _tool_cancel(self, session_id: str | None) -> str:
        sid = self._require_session(session_id)
        result = await self.iteration.cancel_loop(sid)
        if not result.success:
            return "No active iteration loop to cancel."
        return "Iteration loop cancelled successfully."

    def _tool_status(self) -> str:
        state = self.iteration.get_state()
        if state is None or not state.active:
            return "No active iteration loop."
        return (
            "Iteration Loop Status:\n"
            f"- Active: {state.active}\n"
            f"- Iteration: {state.iteration}/{state.max_iterations}\n"
            f"- Codename: {state.completion_marker}\n"
            f"- Started At: {state.started_at}\n"
            f"- Task: {state.prompt}"
        )

    @staticmethod
    def _error_response(req_id: Any, code: int, message: str) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}
