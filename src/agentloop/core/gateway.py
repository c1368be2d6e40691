from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request

from agentloop import __version__
from agentloop.core.config import Settings, config_source_info
from agentloop.core.dispatcher import build_dispatcher
from agentloop.core.iteration import Evaluator
from agentloop.core.logging_config import log_host_event, setup_logging
from agentloop.core.timers import AsyncioTimerScheduler, TimerScheduler
from agentloop.integrations.host_client import HostClient, HttpHostClient
from agentloop.mcp.protocol import MCPProtocolHandler
from agentloop.mcp.server import get_router

logger = logging.getLogger("agentloop.gateway")


def _check_token(request: Request, expected: Optional[str]) -> None:
    if not expected:
        return
    token = request.headers.get("x-loop-token")
    auth = request.headers.get("authorization", "")
    if not token and auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1]
    if token != expected:
        raise HTTPException(status_code=401, detail="Invalid loop token")


def create_app(
    settings: Optional[Settings] = None,
    host: Optional[HostClient] = None,
    evaluator: Optional[Evaluator] = None,
    scheduler: Optional[TimerScheduler] = None,
) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = settings or Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    if host is None:
        if not settings.host_api_url:
            logger.warning("AGENTLOOP_HOST_API_URL is not set; host calls will fail until it is configured")
        host = HttpHostClient(
            settings.host_api_url or "http://127.0.0.1:4096",
            token=settings.host_api_token,
            directory=os.path.abspath(settings.workspace_dir),
        )
    scheduler = scheduler or AsyncioTimerScheduler()
    dispatcher = build_dispatcher(settings, host, scheduler=scheduler, evaluator=evaluator)

    mcp_handler: Optional[MCPProtocolHandler] = None
    if dispatcher.iteration is not None:
        completion_agent = settings.advisor_agent if settings.completion_mode == "evaluator" else None
        mcp_handler = MCPProtocolHandler(dispatcher.iteration, completion_agent=completion_agent)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("agentloop %s listening for host events (workspace=%s)", __version__, settings.workspace_dir)
        yield
        # Shutdown
        if dispatcher.continuation is not None:
            dispatcher.continuation.cleanup()
        scheduler.clear_all()
        logger.info("agentloop stopped")

    app = FastAPI(title="agentloop", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    async def control_status() -> dict[str, Any]:
        return {
            "version": __version__,
            "task_continuation_enabled": dispatcher.continuation is not None,
            "iteration_loop_enabled": dispatcher.iteration is not None,
            "sessions": len(dispatcher.continuation.sessions) if dispatcher.continuation else 0,
            "timers": len(scheduler.list()),
            "iteration": dispatcher.iteration.status() if dispatcher.iteration else None,
        }

    @app.get("/control/config")
    def control_config(request: Request) -> dict[str, Any]:
        _check_token(request, settings.loop_token)
        return {"settings": settings.redacted(), "source": config_source_info(settings)}

    @app.post("/events")
    async def host_event(request: Request) -> dict[str, Any]:
        """Receive one host event and route it to the engines."""
        _check_token(request, settings.loop_token)
        try:
            raw = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        log_host_event(raw)
        event = await dispatcher.handle(raw)
        if event is None:
            return {"accepted": False}
        return {"accepted": True, "event": type(event).__name__, "session_id": event.session_id}

    app.include_router(get_router(dispatcher, loop_token=settings.loop_token))

    @app.post("/mcp")
    async def mcp_jsonrpc(request: Request) -> dict:
        """MCP JSON-RPC endpoint for agent tool calls.

        Agents include ``?session_id=xxx&agent=name`` in their MCP config
        URL so tool calls are bound to the right session.
        """
        _check_token(request, settings.loop_token)
        if mcp_handler is None:
            raise HTTPException(status_code=404, detail="Iteration loop is disabled")
        session_id = request.query_params.get("session_id")
        agent = request.query_params.get("agent")
        body = await request.json()
        return await mcp_handler.handle_request(body, session_id=session_id, agent=agent)

    return app
