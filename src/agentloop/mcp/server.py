from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from agentloop.core.dispatcher import LoopDispatcher

# ---------- request / response models (module-level for FastAPI) ----------

class StartLoopRequest(BaseModel):
    session_id: str
    task: str
    max_iterations: int | None = None
    marker: str | None = None

class SessionRequest(BaseModel):
    session_id: str

class CompleteLoopRequest(BaseModel):
    session_id: str
    summary: str | None = None

class PromptRequest(BaseModel):
    session_id: str
    text: str

class PromptResponse(BaseModel):
    should_intercept: bool
    modified_prompt: str | None = None

class LoopResultResponse(BaseModel):
    success: bool
    iterations: int
    message: str

# ---------- router factory ----------

def get_router(dispatcher: LoopDispatcher, loop_token: str | None = None) -> APIRouter:
    def _auth(x_loop_token: str | None = Header(default=None), authorization: str | None = Header(default=None)) -> None:
        if not loop_token:
            return
        token = x_loop_token
        if not token and authorization and authorization.lower().startswith("bearer "):
            token = authorization.split(" ", 1)[1]
        if token != loop_token:
            raise HTTPException(status_code=401, detail="Invalid loop token")

    router = APIRouter(dependencies=[Depends(_auth)])

    def _iteration():
        if dispatcher.iteration is None:
            raise HTTPException(status_code=409, detail="Iteration loop is disabled")
        return dispatcher.iteration

    def _continuation():
        if dispatcher.continuation is None:
            raise HTTPException(status_code=409, detail="Task continuation is disabled")
        return dispatcher.continuation

    # ---------- iteration loop ----------

    @router.post("/loop/start")
    async def loop_start(req: StartLoopRequest) -> dict[str, Any]:
        engine = _iteration()
        started = await engine.start_loop(req.session_id, req.task, req.max_iterations, req.marker)
        state = engine.get_state()
        return {"started": started, "state": state.to_dict() if started and state else None}

    @router.post("/loop/cancel", response_model=LoopResultResponse)
    async def loop_cancel(req: SessionRequest) -> LoopResultResponse:
        result = await _iteration().cancel_loop(req.session_id)
        return LoopResultResponse(**result.to_dict())

    @router.post("/loop/complete", response_model=LoopResultResponse)
    async def loop_complete(req: CompleteLoopRequest) -> LoopResultResponse:
        result = await _iteration().complete_loop(req.session_id, req.summary)
        return LoopResultResponse(**result.to_dict())

    @router.get("/loop/status")
    async def loop_status() -> dict[str, Any]:
        return _iteration().status()

    @router.post("/prompt", response_model=PromptResponse)
    async def intercept_prompt(req: PromptRequest) -> PromptResponse:
        interception = await _iteration().process_prompt(req.session_id, req.text)
        return PromptResponse(
            should_intercept=interception.should_intercept,
            modified_prompt=interception.modified_prompt,
        )

    # ---------- task continuation ----------

    @router.get("/continuation/status")
    async def continuation_status() -> dict[str, Any]:
        return {"sessions": _continuation().status()}

    @router.post("/continuation/pause")
    async def continuation_pause(req: SessionRequest) -> dict[str, str]:
        _continuation().mark_recovering(req.session_id)
        return {"status": "paused", "session_id": req.session_id}

    @router.post("/continuation/resume")
    async def continuation_resume(req: SessionRequest) -> dict[str, str]:
        _continuation().mark_recovery_complete(req.session_id)
        return {"status": "resumed", "session_id": req.session_id}

    @router.post("/continuation/cancel")
    async def continuation_cancel(req: SessionRequest) -> dict[str, Any]:
        engine = _continuation()
        had_countdown = engine.has_pending_countdown(req.session_id)
        engine.cancel(req.session_id)
        return {"cancelled": had_countdown, "session_id": req.session_id}

    return router
