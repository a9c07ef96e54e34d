"""Copilot compatible completion endpoints."""
from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..errors import BackendError, DecodeError, OptionsError, StreamTimeout, TemplateError
from ..relay import CompletionRelay
from ..sse import EVENT_STREAM_HEADERS

router = APIRouter()

TOKEN_LIFETIME_S = 1800


async def get_relay(request: Request) -> CompletionRelay:
    init_error = getattr(request.app.state, "backend_error", None)
    if init_error is not None:
        raise HTTPException(status_code=500, detail=f"Backend unavailable: {init_error}")
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Gateway not ready")
    return relay


def _engine_allowed(request: Request, engine: str) -> bool:
    engines = getattr(request.app.state, "engines", None) or ()
    return engine in engines


@router.get("/health")
async def health(request: Request):
    status = "degraded" if getattr(request.app.state, "backend_error", None) else "ok"
    return JSONResponse({"status": status})


@router.get("/copilot_internal/v2/token")
async def token():
    now = int(time.time())
    body: Dict[str, Any] = {
        "token": "copilotgw-local",
        "expires_at": now + TOKEN_LIFETIME_S,
        "refresh_in": TOKEN_LIFETIME_S,
    }
    return JSONResponse(body)


@router.post("/v1/engines/{engine}/completions")
async def completions(
    engine: str,
    request: Request,
    relay: CompletionRelay = Depends(get_relay),
):
    if not _engine_allowed(request, engine):
        raise HTTPException(status_code=404, detail=f"Unknown engine '{engine}'")

    body = await request.body()
    try:
        completion = relay.decode(body)
    except DecodeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        session = relay.prepare(completion)
    except OptionsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TemplateError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if completion.stream:
        return StreamingResponse(
            relay.stream(session, is_disconnected=request.is_disconnected),
            media_type="text/event-stream",
            headers=EVENT_STREAM_HEADERS,
        )

    try:
        result = await relay.complete(session)
    except StreamTimeout as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return JSONResponse(result)


__all__ = ["router"]
