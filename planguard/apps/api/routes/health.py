from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from planguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from planguard.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    sweeper_running: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    sweeper = getattr(request.app.state, "sweeper", None)
    payload = HealthResponse(status="ok", sweeper_running=bool(sweeper and sweeper.running))
    return success_response(request=request, data=payload)
