from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from waypoint.apps.api.response import SuccessEnvelope, success_response
from waypoint.core.config import get_settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    service: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; identity headers are not required here.
    payload = HealthResponse(status="ok", service=get_settings().app_name)
    return success_response(request=request, data=payload)
