from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from keysync.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str


# Liveness only: no token, no database or remote round trip.
@router.get("/v1/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok", version=request.app.version))
