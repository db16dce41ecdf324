from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.core.config import JOB_KINDS, get_settings
from keysync.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def require_ops_token(request: Request) -> None:
    # The trigger surface is closed unless an operator token is configured and presented.
    settings = get_settings()
    if not settings.ops_api_token:
        raise HTTPException(
            status_code=503,
            detail={"code": "OPS_DISABLED", "message": "Operator API is not configured"},
        )
    presented = request.headers.get(settings.ops_api_token_header, "")
    if not hmac.compare_digest(presented.encode("utf-8"), settings.ops_api_token.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Invalid operator token"},
        )


def resolve_job_kind(job_kind: str) -> str:
    if job_kind not in JOB_KINDS:
        raise HTTPException(
            status_code=404,
            detail={"code": "UNKNOWN_JOB", "message": f"Unknown job kind: {job_kind}"},
        )
    return job_kind
