from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.apps.api.deps import get_db, require_ops_token, resolve_job_kind
from keysync.apps.api.response import OPS_ERROR_RESPONSES, SuccessEnvelope, success_response
from keysync.services.jobs.provision import enqueue_provision_event
from keysync.services.jobs.purge import enqueue_purge
from keysync.services.operability.runner import clear_job_lock, get_job_status, run_job


router = APIRouter(
    prefix="/v1/ops",
    tags=["ops"],
    dependencies=[Depends(require_ops_token)],
    responses=OPS_ERROR_RESPONSES,
)


class RunRequest(BaseModel):
    # Manual runs bypass the enabled flag for reconciliation only.
    manual: bool = True


class PurgeRequest(BaseModel):
    reason: str = Field(min_length=1)
    owner_id: str | None = None
    email: str | None = None
    subscription_id: str | None = None


class EnqueuedJob(BaseModel):
    job_id: int
    status: str
    event_id: str | None = None


@router.post("/jobs/{job_kind}/run", response_model=SuccessEnvelope[dict[str, Any]])
async def run_now(request: Request, job_kind: str, body: RunRequest | None = None) -> dict:
    # Same status shape as the scheduled run.
    kind = resolve_job_kind(job_kind)
    manual = body.manual if body is not None else True
    outcome = await run_job(kind, manual=manual)
    return success_response(request=request, data=outcome)


@router.post("/jobs/{job_kind}/clear-lock", response_model=SuccessEnvelope[dict[str, Any]])
async def clear_lock(request: Request, job_kind: str) -> dict:
    kind = resolve_job_kind(job_kind)
    return success_response(request=request, data=await clear_job_lock(kind))


@router.get("/jobs/{job_kind}/status", response_model=SuccessEnvelope[dict[str, Any]])
async def job_status(request: Request, job_kind: str) -> dict:
    kind = resolve_job_kind(job_kind)
    return success_response(request=request, data=await get_job_status(kind))


@router.post("/purge-jobs", response_model=SuccessEnvelope[EnqueuedJob], status_code=202)
async def create_purge_job(
    request: Request,
    body: PurgeRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await enqueue_purge(
        session=db,
        reason=body.reason,
        owner_id=body.owner_id,
        email=body.email,
        subscription_id=body.subscription_id,
    )
    return success_response(request=request, data=EnqueuedJob(job_id=job.id, status=job.status))


@router.post("/provision-events", response_model=SuccessEnvelope[EnqueuedJob], status_code=202)
async def create_provision_event(
    request: Request,
    body: dict[str, Any],
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await enqueue_provision_event(session=db, payload=body)
    return success_response(
        request=request,
        data=EnqueuedJob(job_id=job.id, status=job.status, event_id=job.event_id),
    )
