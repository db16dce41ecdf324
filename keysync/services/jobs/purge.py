from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.core.config import JOB_PURGE, get_settings
from keysync.core.errors import InvalidPayloadError
from keysync.domain.models import PURGE_PENDING, PurgeJob
from keysync.domain.results import WorkerRunResult
from keysync.persistence.db import SessionLocal
from keysync.services.identity_store import IdentityStore
from keysync.services.jobs.queue import complete_job, fail_job, mark_job_terminal
from keysync.services.jobs.worker import run_queue_worker
from keysync.services.remote_client import RemoteClient


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: str | None) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


async def enqueue_purge(
    *,
    session: AsyncSession,
    reason: str,
    owner_id: str | None = None,
    email: str | None = None,
    subscription_id: str | None = None,
) -> PurgeJob:
    """Queue deletion of an identity's local and remote state.

    A pending job for the same identity and reason created inside the
    dedupe window is returned instead of inserting a duplicate.
    """
    owner = _clean(owner_id)
    mail = _clean(email)
    mail = mail.lower() if mail else None
    subscription = _clean(subscription_id)
    reason_code = _clean(reason)
    if not (owner or mail or subscription):
        raise InvalidPayloadError("purge requires owner_id, email or subscription_id")
    if not reason_code:
        raise InvalidPayloadError("purge requires a reason code")

    window = max(0, int(get_settings().purge_dedupe_window_seconds))
    since = _utc_now() - timedelta(seconds=window)
    existing = (
        await session.execute(
            select(PurgeJob)
            .where(
                PurgeJob.status == PURGE_PENDING,
                PurgeJob.reason == reason_code,
                PurgeJob.owner_id.is_(None) if owner is None else PurgeJob.owner_id == owner,
                PurgeJob.email.is_(None) if mail is None else PurgeJob.email == mail,
                PurgeJob.subscription_id.is_(None) if subscription is None else PurgeJob.subscription_id == subscription,
                PurgeJob.created_at >= since,
            )
            .order_by(PurgeJob.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("purge_enqueue_deduped job_id=%s reason=%s", existing.id, reason_code)
        return existing

    job = PurgeJob(
        owner_id=owner,
        email=mail,
        subscription_id=subscription,
        reason=reason_code,
        status=PURGE_PENDING,
        attempts=0,
        created_at=_utc_now(),
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    logger.info("purge_enqueued job_id=%s reason=%s", job.id, reason_code)
    return job


async def process_purge_job(job: PurgeJob, lease_token: str, *, client: RemoteClient) -> str:
    # Remote deletion first; local rows go only after the remote confirmed.
    if not (job.owner_id or job.email or job.subscription_id):
        async with SessionLocal() as session:
            await mark_job_terminal(
                session=session, model=PurgeJob, job=job, lease_token=lease_token, error="invalid_identity"
            )
        return "invalid_identity"

    async with SessionLocal() as session:
        store = IdentityStore(session)
        emails, subscription_ids = await store.expand_identity(
            owner_id=job.owner_id,
            email=job.email,
            subscription_id=job.subscription_id,
        )
        payload = {
            "reason": job.reason,
            "owner_id": job.owner_id or "",
            "customer_email": sorted(emails)[0] if emails else "",
            "subscription_ids": sorted(subscription_ids),
        }
        result = await client.purge_identity(payload)
        if not result.ok:
            status = await fail_job(
                session=session,
                model=PurgeJob,
                job=job,
                lease_token=lease_token,
                error=result.error,
            )
            logger.warning(
                "purge_remote_failed job_id=%s http_code=%s status=%s error=%s",
                job.id,
                result.http_code,
                status,
                result.error,
            )
            return result.error or "unexpected_response"

        deleted = await store.delete_for_identity(
            owner_id=job.owner_id,
            emails=emails,
            subscription_ids=subscription_ids,
        )
        await complete_job(session=session, model=PurgeJob, job=job, lease_token=lease_token)
        logger.info("purge_done job_id=%s deleted=%s", job.id, deleted)
    return ""


async def run_purge_worker(*, client: RemoteClient | None = None) -> WorkerRunResult:
    settings = get_settings()
    remote = client or RemoteClient()

    async def _process(job: PurgeJob, lease_token: str) -> str:
        return await process_purge_job(job, lease_token, client=remote)

    return await run_queue_worker(
        job_kind=JOB_PURGE,
        model=PurgeJob,
        enabled=settings.purge_enabled,
        batch_size=settings.purge_batch_size,
        lease_seconds=settings.purge_lease_seconds,
        lock_minutes=settings.purge_lock_minutes,
        process=_process,
    )
