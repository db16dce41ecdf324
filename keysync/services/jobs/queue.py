from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.core.config import get_settings
from keysync.domain.models import ProvisionJob, PurgeJob


logger = logging.getLogger(__name__)

QueueJob = PurgeJob | ProvisionJob
QueueModel = type[PurgeJob] | type[ProvisionJob]

_PROCESSING = "processing"
_DONE = "done"
# Statuses a worker may claim when due; expired "processing" leases are claimable too.
_READY_STATUSES: dict[QueueModel, tuple[str, ...]] = {
    PurgeJob: ("pending",),
    ProvisionJob: ("pending", "retry"),
}
_RETRY_STATUS: dict[QueueModel, str] = {PurgeJob: "pending", ProvisionJob: "retry"}
_TERMINAL_STATUS: dict[QueueModel, str] = {PurgeJob: "error", ProvisionJob: "failed"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_seconds(attempt: int) -> int:
    # Exponential retry delay: base * 2^(attempt-1), capped.
    settings = get_settings()
    base = max(1, int(settings.job_backoff_base_s))
    cap = max(base, int(settings.job_backoff_cap_s))
    exponent = max(0, int(attempt) - 1)
    # Bound the exponent so huge attempt counts cannot overflow the multiplication.
    return min(cap, base * (2 ** min(exponent, 32)))


def _eligible(model: QueueModel, now: datetime):  # noqa: ANN202
    ready = and_(
        model.status.in_(_READY_STATUSES[model]),
        or_(model.next_run_at.is_(None), model.next_run_at <= now),
        or_(model.lease_expires_at.is_(None), model.lease_expires_at <= now),
    )
    abandoned = and_(model.status == _PROCESSING, model.lease_expires_at <= now)
    return or_(ready, abandoned)


async def claim_jobs(
    *,
    session: AsyncSession,
    model: QueueModel,
    limit: int,
    lease_token: str,
    lease_seconds: int,
) -> list[QueueJob]:
    """Atomically lease up to ``limit`` due jobs and return exactly those.

    The state transition is a single UPDATE whose WHERE clause repeats the
    eligibility predicate, so concurrent claimers can never stamp the same
    row; the follow-up SELECT only reads rows carrying this caller's token.
    """
    now = _utc_now()
    limit = max(1, int(limit))
    candidates = (
        select(model.id)
        .where(_eligible(model, now))
        .order_by(model.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    await session.execute(
        update(model)
        .where(model.id.in_(candidates), _eligible(model, now))
        .values(
            status=_PROCESSING,
            lease_token=lease_token,
            lease_expires_at=now + timedelta(seconds=max(1, int(lease_seconds))),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    rows = (
        await session.execute(
            select(model)
            .where(model.lease_token == lease_token)
            .order_by(model.id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def _finish(
    *,
    session: AsyncSession,
    model: QueueModel,
    job_id: int,
    lease_token: str,
    values: dict[str, Any],
) -> bool:
    # Only the lease holder may transition a claimed job.
    result = await session.execute(
        update(model)
        .where(model.id == job_id, model.lease_token == lease_token, model.status == _PROCESSING)
        .values(lease_token=None, lease_expires_at=None, **values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    applied = int(result.rowcount or 0) == 1
    if not applied:
        logger.warning("queue_lease_lost table=%s job_id=%s", model.__tablename__, job_id)
    return applied


async def complete_job(*, session: AsyncSession, model: QueueModel, job: QueueJob, lease_token: str) -> bool:
    now = _utc_now()
    return await _finish(
        session=session,
        model=model,
        job_id=job.id,
        lease_token=lease_token,
        values={"status": _DONE, "last_error": None, "finished_at": now, "next_run_at": None},
    )


async def fail_job(
    *,
    session: AsyncSession,
    model: QueueModel,
    job: QueueJob,
    lease_token: str,
    error: str,
    extra: dict[str, Any] | None = None,
) -> str:
    """Record a failed attempt and return the job's new status.

    Jobs are rescheduled with exponential backoff until ``job_max_attempts``
    is reached, after which they move to the model's terminal state and are
    never claimed again.
    """
    now = _utc_now()
    attempts = int(job.attempts or 0) + 1
    max_attempts = max(1, int(get_settings().job_max_attempts))
    values: dict[str, Any] = {"attempts": attempts, "last_error": (error or "")[:1000]}
    if extra:
        values.update(extra)
    if attempts >= max_attempts:
        status = _TERMINAL_STATUS[model]
        values.update({"status": status, "next_run_at": None, "finished_at": now})
    else:
        status = _RETRY_STATUS[model]
        values.update({"status": status, "next_run_at": now + timedelta(seconds=backoff_seconds(attempts))})
    await _finish(session=session, model=model, job_id=job.id, lease_token=lease_token, values=values)
    return status


async def mark_job_terminal(
    *,
    session: AsyncSession,
    model: QueueModel,
    job: QueueJob,
    lease_token: str,
    error: str,
) -> str:
    # Unrecoverable jobs (invalid payloads) skip the retry ladder.
    status = _TERMINAL_STATUS[model]
    await _finish(
        session=session,
        model=model,
        job_id=job.id,
        lease_token=lease_token,
        values={"status": status, "last_error": error[:1000], "finished_at": _utc_now(), "next_run_at": None},
    )
    return status


async def queue_counts(*, session: AsyncSession, model: QueueModel) -> dict[str, int]:
    rows = (await session.execute(select(model.status))).scalars().all()
    counts: dict[str, int] = {}
    for status in rows:
        counts[status] = counts.get(status, 0) + 1
    return counts
