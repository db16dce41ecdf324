from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.domain.models import JobFailureState


async def get_job_state(*, session: AsyncSession, job_kind: str) -> JobFailureState:
    # Fetch the per-kind state row, creating a zeroed one on first use.
    row = await session.get(JobFailureState, job_kind, populate_existing=True)
    if row is not None:
        return row
    row = JobFailureState(
        job_kind=job_kind,
        consecutive_failures=0,
        last_error="",
        alerted=False,
        last_duration_ms=0,
        last_processed=0,
        details_json={},
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        row = await session.get(JobFailureState, job_kind, populate_existing=True)
    return row


async def update_job_details(*, session: AsyncSession, job_kind: str, **values: Any) -> dict[str, Any]:
    # Merge job-specific diagnostics into details_json (reassigned so the JSON change is persisted).
    row = await get_job_state(session=session, job_kind=job_kind)
    details = dict(row.details_json or {})
    details.update(values)
    row.details_json = details
    await session.commit()
    return details
