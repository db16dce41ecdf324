from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable
from uuid import uuid4

from keysync.core.errors import LockHeldError
from keysync.domain.results import (
    RUN_ERROR,
    RUN_OK,
    RUN_SKIPPED_DISABLED,
    RUN_SKIPPED_LOCKED,
    WorkerRunResult,
)
from keysync.persistence.db import SessionLocal
from keysync.services.jobs.queue import QueueJob, QueueModel, claim_jobs, fail_job
from keysync.services.locks import hold_run_lock


logger = logging.getLogger(__name__)

# Processes one leased job; returns "" on success or an error excerpt on failure.
JobProcessor = Callable[[QueueJob, str], Awaitable[str]]


def worker_lock_name(job_kind: str) -> str:
    return f"worker:{job_kind}"


async def run_queue_worker(
    *,
    job_kind: str,
    model: QueueModel,
    enabled: bool,
    batch_size: int,
    lease_seconds: int,
    lock_minutes: int,
    process: JobProcessor,
) -> WorkerRunResult:
    """Claim one batch of due jobs under a run-level lock and process each.

    Every job is isolated: a failing or raising job is recorded against its
    own row and the rest of the batch continues.
    """
    started = time.monotonic()
    if not enabled:
        return WorkerRunResult(status=RUN_SKIPPED_DISABLED)
    lease_token = uuid4().hex
    processed = 0
    errors: list[str] = []
    try:
        async with hold_run_lock(worker_lock_name(job_kind), ttl_seconds=max(1, int(lock_minutes)) * 60):
            async with SessionLocal() as session:
                jobs = await claim_jobs(
                    session=session,
                    model=model,
                    limit=max(1, min(100, int(batch_size))),
                    lease_token=lease_token,
                    lease_seconds=lease_seconds,
                )
            for job in jobs:
                try:
                    error = await process(job, lease_token)
                except Exception as exc:  # noqa: BLE001 - one job's fault must not stop the batch.
                    logger.exception("queue_job_crashed kind=%s job_id=%s", job_kind, job.id)
                    error = f"{type(exc).__name__}: {exc}"
                    async with SessionLocal() as session:
                        await fail_job(session=session, model=model, job=job, lease_token=lease_token, error=error)
                processed += 1
                if error:
                    errors.append(f"job {job.id}: {error}")
    except LockHeldError:
        return WorkerRunResult(status=RUN_SKIPPED_LOCKED)

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "queue_worker_complete kind=%s claimed=%s failed=%s duration_ms=%s",
        job_kind,
        len(jobs),
        len(errors),
        duration_ms,
    )
    return WorkerRunResult(
        status=RUN_ERROR if errors else RUN_OK,
        error="; ".join(errors[:3]),
        processed=processed,
        claimed=len(jobs),
        duration_ms=duration_ms,
    )
