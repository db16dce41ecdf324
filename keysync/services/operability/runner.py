from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from keysync.core.config import JOB_KINDS, JOB_PROVISION, JOB_PURGE, JOB_RECONCILIATION, get_settings
from keysync.domain.models import ProvisionJob, PurgeJob
from keysync.domain.results import RUN_ERROR
from keysync.persistence.db import SessionLocal
from keysync.services.jobs.provision import run_provision_worker
from keysync.services.jobs.purge import run_purge_worker
from keysync.services.jobs.queue import queue_counts
from keysync.services.jobs.worker import worker_lock_name
from keysync.services.locks import clear_run_lock, lock_held_until
from keysync.services.operability.alerts import NEUTRAL_STATUSES, excerpt, handle_job_result
from keysync.services.operability.state import get_job_state
from keysync.services.reconciliation import run_reconciliation
from keysync.services.remote_client import RemoteClient


logger = logging.getLogger(__name__)

_LOCK_NAMES = {
    JOB_RECONCILIATION: JOB_RECONCILIATION,
    JOB_PURGE: worker_lock_name(JOB_PURGE),
    JOB_PROVISION: worker_lock_name(JOB_PROVISION),
}
_QUEUE_MODELS = {JOB_PURGE: PurgeJob, JOB_PROVISION: ProvisionJob}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    # Let scheduled runs start before migrations by reporting a degraded state instead of crashing.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


def _next_run(job_kind: str, now: datetime) -> datetime:
    if job_kind == JOB_RECONCILIATION:
        return now + timedelta(minutes=max(1, int(get_settings().reconcile_interval_minutes)))
    return now + timedelta(minutes=1)


async def _execute(job_kind: str, *, manual: bool, client: RemoteClient | None) -> dict[str, Any]:
    if job_kind == JOB_RECONCILIATION:
        result = await run_reconciliation(manual=manual, client=client)
        payload = result.as_dict()
        payload["processed"] = int(result.counts.get("items", 0))
        payload["duration_ms"] = int(result.counts.get("duration_ms", 0))
        payload["details"] = {
            key: value
            for key, value in result.context.items()
            if key in ("http_code", "url", "body_excerpt", "decoded_error", "page", "conflict_samples", "gc_skipped")
        }
        return payload
    if job_kind == JOB_PURGE:
        return (await run_purge_worker(client=client)).as_dict()
    if job_kind == JOB_PROVISION:
        return (await run_provision_worker(client=client)).as_dict()
    raise ValueError(f"unknown job kind: {job_kind}")


async def run_job(job_kind: str, *, manual: bool = False, client: RemoteClient | None = None) -> dict[str, Any]:
    """Outermost entry point for every scheduled or manual run.

    Unexpected faults are converted into the ``error`` status shape here so
    the scheduler never sees an exception; the outcome is then recorded and
    fed into the alerting state machine.
    """
    if job_kind not in JOB_KINDS:
        raise ValueError(f"unknown job kind: {job_kind}")
    started = time.monotonic()
    try:
        outcome = await _execute(job_kind, manual=manual, client=client)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "error": "", "processed": 0, "duration_ms": 0}
        logger.exception("job_run_failed job_kind=%s", job_kind)
        outcome = {"status": RUN_ERROR, "error": f"{type(exc).__name__}: {exc}"}
    except Exception as exc:  # noqa: BLE001 - scheduler must always receive a status shape.
        logger.exception("job_run_failed job_kind=%s", job_kind)
        outcome = {"status": RUN_ERROR, "error": f"{type(exc).__name__}: {exc}"}
    outcome.setdefault("processed", 0)
    outcome.setdefault("error", "")
    if not outcome.get("duration_ms"):
        outcome["duration_ms"] = int((time.monotonic() - started) * 1000)

    status = str(outcome["status"])
    if status in NEUTRAL_STATUSES:
        return outcome
    try:
        await _record_outcome(job_kind, outcome)
    except SQLAlchemyError:
        logger.exception("job_bookkeeping_failed job_kind=%s", job_kind)
    return outcome


async def _record_outcome(job_kind: str, outcome: dict[str, Any]) -> None:
    now = _utc_now()
    async with SessionLocal() as session:
        state = await get_job_state(session=session, job_kind=job_kind)
        state.last_run_at = now
        state.last_status = str(outcome["status"])
        state.last_duration_ms = int(outcome.get("duration_ms") or 0)
        state.last_processed = int(outcome.get("processed") or 0)
        details = outcome.get("details")
        if details:
            merged = dict(state.details_json or {})
            merged.update(details)
            state.details_json = merged
        await session.commit()
        decision = await handle_job_result(
            session=session,
            job_kind=job_kind,
            status=str(outcome["status"]),
            error_text=str(outcome.get("error") or ""),
            next_run=_next_run(job_kind, now),
        )
    if decision.alert_sent or decision.recovery_sent:
        outcome["alert"] = {"alert_sent": decision.alert_sent, "recovery_sent": decision.recovery_sent}


async def get_job_status(job_kind: str) -> dict[str, Any]:
    if job_kind not in JOB_KINDS:
        raise ValueError(f"unknown job kind: {job_kind}")
    async with SessionLocal() as session:
        state = await get_job_state(session=session, job_kind=job_kind)
        held_until = await lock_held_until(_LOCK_NAMES[job_kind])
        status = {
            "job_kind": job_kind,
            "last_run_at": state.last_run_at.isoformat() if state.last_run_at else None,
            "last_status": state.last_status,
            "last_error": excerpt(state.last_error),
            "last_duration_ms": state.last_duration_ms,
            "last_processed": state.last_processed,
            "consecutive_failures": state.consecutive_failures,
            "alerted": state.alerted,
            "lock_held_until": held_until.isoformat() if held_until else None,
            "details": dict(state.details_json or {}),
        }
        if job_kind in _QUEUE_MODELS:
            status["queue"] = await queue_counts(session=session, model=_QUEUE_MODELS[job_kind])
        return status


async def clear_job_lock(job_kind: str) -> dict[str, Any]:
    if job_kind not in JOB_KINDS:
        raise ValueError(f"unknown job kind: {job_kind}")
    cleared = await clear_run_lock(_LOCK_NAMES[job_kind])
    return {"status": "ok", "job_kind": job_kind, "cleared": cleared}
