from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.core.config import JOB_PROVISION, get_settings
from keysync.core.errors import InvalidPayloadError
from keysync.domain.models import PROVISION_PENDING, CredentialRecord, EntitlementRecord, ProvisionJob
from keysync.domain.results import DeliveryResult, WorkerRunResult
from keysync.persistence.db import SessionLocal
from keysync.services.identity_store import IdentityStore
from keysync.services.jobs.events import normalize_event_payload, parse_utc
from keysync.services.jobs.queue import complete_job, fail_job, mark_job_terminal
from keysync.services.jobs.worker import run_queue_worker
from keysync.services.remote_client import RemoteClient


logger = logging.getLogger(__name__)


async def enqueue_provision_event(*, session: AsyncSession, payload: dict[str, Any]) -> ProvisionJob:
    """Queue one lifecycle event for delivery, idempotent on its event id."""
    normalized = normalize_event_payload(payload)
    event_id = str(normalized["event_id"])
    existing = (
        await session.execute(select(ProvisionJob).where(ProvisionJob.event_id == event_id))
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    job = ProvisionJob(event_id=event_id, payload_json=normalized, status=PROVISION_PENDING, attempts=0)
    session.add(job)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent enqueue stored the same event first.
        await session.rollback()
        return (
            await session.execute(select(ProvisionJob).where(ProvisionJob.event_id == event_id))
        ).scalar_one()
    await session.refresh(job)
    logger.info("provision_enqueued job_id=%s event=%s", job.id, normalized["event"])
    return job


def _key_fragments(response: dict[str, Any]) -> tuple[str | None, str | None]:
    key_value = response.get("key")
    nested = key_value if isinstance(key_value, dict) else {}
    prefix = response.get("key_prefix") or nested.get("prefix") or nested.get("key_prefix")
    last4 = response.get("key_last4") or nested.get("last4") or nested.get("key_last4")
    if isinstance(key_value, str) and key_value:
        prefix = prefix or key_value[:10]
        last4 = last4 or key_value[-4:]
    return (str(prefix) if prefix else None, str(last4) if last4 else None)


def _response_remote_id(response: dict[str, Any]) -> str | None:
    nested = response.get("key") if isinstance(response.get("key"), dict) else {}
    value = response.get("api_key_id") or nested.get("api_key_id") or nested.get("id")
    return str(value) if value not in (None, "", 0) else None


async def mirror_delivery(
    *,
    session: AsyncSession,
    payload: dict[str, Any],
    result: DeliveryResult,
) -> dict[str, str]:
    # Mirror an accepted delivery into both tables through the strict upsert path.
    response = result.response
    owner_id = payload.get("owner_id") or response.get("owner_id")
    subscription_id = response.get("subscription_id") or payload.get("subscription_id")
    fields: dict[str, Any] = {
        "owner_email": (payload.get("customer_email") or "").lower() or None,
        "plan_slug": payload.get("plan_slug") or response.get("plan_slug"),
        "status": response.get("status") or payload.get("event"),
        "valid_from": parse_utc(response.get("valid_from") or payload.get("valid_from")),
        "valid_until": parse_utc(response.get("valid_until") or payload.get("valid_until")),
        "remote_id": _response_remote_id(response),
        "last_action": str(response.get("action") or payload.get("event") or ""),
        "last_http_code": result.http_code,
        "last_error": None,
    }
    store = IdentityStore(session)
    prefix, last4 = _key_fragments(response)
    credential_fields = dict(fields, key_prefix=prefix, key_last4=last4) if prefix else dict(fields)
    credential = await store.upsert(
        CredentialRecord, owner_id=owner_id, subscription_id=subscription_id, fields=credential_fields
    )
    entitlement = await store.upsert(
        EntitlementRecord, owner_id=owner_id, subscription_id=subscription_id, fields=fields
    )
    if not credential.ok or not entitlement.ok:
        logger.warning(
            "provision_mirror_skipped owner_id=%s subscription_id=%s credential=%s entitlement=%s",
            owner_id,
            subscription_id,
            credential.status,
            entitlement.status,
        )
    return {"credential": credential.status, "entitlement": entitlement.status}


async def process_provision_job(job: ProvisionJob, lease_token: str, *, client: RemoteClient) -> str:
    # Replay the stored event; success marks done, failure walks the backoff ladder.
    try:
        payload = normalize_event_payload(job.payload_json if isinstance(job.payload_json, dict) else {})
    except InvalidPayloadError as exc:
        async with SessionLocal() as session:
            await mark_job_terminal(
                session=session, model=ProvisionJob, job=job, lease_token=lease_token, error=f"invalid_payload: {exc}"
            )
        return f"invalid_payload: {exc}"
    payload["event_id"] = job.event_id

    result = await client.send_event(payload)
    async with SessionLocal() as session:
        if not result.ok:
            status = await fail_job(
                session=session,
                model=ProvisionJob,
                job=job,
                lease_token=lease_token,
                error=result.error,
                extra={"last_http_code": result.http_code or None},
            )
            logger.warning(
                "provision_delivery_failed job_id=%s http_code=%s status=%s error=%s",
                job.id,
                result.http_code,
                status,
                result.error,
            )
            return result.error or "delivery_failed"
        await mirror_delivery(session=session, payload=payload, result=result)
        await complete_job(session=session, model=ProvisionJob, job=job, lease_token=lease_token)
    logger.info("provision_delivered job_id=%s event=%s", job.id, payload.get("event"))
    return ""


async def run_provision_worker(*, client: RemoteClient | None = None) -> WorkerRunResult:
    settings = get_settings()
    remote = client or RemoteClient()

    async def _process(job: ProvisionJob, lease_token: str) -> str:
        return await process_provision_job(job, lease_token, client=remote)

    return await run_queue_worker(
        job_kind=JOB_PROVISION,
        model=ProvisionJob,
        enabled=settings.provision_enabled,
        batch_size=settings.provision_batch_size,
        lease_seconds=settings.provision_lease_seconds,
        lock_minutes=settings.provision_lock_minutes,
        process=_process,
    )
