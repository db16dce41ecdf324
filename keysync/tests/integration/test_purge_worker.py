from __future__ import annotations

import pytest
from sqlalchemy import select, update

from keysync.core.config import JOB_PURGE, get_settings
from keysync.core.errors import InvalidPayloadError
from keysync.domain.models import CredentialRecord, EntitlementRecord, PurgeJob
from keysync.persistence.db import SessionLocal
from keysync.services.identity_store import IdentityStore
from keysync.services.jobs.purge import enqueue_purge, run_purge_worker
from keysync.services.jobs.worker import worker_lock_name
from keysync.services.locks import acquire_run_lock, release_run_lock
from keysync.tests.utils.remote import PURGE_PATH, FakeRemote


async def _seed_owner() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        for subscription_id, remote_id in (("sub-a", "10"), ("sub-b", "11")):
            await store.upsert(
                CredentialRecord,
                owner_id="42",
                subscription_id=subscription_id,
                fields={"owner_email": "buyer@example.com", "status": "active", "remote_id": remote_id},
            )
        await store.upsert(
            EntitlementRecord,
            owner_id="42",
            subscription_id="sub-b",
            fields={"owner_email": "buyer@example.com", "status": "active", "remote_id": "11"},
        )
        await store.upsert(
            CredentialRecord,
            owner_id="43",
            subscription_id="sub-z",
            fields={"owner_email": "bystander@example.com", "status": "active", "remote_id": "12"},
        )


async def _rows(model) -> list:
    async with SessionLocal() as session:
        return list((await session.execute(select(model).order_by(model.id))).scalars().all())


@pytest.mark.asyncio
async def test_enqueue_dedupes_pending_jobs_and_validates_identity() -> None:
    async with SessionLocal() as session:
        first = await enqueue_purge(session=session, reason="gdpr", owner_id="42", email="Buyer@Example.com")
        again = await enqueue_purge(session=session, reason="gdpr", owner_id="42", email="buyer@example.com")
        other = await enqueue_purge(session=session, reason="chargeback", owner_id="42", email="buyer@example.com")
        assert first.id == again.id
        assert other.id != first.id
        assert first.email == "buyer@example.com"

        with pytest.raises(InvalidPayloadError):
            await enqueue_purge(session=session, reason="gdpr")
        with pytest.raises(InvalidPayloadError):
            await enqueue_purge(session=session, reason=" ", owner_id="42")


@pytest.mark.asyncio
async def test_successful_remote_purge_deletes_local_rows() -> None:
    await _seed_owner()
    async with SessionLocal() as session:
        job = await enqueue_purge(session=session, reason="gdpr", owner_id="42")

    remote = FakeRemote()
    remote.reply(PURGE_PATH, 200, {"status": "ok"})
    result = await run_purge_worker(client=remote.client())

    assert result.status == "ok"
    assert result.processed == 1
    sent = remote.json_bodies(PURGE_PATH)[0]
    assert sent["owner_id"] == "42"
    assert sent["reason"] == "gdpr"
    assert sent["customer_email"] == "buyer@example.com"
    assert sent["subscription_ids"] == ["sub-a", "sub-b"]

    assert [row.owner_id for row in await _rows(CredentialRecord)] == ["43"]
    assert await _rows(EntitlementRecord) == []
    async with SessionLocal() as session:
        stored = await session.get(PurgeJob, job.id)
    assert stored.status == "done"
    assert stored.finished_at is not None


@pytest.mark.asyncio
async def test_remote_failure_keeps_local_rows_and_reschedules() -> None:
    await _seed_owner()
    async with SessionLocal() as session:
        job = await enqueue_purge(session=session, reason="gdpr", owner_id="42")

    remote = FakeRemote()
    remote.reply(PURGE_PATH, 503, {"error": "maintenance"})
    result = await run_purge_worker(client=remote.client())

    assert result.status == "error"
    assert "maintenance" in result.error
    assert len(await _rows(CredentialRecord)) == 3
    async with SessionLocal() as session:
        stored = await session.get(PurgeJob, job.id)
    assert stored.status == "pending"
    assert stored.attempts == 1
    assert stored.next_run_at is not None

    # Still backing off: nothing is claimable yet.
    idle = await run_purge_worker(client=remote.client())
    assert idle.status == "ok"
    assert idle.claimed == 0


@pytest.mark.asyncio
async def test_tenth_failure_is_terminal() -> None:
    async with SessionLocal() as session:
        job = await enqueue_purge(session=session, reason="gdpr", email="gone@example.com")
        await session.execute(update(PurgeJob).where(PurgeJob.id == job.id).values(attempts=9))
        await session.commit()

    remote = FakeRemote()
    remote.reply(PURGE_PATH, 500, {"error": "still_down"})
    await run_purge_worker(client=remote.client())

    async with SessionLocal() as session:
        stored = await session.get(PurgeJob, job.id, populate_existing=True)
    assert stored.status == "error"
    assert stored.attempts == 10
    assert stored.last_error == "still_down"


@pytest.mark.asyncio
async def test_disabled_worker_is_skipped(monkeypatch) -> None:
    monkeypatch.setenv("PURGE_ENABLED", "false")
    get_settings.cache_clear()
    result = await run_purge_worker(client=FakeRemote().client())
    assert result.status == "skipped_disabled"


@pytest.mark.asyncio
async def test_busy_worker_lock_skips_the_batch() -> None:
    async with SessionLocal() as session:
        job = await enqueue_purge(session=session, reason="gdpr", owner_id="42")
    remote = FakeRemote()
    remote.reply(PURGE_PATH, 200, {"status": "ok"})

    lock = await acquire_run_lock(worker_lock_name(JOB_PURGE), ttl_seconds=60)
    try:
        result = await run_purge_worker(client=remote.client())
    finally:
        await release_run_lock(lock)

    assert result.status == "skipped_locked"
    assert remote.requests == []
    async with SessionLocal() as session:
        stored = await session.get(PurgeJob, job.id)
    assert stored.status == "pending"
    assert stored.attempts == 0
