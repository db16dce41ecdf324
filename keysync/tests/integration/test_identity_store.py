from __future__ import annotations

import pytest
from sqlalchemy import select

from keysync.domain.models import CredentialRecord, EntitlementRecord
from keysync.domain.results import UPSERT_CONFLICT, UPSERT_INSERTED, UPSERT_LEGACY, UPSERT_UPDATED
from keysync.persistence.db import SessionLocal
from keysync.services.identity_store import IdentityStore, normalize_status


def _fields(**overrides) -> dict:
    values = {
        "owner_email": "user7@example.com",
        "plan_slug": "pro",
        "status": "active",
        "remote_id": "10",
        "last_action": "reconcile",
    }
    values.update(overrides)
    return values


@pytest.mark.asyncio
async def test_upsert_is_idempotent() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        first = await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        second = await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        assert first.status == UPSERT_INSERTED
        assert second.status == UPSERT_UPDATED
        assert first.row_id == second.row_id
        assert await store.list_pairs(CredentialRecord) == [{"owner_id": "7", "subscription_id": "sub-a"}]


@pytest.mark.asyncio
async def test_subscription_owned_by_another_owner_is_a_conflict() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        result = await store.upsert(
            CredentialRecord,
            owner_id="8",
            subscription_id="sub-a",
            fields=_fields(owner_email="intruder@example.com", remote_id="99"),
        )
        assert result.status == UPSERT_CONFLICT
        assert result.conflict_detail["type"] == "subscription_owner_mismatch"
        assert result.conflict_detail["local_owner_id"] == "7"
        assert result.conflict_detail["remote_owner_id"] == "8"

    async with SessionLocal() as session:
        rows = (await session.execute(select(CredentialRecord))).scalars().all()
    assert len(rows) == 1
    assert rows[0].owner_id == "7"
    assert rows[0].owner_email == "user7@example.com"
    assert rows[0].remote_id == "10"


@pytest.mark.asyncio
async def test_entitlements_are_owner_exclusive_but_credentials_keep_history() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(EntitlementRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        moved = await store.upsert(
            EntitlementRecord, owner_id="7", subscription_id="sub-b", fields=_fields(remote_id="11")
        )
        assert moved.status == UPSERT_CONFLICT
        assert moved.conflict_detail["type"] == "owner_subscription_mismatch"

        await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        history = await store.upsert(
            CredentialRecord, owner_id="7", subscription_id="sub-b", fields=_fields(remote_id="11")
        )
        assert history.status == UPSERT_INSERTED
        assert len(await store.list_pairs(CredentialRecord)) == 2


@pytest.mark.asyncio
async def test_remote_id_claimed_by_another_identity_is_a_conflict() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields(remote_id="10"))
        result = await store.upsert(
            CredentialRecord, owner_id="9", subscription_id="sub-z", fields=_fields(remote_id="10")
        )
    assert result.status == UPSERT_CONFLICT
    assert result.conflict_detail["type"] == "remote_id_mismatch"


@pytest.mark.asyncio
async def test_remote_id_is_sticky_and_status_is_normalized() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        await store.upsert(
            CredentialRecord,
            owner_id="7",
            subscription_id="sub-a",
            fields=_fields(remote_id=None, status="cancelled", plan_slug="team"),
        )
        row = await store.find_by_identity(CredentialRecord, owner_id="7", subscription_id="sub-a")
    assert row.remote_id == "10"
    assert row.status == "disabled"
    assert row.plan_slug == "team"


@pytest.mark.asyncio
async def test_partial_identity_bypasses_strict_mode() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        result = await store.upsert(CredentialRecord, owner_id="", subscription_id="sub-a", fields=_fields())
        assert result.status == UPSERT_LEGACY
        assert await store.list_pairs(CredentialRecord) == []


@pytest.mark.asyncio
async def test_expand_and_delete_for_identity() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(
            CredentialRecord, owner_id="7", subscription_id="sub-a", fields=_fields(owner_email="Old@Example.com")
        )
        await store.upsert(
            CredentialRecord, owner_id="7", subscription_id="sub-b", fields=_fields(remote_id="11")
        )
        await store.upsert(EntitlementRecord, owner_id="7", subscription_id="sub-b", fields=_fields(remote_id="11"))
        await store.upsert(
            CredentialRecord,
            owner_id="8",
            subscription_id="sub-c",
            fields=_fields(owner_email="other@example.com", remote_id="12"),
        )

        emails, subscriptions = await store.expand_identity(owner_id="7")
        assert emails == {"old@example.com", "user7@example.com"}
        assert subscriptions == {"sub-a", "sub-b"}

        deleted = await store.delete_for_identity(owner_id="7", emails=emails, subscription_ids=subscriptions)
        assert deleted == {"credential_records": 2, "entitlement_records": 1}
        assert await store.list_pairs(CredentialRecord) == [{"owner_id": "8", "subscription_id": "sub-c"}]


@pytest.mark.asyncio
async def test_disable_marks_row_without_deleting() -> None:
    async with SessionLocal() as session:
        store = IdentityStore(session)
        await store.upsert(EntitlementRecord, owner_id="7", subscription_id="sub-a", fields=_fields())
        assert await store.disable(EntitlementRecord, owner_id="7", subscription_id="sub-a") is True
        assert await store.disable(EntitlementRecord, owner_id="7", subscription_id="missing") is False
        row = await store.find_by_identity(EntitlementRecord, owner_id="7", subscription_id="sub-a")
    assert row.status == "disabled"


def test_normalize_status_aliases() -> None:
    assert normalize_status("Renewed") == "active"
    assert normalize_status("payment_failed") == "disabled"
    assert normalize_status("mystery") == "unknown"
