from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keysync.domain.models import CredentialRecord, EntitlementRecord
from keysync.domain.results import (
    UPSERT_CONFLICT,
    UPSERT_ERROR,
    UPSERT_INSERTED,
    UPSERT_LEGACY,
    UPSERT_UPDATED,
    UpsertResult,
)


logger = logging.getLogger(__name__)

MirrorRecord = CredentialRecord | EntitlementRecord
MirrorTable = type[CredentialRecord] | type[EntitlementRecord]

MIRROR_TABLES: tuple[MirrorTable, ...] = (CredentialRecord, EntitlementRecord)

_COMMON_FIELDS = (
    "owner_email",
    "plan_slug",
    "status",
    "valid_from",
    "valid_until",
    "remote_id",
    "last_action",
    "last_http_code",
    "last_error",
)
_WRITABLE_FIELDS: dict[MirrorTable, tuple[str, ...]] = {
    CredentialRecord: _COMMON_FIELDS + ("key_prefix", "key_last4"),
    EntitlementRecord: _COMMON_FIELDS,
}
# Entitlements describe one current subscription per owner; credentials keep history.
_OWNER_EXCLUSIVE: dict[MirrorTable, bool] = {
    CredentialRecord: False,
    EntitlementRecord: True,
}

_STATUS_ALIASES = {
    "active": "active",
    "ok": "active",
    "renewed": "active",
    "activated": "active",
    "reactivated": "active",
    "disabled": "disabled",
    "inactive": "disabled",
    "cancelled": "disabled",
    "canceled": "disabled",
    "expired": "disabled",
    "payment_failed": "disabled",
    "error": "error",
}


def normalize_status(value: Any) -> str:
    # Collapse remote/event status vocabularies onto the mirror status enum.
    return _STATUS_ALIASES.get(str(value or "").strip().lower(), "unknown")


def _clean(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _pair(row: MirrorRecord) -> dict[str, str]:
    return {"owner_id": row.owner_id, "subscription_id": row.subscription_id}


class IdentityStore:
    """Single write path for the credential and entitlement mirror tables.

    Strict upsert refuses to re-assign a subscription to a different owner
    (and, for owner-exclusive tables, an owner to a different subscription);
    such conflicts are returned for operator review and never merged.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def find_by_identity(
        self,
        table: MirrorTable,
        *,
        owner_id: str,
        subscription_id: str,
    ) -> MirrorRecord | None:
        return (
            await self._session.execute(
                select(table).where(table.owner_id == owner_id, table.subscription_id == subscription_id)
            )
        ).scalar_one_or_none()

    async def insert(
        self,
        table: MirrorTable,
        *,
        owner_id: str,
        subscription_id: str,
        fields: dict[str, Any],
    ) -> MirrorRecord:
        row = table(owner_id=owner_id, subscription_id=subscription_id)
        self._apply(table, row, fields)
        if not row.status:
            row.status = "unknown"
        self._session.add(row)
        await self._session.flush()
        return row

    async def update(self, table: MirrorTable, row: MirrorRecord, fields: dict[str, Any]) -> MirrorRecord:
        self._apply(table, row, fields)
        await self._session.flush()
        return row

    async def disable(
        self,
        table: MirrorTable,
        *,
        owner_id: str,
        subscription_id: str,
        commit: bool = True,
    ) -> bool:
        row = await self.find_by_identity(table, owner_id=owner_id, subscription_id=subscription_id)
        if row is None:
            return False
        row.status = "disabled"
        await self._session.flush()
        if commit:
            await self._session.commit()
        return True

    def _apply(self, table: MirrorTable, row: MirrorRecord, fields: dict[str, Any]) -> None:
        # Last write wins per field, except remote ids which are sticky once learned.
        for name in _WRITABLE_FIELDS[table]:
            if name not in fields:
                continue
            value = fields[name]
            if name == "remote_id":
                value = _clean(value) or None
                if value is None:
                    continue
            if name == "status":
                value = normalize_status(value)
            setattr(row, name, value)

    async def _find_conflict(
        self,
        table: MirrorTable,
        *,
        owner_id: str,
        subscription_id: str,
        remote_id: str,
    ) -> tuple[str, MirrorRecord] | None:
        other_owner = (
            await self._session.execute(
                select(table)
                .where(table.subscription_id == subscription_id, table.owner_id != owner_id)
                .limit(1)
            )
        ).scalar_one_or_none()
        if other_owner is not None:
            return "subscription_owner_mismatch", other_owner
        if _OWNER_EXCLUSIVE[table]:
            other_subscription = (
                await self._session.execute(
                    select(table)
                    .where(
                        table.owner_id == owner_id,
                        table.subscription_id != subscription_id,
                        table.subscription_id != "",
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
            if other_subscription is not None:
                return "owner_subscription_mismatch", other_subscription
        if remote_id:
            other_remote = (
                await self._session.execute(
                    select(table)
                    .where(
                        table.remote_id == remote_id,
                        or_(table.owner_id != owner_id, table.subscription_id != subscription_id),
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
            if other_remote is not None:
                return "remote_id_mismatch", other_remote
        return None

    async def upsert(
        self,
        table: MirrorTable,
        *,
        owner_id: Any,
        subscription_id: Any,
        fields: dict[str, Any],
        commit: bool = True,
    ) -> UpsertResult:
        owner = _clean(owner_id)
        subscription = _clean(subscription_id)
        if not owner or not subscription:
            # Partial identities bypass strict mode entirely.
            return UpsertResult(status=UPSERT_LEGACY)
        try:
            conflict = await self._find_conflict(
                table,
                owner_id=owner,
                subscription_id=subscription,
                remote_id=_clean(fields.get("remote_id")),
            )
            if conflict is not None:
                conflict_type, local = conflict
                logger.warning(
                    "identity_conflict table=%s type=%s local_owner=%s local_subscription=%s "
                    "remote_owner=%s remote_subscription=%s",
                    table.__tablename__,
                    conflict_type,
                    local.owner_id,
                    local.subscription_id,
                    owner,
                    subscription,
                )
                return UpsertResult(
                    status=UPSERT_CONFLICT,
                    row_id=local.id,
                    conflict_detail={
                        "type": conflict_type,
                        "local_owner_id": local.owner_id,
                        "local_subscription_id": local.subscription_id,
                        "remote_owner_id": owner,
                        "remote_subscription_id": subscription,
                    },
                )
            row = await self.find_by_identity(table, owner_id=owner, subscription_id=subscription)
            if row is not None:
                await self.update(table, row, fields)
                status = UPSERT_UPDATED
            else:
                row = await self.insert(table, owner_id=owner, subscription_id=subscription, fields=fields)
                status = UPSERT_INSERTED
            row_id = row.id
            if commit:
                await self._session.commit()
            return UpsertResult(status=status, row_id=row_id)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.warning(
                "identity_upsert_failed table=%s owner_id=%s subscription_id=%s error=%s",
                table.__tablename__,
                owner,
                subscription,
                type(exc).__name__,
            )
            return UpsertResult(status=UPSERT_ERROR, error=str(exc)[:300])

    async def expand_identity(
        self,
        *,
        owner_id: str | None,
        email: str | None = None,
        subscription_id: str | None = None,
    ) -> tuple[set[str], set[str]]:
        # Collect every email and subscription id the mirror associates with an identity.
        emails: set[str] = {_clean(email).lower()} if _clean(email) else set()
        subscriptions: set[str] = {_clean(subscription_id)} if _clean(subscription_id) else set()
        for table in MIRROR_TABLES:
            clauses = []
            if _clean(owner_id):
                clauses.append(table.owner_id == _clean(owner_id))
            if _clean(email):
                clauses.append(table.owner_email == _clean(email))
            if _clean(subscription_id):
                clauses.append(table.subscription_id == _clean(subscription_id))
            if not clauses:
                continue
            rows = (
                await self._session.execute(
                    select(table.owner_email, table.subscription_id).where(or_(*clauses))
                )
            ).all()
            for row_email, row_subscription in rows:
                if row_email:
                    emails.add(str(row_email).lower())
                if row_subscription:
                    subscriptions.add(str(row_subscription))
        return emails, subscriptions

    async def delete_for_identity(
        self,
        *,
        owner_id: str | None,
        emails: Iterable[str] = (),
        subscription_ids: Iterable[str] = (),
        commit: bool = True,
    ) -> dict[str, int]:
        # Remove every mirror row addressed by owner, email or subscription.
        email_list = sorted({_clean(value) for value in emails if _clean(value)})
        subscription_list = sorted({_clean(value) for value in subscription_ids if _clean(value)})
        deleted: dict[str, int] = {}
        for table in MIRROR_TABLES:
            clauses = []
            if _clean(owner_id):
                clauses.append(table.owner_id == _clean(owner_id))
            if email_list:
                clauses.append(table.owner_email.in_(email_list))
            if subscription_list:
                clauses.append(table.subscription_id.in_(subscription_list))
            if not clauses:
                deleted[table.__tablename__] = 0
                continue
            result = await self._session.execute(delete(table).where(or_(*clauses)))
            deleted[table.__tablename__] = int(result.rowcount or 0)
        if commit:
            await self._session.commit()
        return deleted

    async def delete_absent(
        self,
        table: MirrorTable,
        *,
        remote_ids: set[str],
        owner_ids: set[str],
        subscription_ids: set[str],
        protected_pairs: set[tuple[str, str]],
        commit: bool = True,
    ) -> int:
        # Garbage-collect rows the complete remote snapshot no longer contains.
        rows = (
            await self._session.execute(
                select(table.id, table.owner_id, table.subscription_id, table.remote_id)
            )
        ).all()
        stale_ids: list[int] = []
        for row_id, owner, subscription, remote_id in rows:
            if (owner, subscription) in protected_pairs:
                continue
            if remote_id:
                stale = remote_id not in remote_ids
            else:
                # Local-only rows go only when their subscription is provably absent.
                stale = subscription not in subscription_ids
            if _OWNER_EXCLUSIVE[table] and owner not in owner_ids:
                stale = True
            if stale:
                stale_ids.append(row_id)
        deleted = 0
        for start in range(0, len(stale_ids), 500):
            chunk = stale_ids[start : start + 500]
            result = await self._session.execute(delete(table).where(table.id.in_(chunk)))
            deleted += int(result.rowcount or 0)
        if commit:
            await self._session.commit()
        if deleted:
            logger.info("identity_gc table=%s deleted=%s", table.__tablename__, deleted)
        return deleted

    async def list_pairs(self, table: MirrorTable) -> list[dict[str, str]]:
        rows = (await self._session.execute(select(table).order_by(table.id))).scalars().all()
        return [_pair(row) for row in rows]
