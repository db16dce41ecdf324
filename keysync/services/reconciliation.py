from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any

from keysync.core.config import JOB_RECONCILIATION, get_settings
from keysync.core.errors import LockHeldError
from keysync.core.logging import redact
from keysync.domain.models import CredentialRecord, EntitlementRecord
from keysync.domain.results import (
    RUN_ERROR,
    RUN_LOCKED,
    RUN_OK,
    RUN_SKIPPED_DISABLED,
    UPSERT_CONFLICT,
    UPSERT_ERROR,
    UPSERT_LEGACY,
    ReconcileResult,
    UpsertResult,
)
from keysync.persistence.db import SessionLocal
from keysync.services.identity_store import IdentityStore
from keysync.services.jobs.events import normalize_plan_slug, parse_utc
from keysync.services.locks import hold_run_lock
from keysync.services.operability.state import get_job_state, update_job_details
from keysync.services.remote_client import RemoteClient


logger = logging.getLogger(__name__)

RUN_WARNING = "warning"
FREE_PLAN_SLUG = "free"
ACTIVE_ITEM_STATUSES = {"active", "ok"}
# Hard stop for snapshots whose pagination metadata never terminates.
MAX_PAGES = 10000


@dataclass(frozen=True)
class SnapshotItem:
    """One remote snapshot row after identity and timestamp normalization."""

    owner_id: str
    subscription_id: str
    remote_id: str
    email: str
    plan_slug: str
    status: str
    valid_from: datetime | None
    valid_until: datetime | None
    key_prefix: str | None
    key_last4: str | None

    @property
    def has_stable_id(self) -> bool:
        # Both halves of the pair are needed to address mirror rows.
        return bool(self.owner_id and self.subscription_id)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ITEM_STATUSES

    @property
    def unstable_reason(self) -> str:
        if not self.has_stable_id:
            return "missing_identifiers"
        if self.is_active and not self.plan_slug:
            return "missing_plan_slug"
        if self.is_active and self.valid_from is None and self.valid_until is None:
            return "missing_validity"
        return ""


def _first(item: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = item.get(name)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_snapshot_item(item: dict[str, Any]) -> SnapshotItem:
    owner_id = _text(_first(item, "owner_id", "wp_user_id", "user_id"))
    if owner_id == "0":
        owner_id = ""
    plan_slug = normalize_plan_slug(_first(item, "plan_slug", "plan"))
    subscription_id = _text(_first(item, "subscription_id", "external_subscription_id"))
    if not subscription_id and plan_slug == FREE_PLAN_SLUG and owner_id:
        subscription_id = f"free-{owner_id}"
    remote_id = _text(_first(item, "id", "api_key_id", "node_api_key_id"))
    if remote_id == "0":
        remote_id = ""
    key_value = item.get("key") if isinstance(item.get("key"), str) else ""
    key_prefix = _text(item.get("key_prefix")) or (key_value[:10] if key_value else "")
    key_last4 = _text(item.get("key_last4")) or (key_value[-4:] if key_value else "")
    return SnapshotItem(
        owner_id=owner_id,
        subscription_id=subscription_id,
        remote_id=remote_id,
        email=_text(_first(item, "customer_email", "email")).lower(),
        plan_slug=plan_slug,
        status=_text(item.get("status")).lower(),
        valid_from=parse_utc(_first(item, "valid_from", "valid_from_at")),
        valid_until=parse_utc(_first(item, "valid_until", "valid_to")),
        key_prefix=key_prefix or None,
        key_last4=key_last4 or None,
    )


def items_from_body(body: Any) -> list[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for name in ("items", "data"):
            if isinstance(body.get(name), list):
                return body[name]
    return []


def has_more_pages(body: Any, *, page: int, per_page: int, item_count: int) -> bool:
    # Trust explicit pagination metadata first; otherwise a full page implies more.
    if item_count == 0:
        return False
    if isinstance(body, dict):
        if isinstance(body.get("has_more"), bool):
            return body["has_more"]
        total_pages = body.get("total_pages")
        if isinstance(total_pages, int) and total_pages > 0:
            return page < total_pages
    return item_count >= per_page


def _remote_rank(remote_id: str) -> tuple[int, int, str]:
    if remote_id.isdigit():
        return (1, int(remote_id), "")
    return (0, 0, remote_id)


def select_winner(current: SnapshotItem | None, candidate: SnapshotItem) -> SnapshotItem:
    """Pick the authoritative entitlement row for an owner.

    Highest remote id wins; without remote ids an item carrying an explicit
    validity end wins; otherwise the first seen item is kept.
    """
    if current is None:
        return candidate
    if current.remote_id or candidate.remote_id:
        if not candidate.remote_id:
            return current
        if not current.remote_id:
            return candidate
        return candidate if _remote_rank(candidate.remote_id) > _remote_rank(current.remote_id) else current
    if current.valid_until is None and candidate.valid_until is not None:
        return candidate
    return current


def _projection_fields(item: SnapshotItem) -> dict[str, Any]:
    return {
        "owner_email": item.email or None,
        "plan_slug": item.plan_slug or None,
        "status": item.status,
        "valid_from": item.valid_from,
        "valid_until": item.valid_until,
        "remote_id": item.remote_id or None,
        "last_action": "reconcile",
        "last_error": None,
    }


def _new_counts() -> dict[str, int]:
    return {
        "pages": 0,
        "items": 0,
        "key_upserts": 0,
        "user_upserts": 0,
        "deleted_keys": 0,
        "deleted_users": 0,
        "conflicts": 0,
        "skipped_legacy": 0,
        "unstable": 0,
        "errors": 0,
        "duration_ms": 0,
    }


def _tally(
    counts: dict[str, int],
    result: UpsertResult,
    *,
    counter: str,
    protected_pairs: set[tuple[str, str]],
    conflict_samples: list[dict[str, str]],
) -> None:
    if result.ok:
        counts[counter] += 1
    elif result.status == UPSERT_LEGACY:
        counts["skipped_legacy"] += 1
    elif result.status == UPSERT_CONFLICT:
        counts["conflicts"] += 1
        detail = result.conflict_detail or {}
        # Never garbage-collect the local side of an unresolved conflict.
        if detail.get("local_owner_id") and detail.get("local_subscription_id"):
            protected_pairs.add((detail["local_owner_id"], detail["local_subscription_id"]))
        if len(conflict_samples) < 5:
            conflict_samples.append(detail)
    elif result.status == UPSERT_ERROR:
        counts["errors"] += 1


async def run_reconciliation(*, manual: bool = False, client: RemoteClient | None = None) -> ReconcileResult:
    """Run one full-snapshot reconciliation pass under the run-level lock."""
    settings = get_settings()
    if not settings.reconcile_enabled and not manual:
        return ReconcileResult(status=RUN_SKIPPED_DISABLED, counts=_new_counts())
    try:
        async with hold_run_lock(JOB_RECONCILIATION, ttl_seconds=max(1, settings.reconcile_lock_minutes) * 60):
            return await _run_pass(client=client or RemoteClient(), manual=manual)
    except LockHeldError:
        return ReconcileResult(status=RUN_LOCKED, counts=_new_counts(), error="reconciliation already running")


async def _run_pass(*, client: RemoteClient, manual: bool) -> ReconcileResult:
    settings = get_settings()
    started = time.monotonic()
    per_page = max(1, min(500, int(settings.reconcile_per_page)))
    counts = _new_counts()
    remote_ids: set[str] = set()
    owner_ids: set[str] = set()
    subscription_ids: set[str] = set()
    protected_pairs: set[tuple[str, str]] = set()
    conflict_samples: list[dict[str, str]] = []
    unstable_samples: list[dict[str, Any]] = []
    winners: dict[str, SnapshotItem] = {}
    stable = True

    async with SessionLocal() as session:
        store = IdentityStore(session)
        page = 1
        while page <= MAX_PAGES:
            fetched = await client.fetch_snapshot_page(page=page, per_page=per_page)
            if not fetched.ok or not isinstance(fetched.body, (dict, list)):
                error = fetched.error or "invalid_json"
                if fetched.ok:
                    error = f"invalid_json: {fetched.body_excerpt[:200]}"
                elif fetched.body_excerpt:
                    error = f"{error}: {fetched.body_excerpt[:200]}"
                context = dict(fetched.as_context(), page=page)
                logger.error("reconcile_page_failed context=%s", redact(context))
                counts["duration_ms"] = int((time.monotonic() - started) * 1000)
                # Aborted passes never garbage-collect and reset the stability streak.
                await update_job_details(session=session, job_kind=JOB_RECONCILIATION, stable_streak=0)
                return ReconcileResult(status=RUN_ERROR, counts=counts, error=error, context=context)

            items = items_from_body(fetched.body)
            counts["pages"] += 1
            counts["items"] += len(items)
            for raw in items:
                if not isinstance(raw, dict):
                    continue
                item = normalize_snapshot_item(raw)
                reason = item.unstable_reason
                if reason:
                    stable = False
                    counts["unstable"] += 1
                    if len(unstable_samples) < 3:
                        unstable_samples.append({"reason": reason, "keys": sorted(raw.keys()), "owner_id": item.owner_id})
                    continue
                if item.remote_id:
                    remote_ids.add(item.remote_id)
                subscription_ids.add(item.subscription_id)
                owner_ids.add(item.owner_id)

                fields = dict(_projection_fields(item), key_prefix=item.key_prefix, key_last4=item.key_last4)
                result = await store.upsert(
                    CredentialRecord,
                    owner_id=item.owner_id,
                    subscription_id=item.subscription_id,
                    fields=fields,
                )
                _tally(
                    counts,
                    result,
                    counter="key_upserts",
                    protected_pairs=protected_pairs,
                    conflict_samples=conflict_samples,
                )
                winners[item.owner_id] = select_winner(winners.get(item.owner_id), item)

            if not has_more_pages(fetched.body, page=page, per_page=per_page, item_count=len(items)):
                break
            page += 1

        for owner_id, winner in winners.items():
            result = await store.upsert(
                EntitlementRecord,
                owner_id=owner_id,
                subscription_id=winner.subscription_id,
                fields=_projection_fields(winner),
            )
            _tally(
                counts,
                result,
                counter="user_upserts",
                protected_pairs=protected_pairs,
                conflict_samples=conflict_samples,
            )

        state = await get_job_state(session=session, job_kind=JOB_RECONCILIATION)
        previous_streak = int((state.details_json or {}).get("stable_streak") or 0)
        clean_pass = stable and counts["errors"] == 0 and counts["skipped_legacy"] == 0
        streak = previous_streak + 1 if clean_pass else 0
        await update_job_details(session=session, job_kind=JOB_RECONCILIATION, stable_streak=streak)

        gc_skip_reason = ""
        if not settings.reconcile_delete_stale:
            gc_skip_reason = "disabled"
        elif not stable:
            gc_skip_reason = "unstable_identifiers"
        elif counts["errors"]:
            gc_skip_reason = "upsert_errors"
        elif counts["skipped_legacy"]:
            gc_skip_reason = "legacy_rows"
        elif counts["items"] == 0:
            gc_skip_reason = "empty_snapshot"
        elif streak < max(1, int(settings.reconcile_min_stable_streak)):
            gc_skip_reason = "stable_streak"
        if gc_skip_reason:
            if gc_skip_reason != "disabled":
                logger.warning(
                    "reconcile_gc_skipped reason=%s streak=%s unstable=%s samples=%s",
                    gc_skip_reason,
                    streak,
                    counts["unstable"],
                    unstable_samples,
                )
        else:
            counts["deleted_keys"] = await store.delete_absent(
                CredentialRecord,
                remote_ids=remote_ids,
                owner_ids=owner_ids,
                subscription_ids=subscription_ids,
                protected_pairs=protected_pairs,
            )
            counts["deleted_users"] = await store.delete_absent(
                EntitlementRecord,
                remote_ids=remote_ids,
                owner_ids=owner_ids,
                subscription_ids=subscription_ids,
                protected_pairs=protected_pairs,
            )

    counts["duration_ms"] = int((time.monotonic() - started) * 1000)
    status = RUN_OK
    error = ""
    if counts["conflicts"] or counts["errors"] or counts["unstable"]:
        status = RUN_WARNING
        error = (
            f"conflicts={counts['conflicts']} errors={counts['errors']} unstable={counts['unstable']}"
        )
    logger.info("reconcile_pass_complete manual=%s status=%s counts=%s", manual, status, counts)
    return ReconcileResult(
        status=status,
        counts=counts,
        error=error,
        context={"conflict_samples": conflict_samples, "gc_skipped": gc_skip_reason, "stable_streak": streak},
    )
