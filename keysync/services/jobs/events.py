from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import re
from typing import Any

from keysync.core.errors import InvalidPayloadError


LIFECYCLE_EVENTS = (
    "activated",
    "active",
    "renewed",
    "reactivated",
    "cancelled",
    "expired",
    "disabled",
    "payment_failed",
)
EVENT_ID_PREFIX = "keysync|v1|"
_EVENT_ID_FIELDS = (
    "event",
    "subscription_status",
    "subscription_id",
    "order_id",
    "owner_id",
    "customer_email",
    "plan_slug",
    "valid_from",
    "valid_until",
    "event_patch",
)
# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10**12


def normalize_plan_slug(raw: Any) -> str:
    # Lowercase, dash-separated, [a-z0-9-] only, no leading/trailing/double dashes.
    slug = str(raw if raw is not None else "").strip().lower()
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9\-]+", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def parse_utc(value: Any) -> datetime | None:
    """Parse epoch seconds/milliseconds or ISO-8601 text into an aware UTC datetime.

    Naive text is interpreted as UTC. Unparseable or empty values yield None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and re.fullmatch(r"\d+(\.\d+)?", value.strip())):
        epoch = float(value)
        if epoch <= 0:
            return None
        if epoch >= _EPOCH_MS_THRESHOLD:
            epoch = epoch / 1000.0
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso_utc(value: Any) -> str:
    parsed = parse_utc(value)
    if parsed is None:
        return ""
    return parsed.strftime("%Y-%m-%dT%H:%M:%SZ")


def event_id_from_payload(payload: dict[str, Any]) -> str:
    # Deterministic idempotency key over the identity-bearing fields of an event.
    parts = []
    for name in _EVENT_ID_FIELDS:
        value = str(payload.get(name) if payload.get(name) is not None else "").strip()
        if name == "customer_email":
            value = value.lower()
        parts.append(value)
    canonical = EVENT_ID_PREFIX + "|".join(parts)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def normalize_event_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Validate a lifecycle event and return its canonical wire form.

    Raises InvalidPayloadError for unknown events, missing identity, or a
    missing plan slug on active-like events.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("event payload must be an object")
    event = str(payload.get("event") or "").strip().lower()
    if event not in LIFECYCLE_EVENTS:
        raise InvalidPayloadError(f"unsupported event: {event or '<empty>'}")
    normalized: dict[str, Any] = {key: value for key, value in payload.items() if value is not None}
    normalized["event"] = event
    for name in ("owner_id", "subscription_id", "order_id", "subscription_status"):
        if name in normalized:
            normalized[name] = str(normalized[name]).strip()
    if normalized.get("customer_email"):
        normalized["customer_email"] = str(normalized["customer_email"]).strip().lower()
    if "plan_slug" in normalized:
        normalized["plan_slug"] = normalize_plan_slug(normalized["plan_slug"])
    for name in ("valid_from", "valid_until"):
        if name in normalized:
            iso = to_iso_utc(normalized[name])
            if iso:
                normalized[name] = iso
            else:
                normalized.pop(name)
    if not (normalized.get("owner_id") or normalized.get("customer_email") or normalized.get("subscription_id")):
        raise InvalidPayloadError("event payload needs owner_id, customer_email or subscription_id")
    if event in ("activated", "active", "renewed", "reactivated") and not normalized.get("plan_slug"):
        raise InvalidPayloadError("active events require plan_slug")
    if not normalized.get("event_id"):
        normalized["event_id"] = event_id_from_payload(normalized)
    return normalized
