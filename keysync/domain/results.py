from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# Strict-upsert outcomes.
UPSERT_INSERTED = "inserted"
UPSERT_UPDATED = "updated"
UPSERT_CONFLICT = "conflict"
UPSERT_LEGACY = "legacy"
UPSERT_ERROR = "error"

# Aggregate run outcomes shared by reconciliation and both workers.
RUN_OK = "ok"
RUN_ERROR = "error"
RUN_LOCKED = "locked"
RUN_SKIPPED_LOCKED = "skipped_locked"
RUN_SKIPPED_DISABLED = "skipped_disabled"


@dataclass(frozen=True)
class FetchResult:
    # Outcome of one remote HTTP call; never raised, always returned.
    ok: bool
    http_code: int = 0
    body: Any = None
    error: str = ""
    url: str = ""
    body_excerpt: str = ""
    decoded_error: str = ""

    def as_context(self) -> dict[str, Any]:
        return {
            "http_code": self.http_code,
            "url": self.url,
            "body_excerpt": self.body_excerpt,
            "decoded_error": self.decoded_error,
        }


@dataclass(frozen=True)
class DeliveryResult:
    # Validated outcome of an event delivery or purge call.
    ok: bool
    status: str
    error: str = ""
    http_code: int = 0
    response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpsertResult:
    status: str
    row_id: int | None = None
    conflict_detail: dict[str, str] | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (UPSERT_INSERTED, UPSERT_UPDATED)


@dataclass(frozen=True)
class ReconcileResult:
    status: str
    counts: dict[str, int] = field(default_factory=dict)
    error: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"status": self.status, "counts": dict(self.counts), "error": self.error}


@dataclass(frozen=True)
class WorkerRunResult:
    status: str
    error: str = ""
    processed: int = 0
    duration_ms: int = 0
    claimed: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "error": self.error,
            "processed": self.processed,
            "claimed": self.claimed,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class AlertDecision:
    # What the alerting state machine did for one job result.
    job_kind: str
    failures: int
    alert_sent: bool = False
    recovery_sent: bool = False
    suppressed_reason: str | None = None
