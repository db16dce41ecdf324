from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, generic JSON elsewhere (sqlite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")

CREDENTIAL_STATUSES = ("active", "disabled", "error", "unknown")

PURGE_PENDING = "pending"
PURGE_PROCESSING = "processing"
PURGE_DONE = "done"
PURGE_ERROR = "error"

PROVISION_PENDING = "pending"
PROVISION_PROCESSING = "processing"
PROVISION_RETRY = "retry"
PROVISION_DONE = "done"
PROVISION_FAILED = "failed"


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        # sqlite drops tzinfo on the way back; stored values are always UTC.
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class CredentialRecord(Base):
    __tablename__ = "credential_records"
    __table_args__ = (
        UniqueConstraint("owner_id", "subscription_id", name="uq_credential_records_identity"),
        UniqueConstraint("remote_id", name="uq_credential_records_remote_id"),
        Index("ix_credential_records_owner_id", "owner_id"),
        Index("ix_credential_records_subscription_id", "subscription_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    subscription_id: Mapped[str] = mapped_column(String, nullable=False)
    owner_email: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    # One of CREDENTIAL_STATUSES.
    status: Mapped[str] = mapped_column(String, default="unknown", nullable=False)
    # Never persist the full secret; only the display fragments.
    key_prefix: Mapped[str | None] = mapped_column(String(32), nullable=True)
    key_last4: Mapped[str | None] = mapped_column(String(8), nullable=True)
    valid_from: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    # Remote ids are sticky once learned; unique when present.
    remote_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_action: Mapped[str | None] = mapped_column(String, nullable=True)
    last_http_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())


class EntitlementRecord(Base):
    __tablename__ = "entitlement_records"
    __table_args__ = (
        UniqueConstraint("owner_id", "subscription_id", name="uq_entitlement_records_identity"),
        UniqueConstraint("remote_id", name="uq_entitlement_records_remote_id"),
        Index("ix_entitlement_records_owner_id", "owner_id"),
        Index("ix_entitlement_records_subscription_id", "subscription_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    subscription_id: Mapped[str] = mapped_column(String, nullable=False)
    owner_email: Mapped[str | None] = mapped_column(String, nullable=True)
    plan_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="unknown", nullable=False)
    valid_from: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    remote_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_action: Mapped[str | None] = mapped_column(String, nullable=True)
    last_http_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())


class PurgeJob(Base):
    __tablename__ = "purge_jobs"
    __table_args__ = (
        Index("ix_purge_jobs_status_next_run", "status", "next_run_at"),
        Index("ix_purge_jobs_owner_id", "owner_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # At least one of owner_id/email/subscription_id is required at enqueue.
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=PURGE_PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())


class ProvisionJob(Base):
    __tablename__ = "provision_jobs"
    __table_args__ = (
        UniqueConstraint("event_id", name="uq_provision_jobs_event_id"),
        Index("ix_provision_jobs_status_next_run", "status", "next_run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Opaque lifecycle event replayed verbatim through the delivery path.
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String, default=PROVISION_PENDING, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_http_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())


class LockState(Base):
    __tablename__ = "run_locks"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    holder_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # A lock whose held_until has passed is treated as not held.
    held_until: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())


class JobFailureState(Base):
    __tablename__ = "job_failure_states"

    job_kind: Mapped[str] = mapped_column(String, primary_key=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failure_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, default="", nullable=False)
    alerted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    alert_sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    # Run bookkeeping surfaced through get_job_status.
    last_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)
    last_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Job-specific diagnostics (last HTTP code/url/body excerpt, stable streak).
    details_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime(), server_default=func.now(), onupdate=func.now())
