"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _mirror_columns(*, with_key_material: bool) -> list[sa.Column]:
    columns = [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("owner_email", sa.String(), nullable=True),
        sa.Column("plan_slug", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_id", sa.String(), nullable=True),
        sa.Column("last_action", sa.String(), nullable=True),
        sa.Column("last_http_code", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    if with_key_material:
        # Display fragments only; full secrets are never stored.
        columns.insert(6, sa.Column("key_prefix", sa.String(32), nullable=True))
        columns.insert(7, sa.Column("key_last4", sa.String(8), nullable=True))
    return columns


def _queue_columns() -> list[sa.Column]:
    return [
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lease_token", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    for table in ("credential_records", "entitlement_records"):
        op.create_table(
            table,
            *_mirror_columns(with_key_material=table == "credential_records"),
            sa.UniqueConstraint("owner_id", "subscription_id", name=f"uq_{table}_identity"),
            sa.UniqueConstraint("remote_id", name=f"uq_{table}_remote_id"),
        )
        op.create_index(f"ix_{table}_owner_id", table, ["owner_id"])
        op.create_index(f"ix_{table}_subscription_id", table, ["subscription_id"])

    op.create_table(
        "purge_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("reason", sa.String(), nullable=False),
        *_queue_columns(),
    )
    op.create_index("ix_purge_jobs_status_next_run", "purge_jobs", ["status", "next_run_at"])
    op.create_index("ix_purge_jobs_owner_id", "purge_jobs", ["owner_id"])

    op.create_table(
        "provision_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("last_http_code", sa.Integer(), nullable=True),
        *_queue_columns(),
        sa.UniqueConstraint("event_id", name="uq_provision_jobs_event_id"),
    )
    op.create_index("ix_provision_jobs_status_next_run", "provision_jobs", ["status", "next_run_at"])

    op.create_table(
        "run_locks",
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("holder_token", sa.String(), nullable=True),
        sa.Column("held_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "job_failure_states",
        sa.Column("job_kind", sa.String(), primary_key=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=False, server_default=""),
        sa.Column("alerted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("alert_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(), nullable=True),
        sa.Column("last_duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("job_failure_states")
    op.drop_table("run_locks")
    op.drop_index("ix_provision_jobs_status_next_run", table_name="provision_jobs")
    op.drop_table("provision_jobs")
    op.drop_index("ix_purge_jobs_owner_id", table_name="purge_jobs")
    op.drop_index("ix_purge_jobs_status_next_run", table_name="purge_jobs")
    op.drop_table("purge_jobs")
    for table in ("entitlement_records", "credential_records"):
        op.drop_index(f"ix_{table}_subscription_id", table_name=table)
        op.drop_index(f"ix_{table}_owner_id", table_name=table)
        op.drop_table(table)
