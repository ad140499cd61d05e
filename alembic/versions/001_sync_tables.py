"""Create the sync engine tables.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-19

Creates five tables:
- business_records: Local deals, linked to a remote deal via remote_deal_id
- sync_queue: Prioritized queue of remote sync operations (never deleted)
- sync_state_mappings: Business state -> remote pipeline/stage per owner
- sync_conflicts: Divergences, at most one pending per record
- sync_config: Per-owner sync switches
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── business_records table ──────────────────────────────────────────

    op.create_table(
        "business_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("state", sa.String(50), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_deal_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_business_records_owner_id", "business_records", ["owner_id"])

    # ── sync_queue table ────────────────────────────────────────────────

    op.create_table(
        "sync_queue",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_record_id",
            sa.Uuid(),
            sa.ForeignKey("business_records.id"),
            nullable=False,
        ),
        sa.Column("operation_type", sa.String(50), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_queue_owner_record_id", "sync_queue", ["owner_record_id"])
    op.create_index(
        "ix_sync_queue_ready",
        "sync_queue",
        ["status", "scheduled_at", "priority", "created_at"],
    )

    # ── sync_state_mappings table ───────────────────────────────────────

    op.create_table(
        "sync_state_mappings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("business_state", sa.String(50), nullable=False),
        sa.Column("remote_pipeline_id", sa.String(100), nullable=False),
        sa.Column("remote_stage_id", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "owner_id", "business_state", name="uq_state_mapping_owner_state"
        ),
    )

    # ── sync_conflicts table ────────────────────────────────────────────

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_record_id",
            sa.Uuid(),
            sa.ForeignKey("business_records.id"),
            nullable=False,
        ),
        sa.Column("conflict_type", sa.String(20), nullable=False),
        sa.Column("local_state", sa.String(50), nullable=True),
        sa.Column("remote_state", sa.String(50), nullable=True),
        sa.Column("local_amount", sa.Float(), nullable=True),
        sa.Column("remote_amount", sa.Float(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("resolution_strategy", sa.String(20), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_sync_conflicts_owner_record_id", "sync_conflicts", ["owner_record_id"]
    )
    op.create_index(
        "uq_sync_conflicts_pending_record",
        "sync_conflicts",
        ["owner_record_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    # ── sync_config table ───────────────────────────────────────────────

    op.create_table(
        "sync_config",
        sa.Column("owner_id", sa.String(100), primary_key=True),
        sa.Column("api_key_set", sa.Boolean(), nullable=False),
        sa.Column("auto_sync", sa.Boolean(), nullable=False),
        sa.Column("bidirectional_sync", sa.Boolean(), nullable=False),
        sa.Column("polling_interval_minutes", sa.Integer(), nullable=False),
        sa.Column("conflict_resolution_strategy", sa.String(20), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sync_config")
    op.drop_index("uq_sync_conflicts_pending_record", table_name="sync_conflicts")
    op.drop_index("ix_sync_conflicts_owner_record_id", table_name="sync_conflicts")
    op.drop_table("sync_conflicts")
    op.drop_table("sync_state_mappings")
    op.drop_index("ix_sync_queue_ready", table_name="sync_queue")
    op.drop_index("ix_sync_queue_owner_record_id", table_name="sync_queue")
    op.drop_table("sync_queue")
    op.drop_index("ix_business_records_owner_id", table_name="business_records")
    op.drop_table("business_records")
