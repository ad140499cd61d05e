"""Add the sync_log audit table.

Revision ID: 002_sync_log
Revises: 001_sync_tables
Create Date: 2026-10-19

Creates one table:
- sync_log: One row per outbound push, inbound pull/poll and conflict
  resolution, with old/new state and amount, success flag and error
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002_sync_log"
down_revision: Union[str, None] = "001_sync_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sync_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=True),
        sa.Column("owner_record_id", sa.String(100), nullable=False),
        sa.Column("remote_deal_id", sa.String(100), nullable=True),
        sa.Column("operation_type", sa.String(30), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("old_state", sa.String(50), nullable=True),
        sa.Column("new_state", sa.String(50), nullable=True),
        sa.Column("old_amount", sa.Float(), nullable=True),
        sa.Column("new_amount", sa.Float(), nullable=True),
        sa.Column("remote_stage_id", sa.String(100), nullable=True),
        sa.Column("force_sync", sa.Boolean(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_log_owner_record_id", "sync_log", ["owner_record_id"])
    op.create_index("ix_sync_log_owner_created", "sync_log", ["owner_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_log_owner_created", table_name="sync_log")
    op.drop_index("ix_sync_log_owner_record_id", table_name="sync_log")
    op.drop_table("sync_log")
