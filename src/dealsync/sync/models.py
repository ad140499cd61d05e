"""Sync engine persistence models.

Six SQLAlchemy models on the shared declarative Base:
- BusinessRecordModel: Local deals owned by a user (read for snapshots)
- SyncQueueItemModel: Append-only queue of remote sync operations
- StateMappingModel: Business state -> remote pipeline/stage per owner
- SyncConflictModel: Detected local/remote divergences and their resolution
- SyncConfigModel: Per-owner sync configuration
- SyncLogModel: Audit trail of sync attempts in every direction

Column types are dialect-neutral (Uuid, JSON) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsync.core.database import Base
from src.dealsync.sync.exceptions import InvalidReference
from src.dealsync.sync.schemas import utcnow


class BusinessRecordModel(Base):
    """Local deal (event quote) kept consistent with a remote CRM deal."""

    __tablename__ = "business_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    state: Mapped[str] = mapped_column(
        String(50), nullable=False, default="opportunity_created"
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    close_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    remote_deal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow, onupdate=utcnow
    )


class SyncQueueItemModel(Base):
    """One pending/in-flight/finished remote sync operation.

    Rows are never deleted; the status column is the only lifecycle.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_ready", "status", "scheduled_at", "priority", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("business_records.id"), nullable=False, index=True
    )
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class StateMappingModel(Base):
    """Remote pipeline/stage for one business state of one owner."""

    __tablename__ = "sync_state_mappings"
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "business_state",
            name="uq_state_mapping_owner_state",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    business_state: Mapped[str] = mapped_column(String(50), nullable=False)
    remote_pipeline_id: Mapped[str] = mapped_column(String(100), nullable=False)
    remote_stage_id: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, onupdate=utcnow
    )


class SyncConflictModel(Base):
    """Local/remote divergence awaiting (or after) manual resolution.

    At most one pending row per record (partial unique index).
    """

    __tablename__ = "sync_conflicts"
    __table_args__ = (
        Index(
            "uq_sync_conflicts_pending_record",
            "owner_record_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("business_records.id"), nullable=False, index=True
    )
    conflict_type: Mapped[str] = mapped_column(String(20), nullable=False)
    local_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remote_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    local_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    remote_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    resolution_strategy: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class SyncConfigModel(Base):
    """Per-owner switches read before every tick and manual trigger."""

    __tablename__ = "sync_config"

    owner_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    api_key_set: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_sync: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bidirectional_sync: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    polling_interval_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=30
    )
    conflict_resolution_strategy: Mapped[str] = mapped_column(
        String(20), nullable=False, default="manual"
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow, onupdate=utcnow
    )


class SyncLogModel(Base):
    """One sync attempt (outbound push, inbound pull or conflict resolution).

    owner_record_id is not a foreign key: entries outlive deleted records
    and also record attempts against ids that never existed.
    """

    __tablename__ = "sync_log"
    __table_args__ = (Index("ix_sync_log_owner_created", "owner_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    owner_record_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    remote_deal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    old_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_state: Mapped[str | None] = mapped_column(String(50), nullable=True)
    old_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    new_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    remote_stage_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    force_sync: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


def as_uuid(value: str | uuid.UUID, entity: str) -> uuid.UUID:
    """Parse an identifier, treating malformed ids as unknown references."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise InvalidReference(entity, str(value)) from exc
