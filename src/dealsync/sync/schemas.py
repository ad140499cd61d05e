"""Pydantic schemas for the CRM sync engine -- queue items, conflicts, payloads.

Defines all structured types exchanged between the stores, the processor,
the remote adapter, and the public facade:
- Enums: OperationType, QueueStatus, BusinessState, ConflictType,
  ConflictStatus, ResolutionStrategy, ChangeEventType, RemoteErrorKind,
  SyncLogOperation, SyncDirection
- Snapshots: DealSnapshot (local or remote view of one business record)
- Payloads: PushPayload, DeletePayload, PullPayload, ResolutionPayload,
  combined into the SyncPayload tagged union keyed by ``operation``
- Read models: SyncQueueItem, StateMapping, SyncConflict, BusinessRecord,
  SyncLogEntry
- Derived views: SyncStats, SyncDataView, DrainResult
- Adapter contract: AdapterResult, PollOutcome, PollReport
- Owner configuration: SyncConfig
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


# ── Enums ───────────────────────────────────────────────────────────────────


class OperationType(str, Enum):
    """Unit of work a queue item asks the remote CRM to perform."""

    UPDATE = "update"
    CREATE = "create"
    DELETE = "delete"
    PULL = "pull"
    FORCE_AMOUNT_UPDATE = "force-amount-update"
    RESOLVE_CONFLICT_USE_LOCAL = "resolve-conflict-use-local"
    RESOLVE_CONFLICT_USE_REMOTE = "resolve-conflict-use-remote"
    MASS_AMOUNT_SYNC = "mass-amount-sync"


# Operations that may run while a conflict is pending for the record.
CONFLICT_OVERRIDE_OPERATIONS: frozenset[OperationType] = frozenset({
    OperationType.FORCE_AMOUNT_UPDATE,
    OperationType.MASS_AMOUNT_SYNC,
    OperationType.RESOLVE_CONFLICT_USE_LOCAL,
    OperationType.RESOLVE_CONFLICT_USE_REMOTE,
})


class QueueStatus(str, Enum):
    """Lifecycle status of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BusinessState(str, Enum):
    """Local business-state enum of a deal."""

    OPPORTUNITY_CREATED = "opportunity_created"
    SENT = "sent"
    PARTIALLY_ACCEPTED = "partially_accepted"
    APPROVED = "approved"
    CLOSED = "closed"
    LOST = "lost"


class ConflictType(str, Enum):
    STATE = "state"
    AMOUNT = "amount"
    BOTH = "both"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ResolutionStrategy(str, Enum):
    """Which side wins when a conflict is resolved manually."""

    USE_LOCAL = "use-local"
    USE_REMOTE = "use-remote"


class ChangeEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class RemoteErrorKind(str, Enum):
    """Failure classification reported by the adapter layer."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INVALID_REFERENCE = "invalid_reference"


class SyncLogOperation(str, Enum):
    """What a sync log entry records."""

    APP_TO_REMOTE = "app_to_remote"
    REMOTE_TO_APP = "remote_to_app"
    CONFLICT_RESOLUTION = "conflict_resolution"


class SyncDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"
    RESOLUTION = "resolution"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Snapshots ───────────────────────────────────────────────────────────────


class DealSnapshot(BaseModel):
    """Point-in-time view of a business record on one side of the sync.

    ``state`` is a plain string so a remote stage that does not map back to
    a BusinessState can still be carried (as ``None``). ``stage_id`` is the
    raw remote stage and is only set on remote snapshots.
    """

    record_id: str
    owner_id: str | None = None
    name: str | None = None
    state: str | None = None
    stage_id: str | None = None
    amount: float | None = None
    close_date: datetime | None = None
    updated_at: datetime | None = None


# ── Payloads (tagged union keyed by operation) ──────────────────────────────

PAYLOAD_VERSION = 1


class PushPayload(BaseModel):
    """Local snapshot pushed to the remote deal.

    ``force_amount`` makes the remote amount follow the local one even on a
    plain update, and keeps an amount-only divergence from blocking it.
    """

    operation: Literal["update", "create", "force-amount-update", "mass-amount-sync"]
    version: int = PAYLOAD_VERSION
    snapshot: DealSnapshot
    force_amount: bool = False
    trigger_source: str = "manual"
    requested_at: datetime = Field(default_factory=utcnow)


class DeletePayload(BaseModel):
    """Remove the remote deal linked to a record."""

    operation: Literal["delete"]
    version: int = PAYLOAD_VERSION
    record_id: str
    owner_id: str | None = None
    trigger_source: str = "manual"
    requested_at: datetime = Field(default_factory=utcnow)


class PullPayload(BaseModel):
    """Fetch the remote deal and apply it to the local record."""

    operation: Literal["pull"]
    version: int = PAYLOAD_VERSION
    record_id: str
    owner_id: str | None = None
    trigger_source: str = "manual"
    requested_at: datetime = Field(default_factory=utcnow)


class ResolutionPayload(BaseModel):
    """Make one side of a resolved conflict authoritative on both systems."""

    operation: Literal["resolve-conflict-use-local", "resolve-conflict-use-remote"]
    version: int = PAYLOAD_VERSION
    conflict_id: str
    local: DealSnapshot
    remote: DealSnapshot
    resolved_by: str
    trigger_source: str = "conflict_resolution"
    requested_at: datetime = Field(default_factory=utcnow)


SyncPayload = Annotated[
    Union[PushPayload, DeletePayload, PullPayload, ResolutionPayload],
    Field(discriminator="operation"),
]

_payload_adapter: TypeAdapter[SyncPayload] = TypeAdapter(SyncPayload)


def parse_payload(raw: dict[str, Any]) -> SyncPayload:
    """Validate a stored payload document back into its typed variant."""
    return _payload_adapter.validate_python(raw)


def dump_payload(payload: SyncPayload) -> dict[str, Any]:
    """Serialize a payload for JSON storage."""
    return payload.model_dump(mode="json")


# ── Read Models ─────────────────────────────────────────────────────────────


class SyncQueueItem(BaseModel):
    """Schema for reading a queue item (includes all persisted fields)."""

    id: str
    owner_record_id: str
    operation_type: OperationType
    priority: int = Field(default=5, ge=1, le=9)
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    scheduled_at: datetime
    payload: SyncPayload
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None


class StateMapping(BaseModel):
    """Local business state -> remote pipeline/stage."""

    owner_id: str
    business_state: BusinessState
    remote_pipeline_id: str
    remote_stage_id: str


class SyncConflict(BaseModel):
    """Detected divergence between local and remote snapshots of one record."""

    id: str
    owner_record_id: str
    conflict_type: ConflictType
    local_state: str | None = None
    remote_state: str | None = None
    local_amount: float | None = None
    remote_amount: float | None = None
    status: ConflictStatus = ConflictStatus.PENDING
    resolution_strategy: ResolutionStrategy | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None


class SyncLogEntry(BaseModel):
    """Audit row written for every sync attempt, successful or not."""

    id: str
    owner_id: str | None = None
    owner_record_id: str
    remote_deal_id: str | None = None
    operation_type: SyncLogOperation
    direction: SyncDirection
    old_state: str | None = None
    new_state: str | None = None
    old_amount: float | None = None
    new_amount: float | None = None
    remote_stage_id: str | None = None
    force_sync: bool = False
    success: bool
    error_message: str | None = None
    created_at: datetime | None = None


class BusinessRecord(BaseModel):
    """Local deal being kept consistent with the remote CRM."""

    id: str
    owner_id: str
    name: str
    state: BusinessState = BusinessState.OPPORTUNITY_CREATED
    amount: float = 0.0
    close_date: datetime | None = None
    remote_deal_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def snapshot(self) -> DealSnapshot:
        """Local snapshot used in payloads and conflict detection."""
        return DealSnapshot(
            record_id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            state=self.state.value,
            amount=self.amount,
            close_date=self.close_date,
            updated_at=self.updated_at,
        )


# ── Derived Views ───────────────────────────────────────────────────────────


class SyncStats(BaseModel):
    """Read-only projection over an owner's queue."""

    total_pending: int = 0
    total_processing: int = 0
    total_failed: int = 0
    total_completed_today: int = 0
    avg_processing_time_minutes: float = 0.0


class SyncDataView(BaseModel):
    """What a subscriber reloads after a change: queue, stats, conflicts, logs."""

    queue: list[SyncQueueItem] = Field(default_factory=list)
    stats: SyncStats = Field(default_factory=SyncStats)
    conflicts: list[SyncConflict] = Field(default_factory=list)
    logs: list[SyncLogEntry] = Field(default_factory=list)


class DrainResult(BaseModel):
    """Summary of one bounded drain of an owner's queue."""

    owner_id: str
    skipped: bool = False
    skip_reason: str | None = None
    processed: int = 0
    completed: int = 0
    rescheduled: int = 0
    failed: int = 0
    conflicts: int = 0


# ── Adapter Contract ────────────────────────────────────────────────────────


class AdapterResult(BaseModel):
    """Outcome of one unit of remote work.

    ``conflict`` is set when the adapter refused to write because the two
    sides diverged; ``local`` and ``remote`` then carry both snapshots.
    """

    success: bool
    changed: bool = False
    new_state: str | None = None
    remote_deal_id: str | None = None
    error: str | None = None
    error_kind: RemoteErrorKind | None = None
    conflict: bool = False
    local: DealSnapshot | None = None
    remote: DealSnapshot | None = None


class PollOutcome(BaseModel):
    """Per-record result of a remote poll.

    ``changed`` means the local record was written. ``state_changed`` and
    ``amount_changed`` report remote divergence, which is never written;
    ``conflict_type`` is then set. ``local``/``remote`` carry both
    snapshots whenever the remote deal was fetched. ``blocked_by`` names
    the pending conflict that made the poll leave the record alone.
    """

    record_id: str
    success: bool
    changed: bool = False
    state_changed: bool = False
    amount_changed: bool = False
    close_date_changed: bool = False
    conflict_type: ConflictType | None = None
    blocked_by: str | None = None
    error: str | None = None
    local: DealSnapshot | None = None
    remote: DealSnapshot | None = None


class PollReport(BaseModel):
    success: bool
    results: list[PollOutcome] = Field(default_factory=list)
    error: str | None = None


# ── Owner Configuration ─────────────────────────────────────────────────────


class SyncConfig(BaseModel):
    """Per-owner sync configuration (read-only to the engine)."""

    api_key_set: bool = False
    auto_sync: bool = False
    bidirectional_sync: bool = False
    polling_interval_minutes: int = Field(default=30, ge=1)
    conflict_resolution_strategy: str = "manual"

    @property
    def automatic_enabled(self) -> bool:
        """Queue drains run on their own only with a key and auto sync."""
        return self.api_key_set and self.auto_sync

    @property
    def polling_enabled(self) -> bool:
        return self.automatic_enabled and self.bidirectional_sync
