"""Conflict detection and manual resolution.

A conflict is recorded when the local and remote snapshots of a record
disagree on state, on amount (beyond a tolerance), or on both. A remote
state that has no reverse mapping (``None`` in the remote snapshot) never
counts as a state conflict.

Resolving a conflict enqueues a ``resolve-conflict-use-local`` or
``resolve-conflict-use-remote`` item at priority 1, so it runs before any
other queued work for the owner, then settles the pending row and writes a
resolution entry to the sync log.
"""

from __future__ import annotations

import structlog

from src.dealsync.config import get_settings
from src.dealsync.core.monitoring import sync_conflicts_detected_total
from src.dealsync.sync.conflict_store import ConflictStore
from src.dealsync.sync.exceptions import ConflictNotFound
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.record_store import RecordStore
from src.dealsync.sync.schemas import (
    ConflictStatus,
    ConflictType,
    DealSnapshot,
    OperationType,
    ResolutionPayload,
    ResolutionStrategy,
    SyncConflict,
    SyncDirection,
    SyncLogOperation,
    SyncQueueItem,
)
from src.dealsync.sync.sync_log_store import SyncLogStore

logger = structlog.get_logger(__name__)

RESOLUTION_PRIORITY = 1

_RESOLUTION_OPERATIONS = {
    ResolutionStrategy.USE_LOCAL: OperationType.RESOLVE_CONFLICT_USE_LOCAL,
    ResolutionStrategy.USE_REMOTE: OperationType.RESOLVE_CONFLICT_USE_REMOTE,
}


def classify_divergence(
    local: DealSnapshot,
    remote: DealSnapshot,
    amount_tolerance: float,
) -> ConflictType | None:
    """Classify how two snapshots of the same record diverge.

    Args:
        local: Snapshot from the local database.
        remote: Snapshot from the remote CRM (``state`` None when unmapped).
        amount_tolerance: Amount differences up to this value are ignored.

    Returns:
        ConflictType, or None when the snapshots agree.
    """
    state_conflict = remote.state is not None and local.state != remote.state
    amount_conflict = (
        abs((local.amount or 0.0) - (remote.amount or 0.0)) > amount_tolerance
    )

    if state_conflict and amount_conflict:
        return ConflictType.BOTH
    if state_conflict:
        return ConflictType.STATE
    if amount_conflict:
        return ConflictType.AMOUNT
    return None


class ConflictResolver:
    """Detects, lists, and resolves local/remote conflicts.

    Args:
        conflicts: ConflictStore persisting conflict rows.
        queue: SyncQueueStore receiving resolution items.
        records: RecordStore for the current local snapshot at resolve time.
        amount_tolerance: Defaults to SYNC_AMOUNT_TOLERANCE.
        sync_log: Optional SyncLogStore receiving one entry per resolution.
    """

    def __init__(
        self,
        conflicts: ConflictStore,
        queue: SyncQueueStore,
        records: RecordStore,
        amount_tolerance: float | None = None,
        sync_log: SyncLogStore | None = None,
    ) -> None:
        self._conflicts = conflicts
        self._queue = queue
        self._records = records
        self._sync_log = sync_log
        self._tolerance = (
            get_settings().SYNC_AMOUNT_TOLERANCE
            if amount_tolerance is None
            else amount_tolerance
        )

    def classify(self, local: DealSnapshot, remote: DealSnapshot) -> ConflictType | None:
        return classify_divergence(local, remote, self._tolerance)

    async def detect(
        self,
        record_id: str,
        local: DealSnapshot,
        remote: DealSnapshot,
    ) -> SyncConflict | None:
        """Record a pending conflict if the snapshots diverge.

        A record keeps at most one pending conflict; detecting again
        refreshes it with the latest values.

        Returns:
            The pending SyncConflict, or None when nothing diverges.
        """
        conflict_type = self.classify(local, remote)
        if conflict_type is None:
            return None

        conflict = await self._conflicts.upsert_pending(
            record_id,
            conflict_type,
            local_state=local.state,
            remote_state=remote.state,
            local_amount=local.amount,
            remote_amount=remote.amount,
        )
        sync_conflicts_detected_total.labels(conflict_type=conflict_type.value).inc()
        logger.warning(
            "sync_conflicts.detected",
            record_id=record_id,
            conflict_id=conflict.id,
            conflict_type=conflict_type.value,
            local_state=local.state,
            remote_state=remote.state,
            local_amount=local.amount,
            remote_amount=remote.amount,
        )
        return conflict

    async def pending_for(self, record_id: str) -> SyncConflict | None:
        return await self._conflicts.pending_for_record(record_id)

    async def list_pending(self, owner_id: str) -> list[SyncConflict]:
        return await self._conflicts.list_pending(owner_id)

    async def resolve(
        self,
        owner_id: str,
        conflict_id: str,
        strategy: ResolutionStrategy,
        resolved_by: str,
    ) -> SyncQueueItem:
        """Enqueue the winning side at priority 1 and settle the conflict.

        The resolution item is enqueued before the conflict is marked
        resolved, so a failed enqueue leaves the conflict pending. If a
        concurrent resolution wins in between, the extra item is failed.

        Args:
            owner_id: Owner of the conflicting record.
            conflict_id: Pending conflict to resolve.
            strategy: USE_LOCAL pushes the local values, USE_REMOTE applies
                the remote values locally.
            resolved_by: Identity recorded on the conflict.

        Returns:
            The enqueued resolution SyncQueueItem.

        Raises:
            ConflictNotFound: Unknown conflict, another owner's conflict,
                or a conflict that is already resolved.
        """
        conflict = await self._conflicts.get_for_owner(owner_id, conflict_id)
        if conflict is None or conflict.status != ConflictStatus.PENDING:
            raise ConflictNotFound(conflict_id)

        record = await self._records.get_for_owner(owner_id, conflict.owner_record_id)
        local = record.snapshot()
        remote = DealSnapshot(
            record_id=record.id,
            owner_id=owner_id,
            name=record.name,
            state=conflict.remote_state,
            amount=conflict.remote_amount,
        )

        operation = _RESOLUTION_OPERATIONS[strategy]
        item = await self._queue.enqueue(
            owner_id,
            record.id,
            operation,
            ResolutionPayload(
                operation=operation.value,
                conflict_id=conflict_id,
                local=local,
                remote=remote,
                resolved_by=resolved_by,
            ),
            priority=RESOLUTION_PRIORITY,
        )

        try:
            await self._conflicts.mark_resolved(conflict_id, strategy, resolved_by)
        except ConflictNotFound:
            await self._queue.mark_result(
                item.id, False, f"Conflict {conflict_id} was already resolved"
            )
            raise

        winner = local if strategy == ResolutionStrategy.USE_LOCAL else remote
        await self._log_resolution(owner_id, record.remote_deal_id, local, winner)
        logger.info(
            "sync_conflicts.resolved",
            owner_id=owner_id,
            conflict_id=conflict_id,
            strategy=strategy.value,
            resolved_by=resolved_by,
            item_id=item.id,
        )
        return item

    async def _log_resolution(
        self,
        owner_id: str,
        remote_deal_id: str | None,
        local: DealSnapshot,
        winner: DealSnapshot,
    ) -> None:
        if self._sync_log is None:
            return
        try:
            await self._sync_log.append(
                owner_id=owner_id,
                record_id=local.record_id,
                operation_type=SyncLogOperation.CONFLICT_RESOLUTION,
                direction=SyncDirection.RESOLUTION,
                success=True,
                remote_deal_id=remote_deal_id,
                old_state=local.state,
                new_state=winner.state,
                old_amount=local.amount,
                new_amount=winner.amount,
            )
        except Exception:
            logger.exception("sync_conflicts.sync_log_failed", record_id=local.record_id)
