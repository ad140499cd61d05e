"""Public entry point of the sync engine.

SyncFacade turns user and system intents into queue items and drains:

- trigger_sync(): enqueue one operation and drain shortly after
- retry_failed_items(): bulk reset of failed items, then drain
- resolve_conflict(): settle a conflict with a priority-1 item
- sync_to_remote() / sync_from_remote(): push (priority 3) / pull (priority 2)
- sync_all_amounts(): mass amount push (priority 4) for records with an amount
- sync_on_record_update(): automatic amount-forcing push (priority 6) after
  a local edit
- poll_remote(): pull every linked record and record state or amount
  conflicts
- load_sync_data(): what a dashboard shows (queue, stats, conflicts, log)

Delayed drains run as background tasks owned by the facade and are
cancelled by shutdown().
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.dealsync.config import get_settings
from src.dealsync.sync.adapter import RemoteSyncAdapter
from src.dealsync.sync.config_store import ConfigProvider
from src.dealsync.sync.conflicts import ConflictResolver
from src.dealsync.sync.exceptions import SyncNotConfigured
from src.dealsync.sync.processor import QueueProcessor
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.record_store import RecordStore
from src.dealsync.sync.schemas import (
    BusinessRecord,
    DeletePayload,
    DrainResult,
    OperationType,
    PollReport,
    PullPayload,
    PushPayload,
    ResolutionStrategy,
    SyncDataView,
    SyncPayload,
    SyncQueueItem,
)
from src.dealsync.sync.sync_log_store import SyncLogStore

logger = structlog.get_logger(__name__)

DEFAULT_PRIORITY = 5
PUSH_PRIORITY = 3
PULL_PRIORITY = 2
MASS_AMOUNT_PRIORITY = 4
RECORD_UPDATE_PRIORITY = 6
SYNC_LOG_LIMIT = 100

_PUSH_OPERATIONS = {
    OperationType.UPDATE,
    OperationType.CREATE,
    OperationType.FORCE_AMOUNT_UPDATE,
    OperationType.MASS_AMOUNT_SYNC,
}


def build_payload(
    record: BusinessRecord,
    operation: OperationType,
    trigger_source: str = "manual",
    force_amount: bool = False,
) -> SyncPayload:
    """Payload for a non-resolution operation on ``record``.

    ``force_amount`` only applies to push operations.

    Raises:
        ValueError: For resolution operations, which only resolve_conflict
            may enqueue.
    """
    if operation in _PUSH_OPERATIONS:
        return PushPayload(
            operation=operation.value,
            snapshot=record.snapshot(),
            force_amount=force_amount,
            trigger_source=trigger_source,
        )
    if operation == OperationType.DELETE:
        return DeletePayload(
            operation="delete",
            record_id=record.id,
            owner_id=record.owner_id,
            trigger_source=trigger_source,
        )
    if operation == OperationType.PULL:
        return PullPayload(
            operation="pull",
            record_id=record.id,
            owner_id=record.owner_id,
            trigger_source=trigger_source,
        )
    raise ValueError(f"{operation.value} items are created by conflict resolution only")


class SyncFacade:
    """High-level sync operations for one process.

    Args:
        queue: SyncQueueStore.
        records: RecordStore.
        configs: Per-owner configuration.
        processor: QueueProcessor for drains.
        resolver: ConflictResolver.
        adapter: RemoteSyncAdapter used for polls.
        sync_log: Optional SyncLogStore shown in load_sync_data().
    """

    def __init__(
        self,
        queue: SyncQueueStore,
        records: RecordStore,
        configs: ConfigProvider,
        processor: QueueProcessor,
        resolver: ConflictResolver,
        adapter: RemoteSyncAdapter,
        sync_log: SyncLogStore | None = None,
    ) -> None:
        settings = get_settings()
        self._queue = queue
        self._records = records
        self._configs = configs
        self._processor = processor
        self._resolver = resolver
        self._adapter = adapter
        self._sync_log = sync_log
        self._trigger_delay = settings.SYNC_TRIGGER_DELAY_SECONDS
        self._retry_delay = settings.SYNC_RETRY_TRIGGER_DELAY_SECONDS
        self._tasks: set[asyncio.Task] = set()

    # ── Queue operations ────────────────────────────────────────────────────

    async def enqueue(
        self,
        owner_id: str,
        record_id: str,
        operation: OperationType,
        priority: int = DEFAULT_PRIORITY,
        trigger_source: str = "manual",
        force_amount: bool = False,
    ) -> SyncQueueItem:
        """Enqueue ``operation`` for a record with a payload built from it.

        Raises:
            InvalidReference: Unknown record or another owner's record.
        """
        record = await self._records.get_for_owner(owner_id, record_id)
        payload = build_payload(record, operation, trigger_source, force_amount)
        return await self._queue.enqueue(owner_id, record.id, operation, payload, priority)

    async def trigger_sync(
        self,
        owner_id: str,
        record_id: str,
        operation: OperationType = OperationType.UPDATE,
        priority: int = DEFAULT_PRIORITY,
        allow_when_disabled: bool = False,
    ) -> SyncQueueItem:
        """Enqueue a manual sync and drain the queue shortly afterwards.

        Args:
            owner_id: Owner of the record.
            record_id: Record to sync.
            operation: Operation type, UPDATE by default.
            priority: 1-9, 5 by default.
            allow_when_disabled: Drain even if auto sync is off.

        Returns:
            The enqueued SyncQueueItem.

        Raises:
            SyncNotConfigured: No API key for the owner.
            InvalidReference: Unknown record or another owner's record.
        """
        config = await self._configs.get(owner_id)
        if not config.api_key_set:
            raise SyncNotConfigured(owner_id)

        item = await self.enqueue(owner_id, record_id, operation, priority)
        logger.info(
            "sync_facade.sync_triggered",
            owner_id=owner_id,
            record_id=record_id,
            operation=operation.value,
            priority=priority,
            item_id=item.id,
        )
        self._schedule_drain(owner_id, self._trigger_delay, force=allow_when_disabled)
        return item

    async def process_now(self, owner_id: str) -> DrainResult:
        """Run one drain immediately, even if auto sync is off.

        Raises:
            SyncNotConfigured: No API key for the owner.
        """
        config = await self._configs.get(owner_id)
        if not config.api_key_set:
            raise SyncNotConfigured(owner_id)
        return await self._processor.process(owner_id, force=True)

    async def retry_failed_items(self, owner_id: str) -> int:
        """Reset every failed item of the owner and drain after a second.

        Returns:
            Number of items reset to pending.
        """
        items = await self._queue.retry_failed(owner_id)
        if items:
            self._schedule_drain(owner_id, self._retry_delay, force=False)
        return len(items)

    async def resolve_conflict(
        self,
        owner_id: str,
        conflict_id: str,
        strategy: ResolutionStrategy,
        resolved_by: str,
    ) -> SyncQueueItem:
        """Settle a pending conflict and drain its resolution item.

        Raises:
            ConflictNotFound: Unknown or already resolved conflict.
        """
        item = await self._resolver.resolve(owner_id, conflict_id, strategy, resolved_by)
        self._schedule_drain(owner_id, self._trigger_delay, force=True)
        return item

    # ── Directional sync ────────────────────────────────────────────────────

    async def sync_to_remote(
        self, owner_id: str, record_id: str, force_amount: bool = False
    ) -> SyncQueueItem:
        operation = (
            OperationType.FORCE_AMOUNT_UPDATE if force_amount else OperationType.UPDATE
        )
        return await self.trigger_sync(
            owner_id, record_id, operation, PUSH_PRIORITY, allow_when_disabled=True
        )

    async def sync_from_remote(self, owner_id: str, record_id: str) -> SyncQueueItem:
        return await self.trigger_sync(
            owner_id, record_id, OperationType.PULL, PULL_PRIORITY, allow_when_disabled=True
        )

    async def sync_all_amounts(self, owner_id: str) -> dict[str, Any]:
        """Enqueue a mass amount push for every record with a positive amount.

        Returns:
            ``{"enqueued": [item ids], "skipped": [record ids]}``

        Raises:
            SyncNotConfigured: No API key for the owner.
        """
        config = await self._configs.get(owner_id)
        if not config.api_key_set:
            raise SyncNotConfigured(owner_id)

        enqueued: list[str] = []
        skipped: list[str] = []
        for record in await self._records.list_for_owner(owner_id):
            if record.amount <= 0:
                skipped.append(record.id)
                continue
            payload = build_payload(
                record, OperationType.MASS_AMOUNT_SYNC, trigger_source="mass_amount_sync"
            )
            item = await self._queue.enqueue(
                owner_id,
                record.id,
                OperationType.MASS_AMOUNT_SYNC,
                payload,
                MASS_AMOUNT_PRIORITY,
            )
            enqueued.append(item.id)

        logger.info(
            "sync_facade.mass_amount_sync",
            owner_id=owner_id,
            enqueued=len(enqueued),
            skipped=len(skipped),
        )
        if enqueued:
            self._schedule_drain(owner_id, self._trigger_delay, force=True)
        return {"enqueued": enqueued, "skipped": skipped}

    async def sync_on_record_update(
        self, owner_id: str, record_id: str
    ) -> SyncQueueItem | None:
        """Queue a push after a local edit, only when automatic sync is on.

        The item is a plain ``update`` carrying ``force_amount``: the remote
        amount follows the edit, while a pending conflict still blocks it.

        Returns:
            The enqueued item, or None when automatic sync is disabled.
        """
        config = await self._configs.get(owner_id)
        if not config.automatic_enabled:
            logger.debug("sync_facade.record_update_ignored", owner_id=owner_id)
            return None
        return await self.enqueue(
            owner_id,
            record_id,
            OperationType.UPDATE,
            RECORD_UPDATE_PRIORITY,
            trigger_source="record_update",
            force_amount=True,
        )

    async def poll_remote(self, owner_id: str) -> PollReport:
        """Pull every linked record; state or amount drift becomes a pending conflict.

        Records the poll skipped for an already pending conflict are left
        as they are.
        """
        report = await self._adapter.poll(owner_id)
        for outcome in report.results:
            if outcome.blocked_by is not None:
                continue
            if outcome.local is not None and outcome.remote is not None:
                await self._resolver.detect(outcome.record_id, outcome.local, outcome.remote)
        return report

    async def load_sync_data(self, owner_id: str) -> SyncDataView:
        logs = (
            await self._sync_log.list_recent(owner_id, SYNC_LOG_LIMIT)
            if self._sync_log is not None
            else []
        )
        return SyncDataView(
            queue=await self._queue.list_recent(owner_id, 50),
            stats=await self._queue.stats(owner_id),
            conflicts=await self._resolver.list_pending(owner_id),
            logs=logs,
        )

    # ── Background drains ───────────────────────────────────────────────────

    def _schedule_drain(self, owner_id: str, delay: float, force: bool) -> None:
        task = asyncio.create_task(self._delayed_drain(owner_id, delay, force))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _delayed_drain(self, owner_id: str, delay: float, force: bool) -> None:
        await asyncio.sleep(delay)
        try:
            await self._processor.process(owner_id, force=force)
        except Exception:
            logger.exception("sync_facade.delayed_drain_failed", owner_id=owner_id)

    async def wait_idle(self) -> None:
        """Wait for every scheduled drain to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
