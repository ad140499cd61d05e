"""Queue processor -- bounded, non-overlapping drains of an owner's queue.

One drain takes up to SYNC_BATCH_SIZE ready items and runs them one after
another. Per item:

    pending -> processing -> completed
                          -> pending   (failed, attempts < 2 before this
                                        attempt; retry after 5 * 2**attempts
                                        minutes)
                          -> failed    (third failure, invalid reference,
                                        pending conflict, or new conflict)

A second drain for the same owner while one is running returns a skipped
result immediately. Drains for different owners run concurrently.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import timedelta

import structlog

from src.dealsync.config import get_settings
from src.dealsync.core.monitoring import (
    sync_drain_duration_seconds,
    sync_drains_skipped_total,
    sync_items_processed_total,
)
from src.dealsync.sync.adapter import RemoteSyncAdapter
from src.dealsync.sync.config_store import ConfigProvider
from src.dealsync.sync.conflicts import ConflictResolver
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.schemas import (
    CONFLICT_OVERRIDE_OPERATIONS,
    AdapterResult,
    DrainResult,
    RemoteErrorKind,
    SyncQueueItem,
)

logger = structlog.get_logger(__name__)

BatchCallback = Callable[[str], Awaitable[None]]

CONFLICT_DETECTED_MESSAGE = "Conflict detected - manual resolution required"


def retry_delay(attempts: int, base_minutes: int | None = None) -> timedelta:
    """Backoff before the next attempt: ``base * 2**attempts`` minutes.

    Args:
        attempts: Attempts made before the failing one (0, 1, ...).
        base_minutes: Defaults to SYNC_RETRY_BASE_MINUTES (5).
    """
    base = get_settings().SYNC_RETRY_BASE_MINUTES if base_minutes is None else base_minutes
    return timedelta(minutes=base * 2**attempts)


class QueueProcessor:
    """Drains owner queues through a RemoteSyncAdapter.

    Args:
        queue: SyncQueueStore holding the items.
        adapter: RemoteSyncAdapter performing the remote work.
        configs: Per-owner configuration, re-read on every drain.
        resolver: ConflictResolver for pending-conflict checks and detection.
        on_batch_complete: Awaited with the owner id after a non-empty drain
            (subscribers reload their sync data).
        batch_size: Defaults to SYNC_BATCH_SIZE.
    """

    def __init__(
        self,
        queue: SyncQueueStore,
        adapter: RemoteSyncAdapter,
        configs: ConfigProvider,
        resolver: ConflictResolver,
        on_batch_complete: BatchCallback | None = None,
        batch_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self._queue = queue
        self._adapter = adapter
        self._configs = configs
        self._resolver = resolver
        self._on_batch_complete = on_batch_complete
        self._batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self._max_attempts = settings.SYNC_MAX_ATTEMPTS
        self._stale_after = timedelta(minutes=settings.SYNC_STALE_PROCESSING_MINUTES)
        self._active: set[str] = set()

    def is_processing(self, owner_id: str) -> bool:
        return owner_id in self._active

    async def process(self, owner_id: str, force: bool = False) -> DrainResult:
        """Run one bounded drain for ``owner_id``.

        Args:
            owner_id: Owner whose queue is drained.
            force: Drain even when automatic sync is disabled (manual
                triggers). An API key is still required.

        Returns:
            DrainResult with per-outcome counts, or a skipped result.
        """
        # Check-and-set with no await in between: the guard is race-free on one loop.
        if owner_id in self._active:
            logger.debug("sync_processor.already_running", owner_id=owner_id)
            sync_drains_skipped_total.labels(reason="already_running").inc()
            return DrainResult(owner_id=owner_id, skipped=True, skip_reason="already_running")

        self._active.add(owner_id)
        start = time.perf_counter()
        try:
            config = await self._configs.get(owner_id)
            if not config.api_key_set or not (force or config.auto_sync):
                sync_drains_skipped_total.labels(reason="disabled").inc()
                return DrainResult(owner_id=owner_id, skipped=True, skip_reason="disabled")

            await self._queue.recover_stale(owner_id, self._stale_after)
            items = await self._queue.list_ready(owner_id, self._batch_size)
            result = DrainResult(owner_id=owner_id)
            if not items:
                return result

            logger.info("sync_processor.drain_started", owner_id=owner_id, items=len(items))
            for item in items:
                await self._process_item(owner_id, item, result)

            logger.info(
                "sync_processor.drain_complete",
                owner_id=owner_id,
                processed=result.processed,
                completed=result.completed,
                rescheduled=result.rescheduled,
                failed=result.failed,
                conflicts=result.conflicts,
            )
            await self._notify_batch_complete(owner_id)
            return result
        finally:
            sync_drain_duration_seconds.observe(time.perf_counter() - start)
            self._active.discard(owner_id)

    # ── Per-item handling ───────────────────────────────────────────────────

    async def _process_item(
        self, owner_id: str, item: SyncQueueItem, result: DrainResult
    ) -> None:
        log = logger.bind(
            owner_id=owner_id,
            item_id=item.id,
            record_id=item.owner_record_id,
            operation=item.operation_type.value,
            attempts=item.attempts,
        )
        result.processed += 1

        try:
            await self._queue.mark_processing(item.id)

            if item.operation_type not in CONFLICT_OVERRIDE_OPERATIONS:
                pending = await self._resolver.pending_for(item.owner_record_id)
                if pending is not None:
                    await self._fail_terminal(
                        item, result, f"Blocked by pending conflict {pending.id}"
                    )
                    log.info("sync_processor.item_blocked", conflict_id=pending.id)
                    return

            try:
                outcome = await self._adapter.execute(item.operation_type, item.payload)
            except Exception as exc:
                log.exception("sync_processor.adapter_error")
                outcome = AdapterResult(
                    success=False,
                    error=f"{exc.__class__.__name__}: {exc}",
                    error_kind=RemoteErrorKind.TRANSIENT,
                )

            if outcome.success:
                await self._queue.mark_result(item.id, True)
                result.completed += 1
                sync_items_processed_total.labels(
                    operation=item.operation_type.value, outcome="completed"
                ).inc()
                log.info("sync_processor.item_completed", changed=outcome.changed)
                return

            if outcome.conflict and outcome.local is not None and outcome.remote is not None:
                conflict = await self._resolver.detect(
                    item.owner_record_id, outcome.local, outcome.remote
                )
                if conflict is not None:
                    result.conflicts += 1
                    await self._fail_terminal(item, result, CONFLICT_DETECTED_MESSAGE)
                    log.warning("sync_processor.item_conflict", conflict_id=conflict.id)
                    return

            if outcome.error_kind == RemoteErrorKind.INVALID_REFERENCE:
                await self._fail_terminal(item, result, outcome.error)
                log.error("sync_processor.invalid_reference", error=outcome.error)
                return

            await self._fail_with_retry(item, result, outcome.error or "Unknown error")
            log.warning(
                "sync_processor.item_failed",
                error=outcome.error,
                error_kind=outcome.error_kind.value if outcome.error_kind else None,
            )
        except Exception:
            # Store failures must not abort the rest of the batch.
            log.exception("sync_processor.item_crashed")

    async def _fail_with_retry(
        self, item: SyncQueueItem, result: DrainResult, error: str
    ) -> None:
        await self._queue.mark_result(item.id, False, error)
        # attempts is the count before this failure; the last allowed attempt fails for good.
        if item.attempts < self._max_attempts - 1:
            await self._queue.reschedule(item.id, retry_delay(item.attempts))
            result.rescheduled += 1
            outcome = "rescheduled"
        else:
            result.failed += 1
            outcome = "failed"
        sync_items_processed_total.labels(
            operation=item.operation_type.value, outcome=outcome
        ).inc()

    async def _fail_terminal(
        self, item: SyncQueueItem, result: DrainResult, error: str | None
    ) -> None:
        await self._queue.mark_result(item.id, False, error)
        result.failed += 1
        sync_items_processed_total.labels(
            operation=item.operation_type.value, outcome="failed"
        ).inc()

    async def _notify_batch_complete(self, owner_id: str) -> None:
        if self._on_batch_complete is None:
            return
        try:
            await self._on_batch_complete(owner_id)
        except Exception:
            logger.exception("sync_processor.batch_callback_failed", owner_id=owner_id)
