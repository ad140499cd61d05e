"""Sync queue repository -- durable, append-only operation queue.

Every mutation publishes a ChangeEvent on the owner's channel after the
transaction commits, so subscribers only ever observe committed rows.
A failed publish is logged and never undoes the write.

Ready items are ``pending`` with ``scheduled_at <= now``, ordered by
``priority ASC, created_at ASC`` (1 is most urgent).
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.sync.exceptions import InvalidReference
from src.dealsync.sync.models import BusinessRecordModel, SyncQueueItemModel, as_uuid
from src.dealsync.sync.notifications import ChangeBroker, ChangeEvent
from src.dealsync.sync.schemas import (
    ChangeEventType,
    OperationType,
    QueueStatus,
    SyncPayload,
    SyncQueueItem,
    SyncStats,
    dump_payload,
    ensure_utc,
    parse_payload,
    utcnow,
)

logger = structlog.get_logger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 9


def _model_to_item(model: SyncQueueItemModel) -> SyncQueueItem:
    """Convert SyncQueueItemModel to SyncQueueItem schema."""
    return SyncQueueItem(
        id=str(model.id),
        owner_record_id=str(model.owner_record_id),
        operation_type=OperationType(model.operation_type),
        priority=model.priority,
        status=QueueStatus(model.status),
        attempts=model.attempts,
        scheduled_at=ensure_utc(model.scheduled_at),
        payload=parse_payload(model.payload),
        error_message=model.error_message,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
        processed_at=ensure_utc(model.processed_at),
    )


def _owned_by(owner_id: str):
    """Restrict a queue query to items whose record belongs to ``owner_id``."""
    return SyncQueueItemModel.owner_record_id.in_(
        select(BusinessRecordModel.id).where(BusinessRecordModel.owner_id == owner_id)
    )


class SyncQueueStore:
    """Async CRUD for the ``sync_queue`` table.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
        broker: Optional ChangeBroker notified after each committed mutation.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: ChangeBroker | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._broker = broker

    # ── Writes ──────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        owner_id: str,
        record_id: str,
        operation_type: OperationType,
        payload: SyncPayload,
        priority: int = 5,
        scheduled_at: datetime | None = None,
    ) -> SyncQueueItem:
        """Append a pending item for ``record_id``.

        Args:
            owner_id: Owner the record must belong to.
            record_id: Business record the operation targets.
            operation_type: Operation to perform remotely.
            payload: Typed payload; its ``operation`` must match.
            priority: 1 (most urgent) to 9.
            scheduled_at: Earliest run time; defaults to now.

        Returns:
            The persisted SyncQueueItem (its ``id`` identifies the item).

        Raises:
            InvalidReference: Record is missing or belongs to another owner.
            ValueError: Priority out of range or payload/operation mismatch.
        """
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
            )
        if payload.operation != operation_type.value:
            raise ValueError(
                f"payload operation '{payload.operation}' does not match "
                f"'{operation_type.value}'"
            )

        async with self._session_factory() as session:
            record = await session.get(BusinessRecordModel, as_uuid(record_id, "record"))
            if record is None or record.owner_id != owner_id:
                raise InvalidReference("record", record_id)

            now = utcnow()
            model = SyncQueueItemModel(
                owner_record_id=record.id,
                operation_type=operation_type.value,
                priority=priority,
                status=QueueStatus.PENDING.value,
                attempts=0,
                scheduled_at=scheduled_at or now,
                payload=dump_payload(payload),
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            item = _model_to_item(model)

        logger.info(
            "sync_queue.enqueued",
            owner_id=owner_id,
            item_id=item.id,
            record_id=record_id,
            operation=operation_type.value,
            priority=priority,
        )
        await self._notify(owner_id, ChangeEventType.INSERT, item)
        return item

    async def mark_processing(self, item_id: str) -> SyncQueueItem:
        return await self._update(item_id, status=QueueStatus.PROCESSING)

    async def mark_result(
        self,
        item_id: str,
        success: bool,
        error_message: str | None = None,
    ) -> SyncQueueItem:
        """Record the outcome of an attempt.

        Increments ``attempts`` and stamps ``processed_at`` whatever the
        outcome. The processor decides separately whether to reschedule.
        """
        return await self._update(
            item_id,
            status=QueueStatus.COMPLETED if success else QueueStatus.FAILED,
            error_message=None if success else error_message,
            increment_attempts=True,
            processed=True,
        )

    async def reschedule(self, item_id: str, delay: timedelta) -> SyncQueueItem:
        """Return an item to pending, runnable after ``delay``.

        The error message of the failed attempt is kept until the next result.
        """
        return await self._update(
            item_id,
            status=QueueStatus.PENDING,
            scheduled_at=utcnow() + delay,
        )

    async def retry_failed(self, owner_id: str) -> list[SyncQueueItem]:
        """Reset every failed item of the owner to a fresh pending item.

        Returns:
            The reset items.
        """
        async with self._session_factory() as session:
            stmt = select(SyncQueueItemModel).where(
                _owned_by(owner_id),
                SyncQueueItemModel.status == QueueStatus.FAILED.value,
            )
            models = (await session.execute(stmt)).scalars().all()
            now = utcnow()
            for model in models:
                model.status = QueueStatus.PENDING.value
                model.attempts = 0
                model.scheduled_at = now
                model.error_message = None
                model.updated_at = now
            await session.commit()
            items = [_model_to_item(m) for m in models]

        logger.info("sync_queue.failed_reset", owner_id=owner_id, count=len(items))
        for item in items:
            await self._notify(owner_id, ChangeEventType.UPDATE, item)
        return items

    async def recover_stale(
        self, owner_id: str, older_than: timedelta
    ) -> list[SyncQueueItem]:
        """Return items stuck in ``processing`` past ``older_than`` to pending.

        A crash between mark_processing and mark_result leaves such rows
        behind; attempts are not incremented for the lost attempt.
        """
        cutoff = utcnow() - older_than
        async with self._session_factory() as session:
            stmt = select(SyncQueueItemModel).where(
                _owned_by(owner_id),
                SyncQueueItemModel.status == QueueStatus.PROCESSING.value,
                SyncQueueItemModel.updated_at < cutoff,
            )
            models = (await session.execute(stmt)).scalars().all()
            now = utcnow()
            for model in models:
                model.status = QueueStatus.PENDING.value
                model.scheduled_at = now
                model.updated_at = now
            await session.commit()
            items = [_model_to_item(m) for m in models]

        if items:
            logger.warning(
                "sync_queue.stale_recovered",
                owner_id=owner_id,
                count=len(items),
            )
        for item in items:
            await self._notify(owner_id, ChangeEventType.UPDATE, item)
        return items

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, item_id: str) -> SyncQueueItem | None:
        try:
            pk = as_uuid(item_id, "queue_item")
        except InvalidReference:
            return None
        async with self._session_factory() as session:
            model = await session.get(SyncQueueItemModel, pk)
            return _model_to_item(model) if model else None

    async def list_ready(self, owner_id: str, limit: int) -> list[SyncQueueItem]:
        """Pending items due now, most urgent first."""
        async with self._session_factory() as session:
            stmt = (
                select(SyncQueueItemModel)
                .where(
                    _owned_by(owner_id),
                    SyncQueueItemModel.status == QueueStatus.PENDING.value,
                    SyncQueueItemModel.scheduled_at <= utcnow(),
                )
                .order_by(
                    SyncQueueItemModel.priority.asc(),
                    SyncQueueItemModel.created_at.asc(),
                )
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_item(m) for m in result.scalars().all()]

    async def list_recent(self, owner_id: str, limit: int = 50) -> list[SyncQueueItem]:
        async with self._session_factory() as session:
            stmt = (
                select(SyncQueueItemModel)
                .where(_owned_by(owner_id))
                .order_by(SyncQueueItemModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_item(m) for m in result.scalars().all()]

    async def stats(self, owner_id: str) -> SyncStats:
        """Counts per status plus today's completions and their mean latency."""
        async with self._session_factory() as session:
            count_stmt = (
                select(SyncQueueItemModel.status, func.count())
                .where(_owned_by(owner_id))
                .group_by(SyncQueueItemModel.status)
            )
            counts = dict((await session.execute(count_stmt)).all())

            now = utcnow()
            start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
            done_stmt = select(
                SyncQueueItemModel.created_at, SyncQueueItemModel.processed_at
            ).where(
                _owned_by(owner_id),
                SyncQueueItemModel.status == QueueStatus.COMPLETED.value,
                SyncQueueItemModel.processed_at >= start_of_day,
            )
            completed = (await session.execute(done_stmt)).all()

        durations = [
            (ensure_utc(processed) - ensure_utc(created)).total_seconds() / 60
            for created, processed in completed
            if created is not None and processed is not None
        ]
        return SyncStats(
            total_pending=counts.get(QueueStatus.PENDING.value, 0),
            total_processing=counts.get(QueueStatus.PROCESSING.value, 0),
            total_failed=counts.get(QueueStatus.FAILED.value, 0),
            total_completed_today=len(completed),
            avg_processing_time_minutes=(
                round(sum(durations) / len(durations), 2) if durations else 0.0
            ),
        )

    # ── Internals ───────────────────────────────────────────────────────────

    async def _update(
        self,
        item_id: str,
        *,
        status: QueueStatus,
        scheduled_at: datetime | None = None,
        error_message: str | None = None,
        increment_attempts: bool = False,
        processed: bool = False,
    ) -> SyncQueueItem:
        async with self._session_factory() as session:
            model = await session.get(SyncQueueItemModel, as_uuid(item_id, "queue_item"))
            if model is None:
                raise InvalidReference("queue_item", item_id)
            record = await session.get(BusinessRecordModel, model.owner_record_id)

            now = utcnow()
            model.status = status.value
            model.updated_at = now
            if scheduled_at is not None:
                model.scheduled_at = scheduled_at
            if status in (QueueStatus.COMPLETED, QueueStatus.FAILED):
                model.error_message = error_message
            if increment_attempts:
                model.attempts = model.attempts + 1
            if processed:
                model.processed_at = now
            await session.commit()
            await session.refresh(model)
            item = _model_to_item(model)
            owner_id = record.owner_id if record is not None else None

        if owner_id is not None:
            await self._notify(owner_id, ChangeEventType.UPDATE, item)
        return item

    async def _notify(
        self, owner_id: str, event_type: ChangeEventType, item: SyncQueueItem
    ) -> None:
        if self._broker is None:
            return
        try:
            await self._broker.publish(
                ChangeEvent(owner_id=owner_id, event_type=event_type, record=item)
            )
        except Exception as exc:
            logger.warning(
                "sync_queue.notify_failed",
                owner_id=owner_id,
                item_id=item.id,
                event_type=event_type.value,
                error=str(exc),
            )
