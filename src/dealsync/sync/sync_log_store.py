"""Sync log repository -- audit trail of every sync attempt.

Rows are only ever appended. Dashboards read the newest entries of one
owner through list_recent().
"""

from __future__ import annotations

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.sync.models import SyncLogModel
from src.dealsync.sync.schemas import (
    SyncDirection,
    SyncLogEntry,
    SyncLogOperation,
    ensure_utc,
)

logger = structlog.get_logger(__name__)

DEFAULT_LOG_LIMIT = 100


def _model_to_entry(model: SyncLogModel) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(model.id),
        owner_id=model.owner_id,
        owner_record_id=model.owner_record_id,
        remote_deal_id=model.remote_deal_id,
        operation_type=SyncLogOperation(model.operation_type),
        direction=SyncDirection(model.direction),
        old_state=model.old_state,
        new_state=model.new_state,
        old_amount=model.old_amount,
        new_amount=model.new_amount,
        remote_stage_id=model.remote_stage_id,
        force_sync=model.force_sync,
        success=model.success,
        error_message=model.error_message,
        created_at=ensure_utc(model.created_at),
    )


class SyncLogStore:
    """Async access to the ``sync_log`` table.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        *,
        owner_id: str | None,
        record_id: str,
        operation_type: SyncLogOperation,
        direction: SyncDirection,
        success: bool,
        remote_deal_id: str | None = None,
        old_state: str | None = None,
        new_state: str | None = None,
        old_amount: float | None = None,
        new_amount: float | None = None,
        remote_stage_id: str | None = None,
        force_sync: bool = False,
        error_message: str | None = None,
    ) -> SyncLogEntry:
        """Write one entry and return it as stored."""
        async with self._session_factory() as session:
            model = SyncLogModel(
                owner_id=owner_id,
                owner_record_id=record_id,
                remote_deal_id=remote_deal_id,
                operation_type=operation_type.value,
                direction=direction.value,
                old_state=old_state,
                new_state=new_state,
                old_amount=old_amount,
                new_amount=new_amount,
                remote_stage_id=remote_stage_id,
                force_sync=force_sync,
                success=success,
                error_message=error_message,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)

        logger.debug(
            "sync_log.appended",
            owner_id=owner_id,
            record_id=record_id,
            operation_type=operation_type.value,
            success=success,
        )
        return _model_to_entry(model)

    async def list_recent(
        self, owner_id: str, limit: int = DEFAULT_LOG_LIMIT
    ) -> list[SyncLogEntry]:
        """Newest entries of ``owner_id`` first."""
        async with self._session_factory() as session:
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.owner_id == owner_id)
                .order_by(SyncLogModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_entry(m) for m in result.scalars().all()]

    async def list_for_record(self, record_id: str) -> list[SyncLogEntry]:
        async with self._session_factory() as session:
            stmt = (
                select(SyncLogModel)
                .where(SyncLogModel.owner_record_id == record_id)
                .order_by(SyncLogModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_entry(m) for m in result.scalars().all()]
