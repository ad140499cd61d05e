"""Conflict repository.

At most one ``pending`` conflict exists per record. upsert_pending()
refreshes the existing pending row instead of inserting a second one, and
the partial unique index on ``sync_conflicts`` catches concurrent inserts.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.sync.exceptions import ConflictNotFound, InvalidReference
from src.dealsync.sync.models import BusinessRecordModel, SyncConflictModel, as_uuid
from src.dealsync.sync.schemas import (
    ConflictStatus,
    ConflictType,
    ResolutionStrategy,
    SyncConflict,
    ensure_utc,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _model_to_conflict(model: SyncConflictModel) -> SyncConflict:
    return SyncConflict(
        id=str(model.id),
        owner_record_id=str(model.owner_record_id),
        conflict_type=ConflictType(model.conflict_type),
        local_state=model.local_state,
        remote_state=model.remote_state,
        local_amount=model.local_amount,
        remote_amount=model.remote_amount,
        status=ConflictStatus(model.status),
        resolution_strategy=(
            ResolutionStrategy(model.resolution_strategy)
            if model.resolution_strategy
            else None
        ),
        resolved_at=ensure_utc(model.resolved_at),
        resolved_by=model.resolved_by,
        created_at=ensure_utc(model.created_at),
    )


class ConflictStore:
    """Async access to ``sync_conflicts``.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert_pending(
        self,
        record_id: str,
        conflict_type: ConflictType,
        *,
        local_state: str | None,
        remote_state: str | None,
        local_amount: float | None,
        remote_amount: float | None,
    ) -> SyncConflict:
        """Create the record's pending conflict, or refresh the existing one.

        Returns:
            The single pending SyncConflict for ``record_id``.
        """
        values = {
            "conflict_type": conflict_type.value,
            "local_state": local_state,
            "remote_state": remote_state,
            "local_amount": local_amount,
            "remote_amount": remote_amount,
        }
        record_pk = as_uuid(record_id, "record")

        try:
            return await self._write_pending(record_pk, values)
        except IntegrityError:
            # Another writer inserted the pending row first; refresh it instead.
            logger.debug("conflict_store.pending_insert_raced", record_id=record_id)
            return await self._write_pending(record_pk, values)

    async def _write_pending(self, record_pk: uuid.UUID, values: dict) -> SyncConflict:
        async with self._session_factory() as session:
            stmt = select(SyncConflictModel).where(
                SyncConflictModel.owner_record_id == record_pk,
                SyncConflictModel.status == ConflictStatus.PENDING.value,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            created = model is None
            if created:
                if await session.get(BusinessRecordModel, record_pk) is None:
                    raise InvalidReference("record", str(record_pk))
                model = SyncConflictModel(
                    owner_record_id=record_pk,
                    status=ConflictStatus.PENDING.value,
                )
                session.add(model)
            for key, value in values.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)

        logger.info(
            "conflict_store.pending_written",
            conflict_id=str(model.id),
            record_id=str(record_pk),
            conflict_type=model.conflict_type,
            created=created,
        )
        return _model_to_conflict(model)

    async def get(self, conflict_id: str) -> SyncConflict | None:
        try:
            pk = as_uuid(conflict_id, "conflict")
        except InvalidReference:
            return None
        async with self._session_factory() as session:
            model = await session.get(SyncConflictModel, pk)
            return _model_to_conflict(model) if model else None

    async def get_for_owner(self, owner_id: str, conflict_id: str) -> SyncConflict | None:
        """Conflict by id, only if its record belongs to ``owner_id``."""
        try:
            pk = as_uuid(conflict_id, "conflict")
        except InvalidReference:
            return None
        async with self._session_factory() as session:
            stmt = (
                select(SyncConflictModel)
                .join(
                    BusinessRecordModel,
                    BusinessRecordModel.id == SyncConflictModel.owner_record_id,
                )
                .where(
                    SyncConflictModel.id == pk,
                    BusinessRecordModel.owner_id == owner_id,
                )
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_conflict(model) if model else None

    async def pending_for_record(self, record_id: str) -> SyncConflict | None:
        try:
            pk = as_uuid(record_id, "record")
        except InvalidReference:
            return None
        async with self._session_factory() as session:
            stmt = select(SyncConflictModel).where(
                SyncConflictModel.owner_record_id == pk,
                SyncConflictModel.status == ConflictStatus.PENDING.value,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_conflict(model) if model else None

    async def list_pending(self, owner_id: str) -> list[SyncConflict]:
        async with self._session_factory() as session:
            stmt = (
                select(SyncConflictModel)
                .join(
                    BusinessRecordModel,
                    BusinessRecordModel.id == SyncConflictModel.owner_record_id,
                )
                .where(
                    BusinessRecordModel.owner_id == owner_id,
                    SyncConflictModel.status == ConflictStatus.PENDING.value,
                )
                .order_by(SyncConflictModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_conflict(m) for m in result.scalars().all()]

    async def mark_resolved(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        resolved_by: str,
    ) -> SyncConflict:
        """Settle a pending conflict.

        The status check and the write happen in one UPDATE, so two
        concurrent resolutions cannot both succeed.

        Raises:
            ConflictNotFound: Unknown id, or already resolved.
        """
        try:
            pk = as_uuid(conflict_id, "conflict")
        except InvalidReference as exc:
            raise ConflictNotFound(conflict_id) from exc

        async with self._session_factory() as session:
            stmt = (
                update(SyncConflictModel)
                .where(
                    SyncConflictModel.id == pk,
                    SyncConflictModel.status == ConflictStatus.PENDING.value,
                )
                .values(
                    status=ConflictStatus.RESOLVED.value,
                    resolution_strategy=strategy.value,
                    resolved_at=utcnow(),
                    resolved_by=resolved_by,
                )
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictNotFound(conflict_id)
            await session.commit()
            model = await session.get(SyncConflictModel, pk, populate_existing=True)
            return _model_to_conflict(model)
