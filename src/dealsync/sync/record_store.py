"""Business record repository -- the local side of the sync.

The engine reads records to build snapshots for outbound payloads and
writes them only when a pull (or a use-remote resolution) makes the
remote deal authoritative.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.sync.exceptions import InvalidReference
from src.dealsync.sync.models import BusinessRecordModel, as_uuid
from src.dealsync.sync.schemas import BusinessRecord, BusinessState, ensure_utc

logger = structlog.get_logger(__name__)


def _model_to_record(model: BusinessRecordModel) -> BusinessRecord:
    """Convert BusinessRecordModel to BusinessRecord schema."""
    return BusinessRecord(
        id=str(model.id),
        owner_id=model.owner_id,
        name=model.name,
        state=BusinessState(model.state),
        amount=model.amount or 0.0,
        close_date=ensure_utc(model.close_date),
        remote_deal_id=model.remote_deal_id,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


class RecordStore:
    """Async access to business records.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        owner_id: str,
        name: str,
        state: BusinessState = BusinessState.OPPORTUNITY_CREATED,
        amount: float = 0.0,
        close_date: datetime | None = None,
        remote_deal_id: str | None = None,
    ) -> BusinessRecord:
        async with self._session_factory() as session:
            model = BusinessRecordModel(
                owner_id=owner_id,
                name=name,
                state=state.value,
                amount=amount,
                close_date=close_date,
                remote_deal_id=remote_deal_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_record(model)

    async def get(self, record_id: str) -> BusinessRecord | None:
        try:
            pk = as_uuid(record_id, "record")
        except InvalidReference:
            return None
        async with self._session_factory() as session:
            model = await session.get(BusinessRecordModel, pk)
            return _model_to_record(model) if model else None

    async def get_for_owner(self, owner_id: str, record_id: str) -> BusinessRecord:
        """Load a record that must belong to ``owner_id``.

        Raises:
            InvalidReference: Record is missing or owned by someone else.
        """
        record = await self.get(record_id)
        if record is None or record.owner_id != owner_id:
            raise InvalidReference("record", record_id)
        return record

    async def list_for_owner(self, owner_id: str) -> list[BusinessRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(BusinessRecordModel)
                .where(BusinessRecordModel.owner_id == owner_id)
                .order_by(BusinessRecordModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def apply_remote(
        self,
        record_id: str,
        *,
        state: BusinessState | None = None,
        amount: float | None = None,
        close_date: datetime | None = None,
    ) -> BusinessRecord:
        """Overwrite local fields with values taken from the remote deal.

        Fields passed as ``None`` are left untouched.

        Raises:
            InvalidReference: If the record does not exist.
        """
        async with self._session_factory() as session:
            model = await session.get(BusinessRecordModel, as_uuid(record_id, "record"))
            if model is None:
                raise InvalidReference("record", record_id)
            if state is not None:
                model.state = state.value
            if amount is not None:
                model.amount = amount
            if close_date is not None:
                model.close_date = close_date
            await session.commit()
            await session.refresh(model)

            logger.info(
                "record_store.remote_applied",
                record_id=record_id,
                state=model.state,
                amount=model.amount,
            )
            return _model_to_record(model)

    async def list_linked(self, owner_id: str) -> list[BusinessRecord]:
        """Records of ``owner_id`` that already have a remote deal."""
        async with self._session_factory() as session:
            stmt = (
                select(BusinessRecordModel)
                .where(
                    BusinessRecordModel.owner_id == owner_id,
                    BusinessRecordModel.remote_deal_id.is_not(None),
                )
                .order_by(BusinessRecordModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_record(m) for m in result.scalars().all()]

    async def link_remote(self, record_id: str, remote_deal_id: str | None) -> None:
        """Store (or clear, with None) the remote deal id of a record."""
        async with self._session_factory() as session:
            model = await session.get(BusinessRecordModel, as_uuid(record_id, "record"))
            if model is None:
                raise InvalidReference("record", record_id)
            model.remote_deal_id = remote_deal_id
            await session.commit()
