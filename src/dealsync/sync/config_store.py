"""Per-owner sync configuration.

Configuration is owned by the settings UI; the engine only reads it. An
owner without a row gets the defaults (everything off, 30 minute polling).
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.config import get_settings
from src.dealsync.sync.models import SyncConfigModel
from src.dealsync.sync.schemas import SyncConfig


class ConfigProvider(Protocol):
    async def get(self, owner_id: str) -> SyncConfig: ...


class SyncConfigStore:
    """Reads and writes ``sync_config`` rows.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, owner_id: str) -> SyncConfig:
        async with self._session_factory() as session:
            model = await session.get(SyncConfigModel, owner_id)
            if model is None:
                return SyncConfig(
                    polling_interval_minutes=get_settings().SYNC_DEFAULT_POLLING_MINUTES
                )
            return SyncConfig(
                api_key_set=model.api_key_set,
                auto_sync=model.auto_sync,
                bidirectional_sync=model.bidirectional_sync,
                polling_interval_minutes=model.polling_interval_minutes,
                conflict_resolution_strategy=model.conflict_resolution_strategy,
            )

    async def save(self, owner_id: str, config: SyncConfig) -> SyncConfig:
        """Insert or replace the owner's configuration row."""
        async with self._session_factory() as session:
            model = await session.get(SyncConfigModel, owner_id)
            if model is None:
                model = SyncConfigModel(owner_id=owner_id)
                session.add(model)
            model.api_key_set = config.api_key_set
            model.auto_sync = config.auto_sync
            model.bidirectional_sync = config.bidirectional_sync
            model.polling_interval_minutes = config.polling_interval_minutes
            model.conflict_resolution_strategy = config.conflict_resolution_strategy
            await session.commit()
        return config

    async def list_automatic_owners(self) -> list[str]:
        """Owners with an API key and auto sync on, i.e. those that need timers."""
        async with self._session_factory() as session:
            stmt = (
                select(SyncConfigModel.owner_id)
                .where(
                    SyncConfigModel.api_key_set.is_(True),
                    SyncConfigModel.auto_sync.is_(True),
                )
                .order_by(SyncConfigModel.owner_id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
