"""Shared fixtures for sync engine tests.

Provides:
- A fresh SQLite database per test (aiosqlite, file in tmp_path)
- Stores wired to that database and an in-process change broker
- FakeAdapter: scripted RemoteSyncAdapter recording every call
- Helpers to configure owners and make rescheduled items due now
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.dealsync.core.database import init_db, make_session_factory
from src.dealsync.sync.adapter import RemoteSyncAdapter
from src.dealsync.sync.config_store import SyncConfigStore
from src.dealsync.sync.conflict_store import ConflictStore
from src.dealsync.sync.conflicts import ConflictResolver
from src.dealsync.sync.mapping_store import StateMappingStore
from src.dealsync.sync.models import SyncQueueItemModel, as_uuid
from src.dealsync.sync.notifications import LocalChangeBroker
from src.dealsync.sync.processor import QueueProcessor
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.record_store import RecordStore
from src.dealsync.sync.schemas import (
    AdapterResult,
    BusinessState,
    OperationType,
    PollReport,
    SyncConfig,
    SyncPayload,
    utcnow,
)
from src.dealsync.sync.service import SyncService, build_sync_service
from src.dealsync.sync.sync_log_store import SyncLogStore

OWNER = "owner-1"
OTHER_OWNER = "owner-2"


# ── Test Doubles ─────────────────────────────────────────────────────────────


class FakeAdapter(RemoteSyncAdapter):
    """RemoteSyncAdapter returning scripted results.

    ``results`` is consumed in order; once empty every call succeeds.
    An Exception instance in the script is raised instead of returned.
    """

    def __init__(self, results: list | None = None) -> None:
        self.results: list = list(results or [])
        self.calls: list[tuple[OperationType, SyncPayload]] = []
        self.poll_report = PollReport(success=True)
        self.polled: list[str] = []

    async def execute(self, operation: OperationType, payload: SyncPayload) -> AdapterResult:
        self.calls.append((operation, payload))
        if not self.results:
            return AdapterResult(success=True, changed=True)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def poll(self, owner_id: str) -> PollReport:
        self.polled.append(owner_id)
        return self.poll_report

    @property
    def operations(self) -> list[OperationType]:
        return [op for op, _ in self.calls]


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file with all sync tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


# ── Stores ───────────────────────────────────────────────────────────────────


@pytest.fixture
def broker() -> LocalChangeBroker:
    return LocalChangeBroker()


@pytest.fixture
def records(session_factory) -> RecordStore:
    return RecordStore(session_factory)


@pytest.fixture
def configs(session_factory) -> SyncConfigStore:
    return SyncConfigStore(session_factory)


@pytest.fixture
def mappings(session_factory) -> StateMappingStore:
    return StateMappingStore(session_factory)


@pytest.fixture
def queue(session_factory, broker) -> SyncQueueStore:
    return SyncQueueStore(session_factory, broker)


@pytest.fixture
def conflict_store(session_factory) -> ConflictStore:
    return ConflictStore(session_factory)


@pytest.fixture
def sync_log(session_factory) -> SyncLogStore:
    return SyncLogStore(session_factory)


@pytest.fixture
def resolver(conflict_store, queue, records, sync_log) -> ConflictResolver:
    return ConflictResolver(
        conflict_store, queue, records, amount_tolerance=100.0, sync_log=sync_log
    )


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def processor(queue, adapter, configs, resolver) -> QueueProcessor:
    return QueueProcessor(queue, adapter, configs, resolver, batch_size=5)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _enable_sync(
    configs: SyncConfigStore,
    owner_id: str = OWNER,
    *,
    auto_sync: bool = True,
    bidirectional: bool = False,
    polling_minutes: int = 30,
) -> SyncConfig:
    """Store a configuration with an API key for ``owner_id``."""
    return await configs.save(
        owner_id,
        SyncConfig(
            api_key_set=True,
            auto_sync=auto_sync,
            bidirectional_sync=bidirectional,
            polling_interval_minutes=polling_minutes,
        ),
    )


async def _make_due(
    session_factory: async_sessionmaker[AsyncSession], item_id: str
) -> None:
    """Move a rescheduled item's scheduled_at into the past."""
    async with session_factory() as session:
        await session.execute(
            update(SyncQueueItemModel)
            .where(SyncQueueItemModel.id == as_uuid(item_id, "queue_item"))
            .values(scheduled_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()


async def _set_updated_at(
    session_factory: async_sessionmaker[AsyncSession], item_id: str, delta: timedelta
) -> None:
    """Shift an item's updated_at by ``delta`` (negative = into the past)."""
    async with session_factory() as session:
        await session.execute(
            update(SyncQueueItemModel)
            .where(SyncQueueItemModel.id == as_uuid(item_id, "queue_item"))
            .values(updated_at=utcnow() + delta)
        )
        await session.commit()


@pytest_asyncio.fixture
async def record(records):
    """One record for OWNER in state ``sent`` with amount 1000."""
    return await records.create(OWNER, "Gala dinner", BusinessState.SENT, 1000.0)


@pytest.fixture
def enable_sync(configs):
    """``await enable_sync(owner_id=..., auto_sync=..., bidirectional=...)``."""

    async def _enable(owner_id: str = OWNER, **kwargs) -> SyncConfig:
        return await _enable_sync(configs, owner_id, **kwargs)

    return _enable


@pytest.fixture
def make_due(session_factory):
    async def _due(item_id: str) -> None:
        await _make_due(session_factory, item_id)

    return _due


@pytest.fixture
def age_item(session_factory):
    """``await age_item(item_id, minutes)`` moves updated_at into the past."""

    async def _age(item_id: str, minutes: int) -> None:
        await _set_updated_at(session_factory, item_id, timedelta(minutes=-minutes))

    return _age


# ── Assembled Service ────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def service(session_factory, broker, adapter) -> AsyncGenerator[SyncService, None]:
    """SyncService over the test database, FakeAdapter and local broker.

    The scheduler is started so readiness reports ok; tests never wait
    long enough for an interval job to fire.
    """
    sync_service = build_sync_service(session_factory, broker=broker, adapter=adapter)
    sync_service.start()
    yield sync_service
    await sync_service.shutdown()
