"""Wires the sync engine together and manages per-owner activation.

build_sync_service() assembles stores, broker, adapter, processor,
resolver, subscription manager, scheduler and facade around one session
factory. SyncService.activate_owner() is what a login or a settings change
calls: it (re)applies the owner's timers and keeps one background
subscription whose insert trigger drains the queue. At startup
activate_enabled_owners() restores every owner with automatic sync on.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.config import BrokerBackend, get_settings
from src.dealsync.core.redis import get_redis_pool
from src.dealsync.sync.adapter import HttpRemoteSyncAdapter, RemoteSyncAdapter
from src.dealsync.sync.config_store import SyncConfigStore
from src.dealsync.sync.conflict_store import ConflictStore
from src.dealsync.sync.conflicts import ConflictResolver
from src.dealsync.sync.exceptions import SubscriptionError
from src.dealsync.sync.facade import SyncFacade
from src.dealsync.sync.mapping_store import StateMappingStore
from src.dealsync.sync.notifications import (
    ChangeBroker,
    ChangeEvent,
    LocalChangeBroker,
    RedisChangeBroker,
)
from src.dealsync.sync.processor import QueueProcessor
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.record_store import RecordStore
from src.dealsync.sync.scheduler import PeriodicScheduler
from src.dealsync.sync.schemas import SyncConfig
from src.dealsync.sync.subscriptions import (
    SubscriptionCallbacks,
    SubscriptionManager,
    Unsubscribe,
)
from src.dealsync.sync.sync_log_store import SyncLogStore

logger = structlog.get_logger(__name__)


@dataclass
class SyncService:
    """All sync components of one process."""

    broker: ChangeBroker
    records: RecordStore
    configs: SyncConfigStore
    mappings: StateMappingStore
    queue: SyncQueueStore
    conflicts: ConflictStore
    resolver: ConflictResolver
    adapter: RemoteSyncAdapter
    subscriptions: SubscriptionManager
    processor: QueueProcessor
    scheduler: PeriodicScheduler
    facade: SyncFacade
    sync_log: SyncLogStore | None = None
    _background: dict[str, Unsubscribe] = field(default_factory=dict)

    def start(self) -> None:
        self.scheduler.start()

    async def activate_owner(self, owner_id: str) -> list[str]:
        """Apply the owner's current configuration to timers and channels.

        Safe to call again after a configuration change.

        Returns:
            Scheduler job ids now registered for the owner.
        """
        config = await self.configs.get(owner_id)
        job_ids = self.scheduler.apply_config(owner_id, config)

        needs_channel = (
            owner_id not in self._background
            or not self.subscriptions.is_subscribed(owner_id)
        )
        if config.automatic_enabled and needs_channel:
            # A lost channel is reopened by registering again.
            await self._drop_background(owner_id)

            async def on_change(event: ChangeEvent | None) -> None:
                if event is not None:
                    logger.debug(
                        "sync_service.queue_changed",
                        owner_id=owner_id,
                        event_type=event.event_type.value,
                        item_id=event.record.id,
                    )

            async def on_insert() -> None:
                await self.processor.process(owner_id)

            self._background[owner_id] = await self.subscriptions.subscribe(
                owner_id,
                SubscriptionCallbacks(on_change=on_change, on_insert_trigger_process=on_insert),
            )
        elif not config.automatic_enabled:
            await self._drop_background(owner_id)

        logger.info(
            "sync_service.owner_activated",
            owner_id=owner_id,
            automatic=config.automatic_enabled,
            polling=config.polling_enabled,
        )
        return job_ids

    async def activate_enabled_owners(self) -> list[str]:
        """Activate every owner whose stored configuration enables automatic sync.

        Run at startup so timers and channels survive a restart. An owner
        whose channel cannot be opened is logged and skipped.

        Returns:
            Owner ids that were activated.
        """
        activated: list[str] = []
        for owner_id in await self.configs.list_automatic_owners():
            try:
                await self.activate_owner(owner_id)
            except SubscriptionError:
                logger.exception("sync_service.startup_activation_failed", owner_id=owner_id)
                continue
            activated.append(owner_id)
        logger.info("sync_service.owners_restored", owners=len(activated))
        return activated

    async def update_config(self, owner_id: str, config: SyncConfig) -> list[str]:
        await self.configs.save(owner_id, config)
        return await self.activate_owner(owner_id)

    async def deactivate_owner(self, owner_id: str) -> None:
        self.scheduler.deactivate(owner_id)
        await self._drop_background(owner_id)
        logger.info("sync_service.owner_deactivated", owner_id=owner_id)

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        await self.facade.shutdown()
        await self.subscriptions.close_all()
        self._background.clear()
        if isinstance(self.adapter, HttpRemoteSyncAdapter):
            await self.adapter.aclose()

    async def _drop_background(self, owner_id: str) -> None:
        unsubscribe = self._background.pop(owner_id, None)
        if unsubscribe is not None:
            await unsubscribe()


def build_sync_service(
    session_factory: async_sessionmaker[AsyncSession],
    broker: ChangeBroker | None = None,
    adapter: RemoteSyncAdapter | None = None,
    http_client: httpx.AsyncClient | None = None,
    scheduler: PeriodicScheduler | None = None,
) -> SyncService:
    """Assemble a SyncService.

    Args:
        session_factory: async_sessionmaker shared by every store.
        broker: Change broker; defaults to LocalChangeBroker, or the Redis
            broker when SYNC_BROKER=redis.
        adapter: Remote adapter; defaults to HttpRemoteSyncAdapter.
        http_client: Optional httpx client for the default adapter.
        scheduler: Optional pre-built PeriodicScheduler.
    """
    if broker is None:
        if get_settings().SYNC_BROKER == BrokerBackend.redis:
            broker = RedisChangeBroker(get_redis_pool())
        else:
            broker = LocalChangeBroker()

    records = RecordStore(session_factory)
    configs = SyncConfigStore(session_factory)
    mappings = StateMappingStore(session_factory)
    queue = SyncQueueStore(session_factory, broker)
    conflicts = ConflictStore(session_factory)
    sync_log = SyncLogStore(session_factory)
    resolver = ConflictResolver(conflicts, queue, records, sync_log=sync_log)
    if adapter is None:
        adapter = HttpRemoteSyncAdapter(
            records,
            mappings,
            configs,
            client=http_client,
            conflicts=conflicts,
            sync_log=sync_log,
        )

    subscriptions = SubscriptionManager(broker)
    processor = QueueProcessor(
        queue,
        adapter,
        configs,
        resolver,
        on_batch_complete=subscriptions.refresh,
    )
    facade = SyncFacade(
        queue, records, configs, processor, resolver, adapter, sync_log=sync_log
    )
    if scheduler is None:
        scheduler = PeriodicScheduler(
            drain=processor.process,
            poll=facade.poll_remote,
            configs=configs,
        )

    return SyncService(
        broker=broker,
        records=records,
        configs=configs,
        mappings=mappings,
        queue=queue,
        conflicts=conflicts,
        resolver=resolver,
        adapter=adapter,
        subscriptions=subscriptions,
        processor=processor,
        scheduler=scheduler,
        facade=facade,
        sync_log=sync_log,
    )
