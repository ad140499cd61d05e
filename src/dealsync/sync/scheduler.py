"""Per-owner periodic sync jobs on APScheduler.

For each activated owner:
- Queue drain every SYNC_QUEUE_INTERVAL_SECONDS (30s) while automatic
  sync is enabled (API key set and auto sync on)
- Remote poll every ``polling_interval_minutes`` while bidirectional sync
  is also on, plus a one-off poll SYNC_INITIAL_POLL_DELAY_SECONDS (10s)
  after activation

Jobs exist only while enabled. apply_config() always removes an owner's
jobs before registering new ones, so a configuration change never leaves
two timers running. Every tick re-reads configuration before doing work.

Exports:
    PeriodicScheduler: AsyncIOScheduler wrapper keyed by owner.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.dealsync.config import get_settings
from src.dealsync.sync.config_store import ConfigProvider
from src.dealsync.sync.schemas import SyncConfig

logger = structlog.get_logger(__name__)

OwnerJob = Callable[[str], Awaitable[Any]]


def drain_job_id(owner_id: str) -> str:
    return f"sync_queue_drain:{owner_id}"


def poll_job_id(owner_id: str) -> str:
    return f"sync_remote_poll:{owner_id}"


def initial_poll_job_id(owner_id: str) -> str:
    return f"sync_initial_poll:{owner_id}"


class PeriodicScheduler:
    """Owns the drain and poll timers of every active owner.

    Args:
        drain: Coroutine function draining one owner's queue.
        poll: Coroutine function polling the remote CRM for one owner.
        configs: Per-owner configuration, re-read on every tick.
        scheduler: Optional AsyncIOScheduler (tests inject their own).
    """

    def __init__(
        self,
        drain: OwnerJob,
        poll: OwnerJob,
        configs: ConfigProvider,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        settings = get_settings()
        self._drain = drain
        self._poll = poll
        self._configs = configs
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._queue_interval = settings.SYNC_QUEUE_INTERVAL_SECONDS
        self._initial_poll_delay = settings.SYNC_INITIAL_POLL_DELAY_SECONDS
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("sync_scheduler.started", queue_interval_seconds=self._queue_interval)

    def shutdown(self) -> None:
        """Remove every job and stop the scheduler."""
        self._scheduler.remove_all_jobs()
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("sync_scheduler.stopped")

    def apply_config(self, owner_id: str, config: SyncConfig) -> list[str]:
        """Replace the owner's jobs with the ones ``config`` enables.

        Returns:
            Ids of the jobs now registered for the owner.
        """
        self.deactivate(owner_id)

        if not config.automatic_enabled:
            logger.info("sync_scheduler.owner_disabled", owner_id=owner_id)
            return []

        self._scheduler.add_job(
            self._drain_tick,
            trigger=IntervalTrigger(seconds=self._queue_interval),
            args=[owner_id],
            id=drain_job_id(owner_id),
            name=f"Sync queue drain for {owner_id}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        if config.polling_enabled:
            self._scheduler.add_job(
                self._poll_tick,
                trigger=IntervalTrigger(minutes=config.polling_interval_minutes),
                args=[owner_id],
                id=poll_job_id(owner_id),
                name=f"Remote CRM poll for {owner_id}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            self._scheduler.add_job(
                self._poll_tick,
                trigger=DateTrigger(
                    run_date=datetime.now(timezone.utc)
                    + timedelta(seconds=self._initial_poll_delay)
                ),
                args=[owner_id],
                id=initial_poll_job_id(owner_id),
                name=f"Initial remote CRM poll for {owner_id}",
                replace_existing=True,
            )

        job_ids = self.job_ids(owner_id)
        logger.info(
            "sync_scheduler.owner_activated",
            owner_id=owner_id,
            jobs=job_ids,
            polling_interval_minutes=config.polling_interval_minutes,
        )
        return job_ids

    def deactivate(self, owner_id: str) -> None:
        for job_id in (
            drain_job_id(owner_id),
            poll_job_id(owner_id),
            initial_poll_job_id(owner_id),
        ):
            try:
                self._scheduler.remove_job(job_id)
            except JobLookupError:
                continue

    def job_ids(self, owner_id: str) -> list[str]:
        suffix = f":{owner_id}"
        return sorted(job.id for job in self._scheduler.get_jobs() if job.id.endswith(suffix))

    # ── Ticks ───────────────────────────────────────────────────────────────

    async def _drain_tick(self, owner_id: str) -> None:
        config = await self._configs.get(owner_id)
        if not config.automatic_enabled:
            logger.debug("sync_scheduler.drain_skipped", owner_id=owner_id)
            return
        try:
            await self._drain(owner_id)
        except Exception:
            logger.exception("sync_scheduler.drain_failed", owner_id=owner_id)

    async def _poll_tick(self, owner_id: str) -> None:
        config = await self._configs.get(owner_id)
        if not config.polling_enabled:
            logger.debug("sync_scheduler.poll_skipped", owner_id=owner_id)
            return
        try:
            await self._poll(owner_id)
        except Exception as exc:
            logger.error("sync_scheduler.poll_failed", owner_id=owner_id, error=str(exc))
