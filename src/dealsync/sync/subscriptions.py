"""One change-notification channel per owner, shared by any number of consumers.

Several consumers (dashboards, monitors, the background service) may ask
for queue notifications for the same owner. Opening a channel for each of
them duplicated every event and, through the insert trigger, every drain.
SubscriptionManager keeps exactly one open channel per owner and fans each
event out to all registered callback sets.

Exports:
    SubscriptionCallbacks: The pair of callbacks a consumer registers.
    SubscriptionManager: Injected registry of owner channels.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.dealsync.config import get_settings
from src.dealsync.core.monitoring import sync_active_channels
from src.dealsync.sync.exceptions import SubscriptionError
from src.dealsync.sync.notifications import (
    ChangeBroker,
    ChangeEvent,
    ChannelHandle,
    ChannelStatus,
)
from src.dealsync.sync.schemas import ChangeEventType

logger = structlog.get_logger(__name__)

Unsubscribe = Callable[[], Awaitable[None]]


@dataclass(eq=False)
class SubscriptionCallbacks:
    """Callbacks registered by one consumer.

    Attributes:
        on_change: Called for every queue change, and with ``None`` when
            the consumer should simply reload (after a drain).
        on_insert_trigger_process: Drains the queue; invoked once per
            debounced burst of inserts, for one registrant only.
    """

    on_change: Callable[[ChangeEvent | None], Awaitable[Any]]
    on_insert_trigger_process: Callable[[], Awaitable[Any]] | None = None


@dataclass
class _ChannelEntry:
    owner_id: str
    callbacks: list[SubscriptionCallbacks] = field(default_factory=list)
    handle: ChannelHandle | None = None
    subscribed: bool = False
    trigger_timer: asyncio.TimerHandle | None = None


class SubscriptionManager:
    """Multiplexes one change channel per owner to N callback sets.

    Args:
        broker: ChangeBroker that opens the underlying channels.
        debounce_seconds: Quiet period after an insert before processing
            is triggered. Defaults to SYNC_INSERT_DEBOUNCE_SECONDS.
    """

    def __init__(
        self,
        broker: ChangeBroker,
        debounce_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._broker = broker
        self._debounce = (
            settings.SYNC_INSERT_DEBOUNCE_SECONDS
            if debounce_seconds is None
            else debounce_seconds
        )
        self._entries: dict[str, _ChannelEntry] = {}
        self._lock = asyncio.Lock()
        self._trigger_tasks: set[asyncio.Task] = set()

    async def subscribe(
        self, owner_id: str, callbacks: SubscriptionCallbacks
    ) -> Unsubscribe:
        """Register ``callbacks`` for ``owner_id``, opening the channel if needed.

        Returns:
            Coroutine function that removes exactly this registration.

        Raises:
            SubscriptionError: If the channel could not be opened. The
                registration is rolled back.
        """
        async with self._lock:
            entry = self._entries.get(owner_id)
            if entry is None:
                entry = _ChannelEntry(owner_id=owner_id)
                self._entries[owner_id] = entry
            entry.callbacks.append(callbacks)

            if entry.subscribed:
                logger.debug(
                    "subscriptions.channel_reused",
                    owner_id=owner_id,
                    callbacks=len(entry.callbacks),
                )
            else:
                try:
                    await self._open(entry)
                except SubscriptionError as exc:
                    entry.callbacks.remove(callbacks)
                    if not entry.callbacks:
                        self._entries.pop(owner_id, None)
                    logger.error(
                        "subscriptions.open_failed",
                        owner_id=owner_id,
                        error=exc.reason,
                    )
                    raise

        async def unsubscribe() -> None:
            await self._unsubscribe(owner_id, callbacks)

        return unsubscribe

    async def refresh(self, owner_id: str) -> None:
        """Ask every subscriber of ``owner_id`` to reload its sync data."""
        entry = self._entries.get(owner_id)
        if entry is None:
            return
        for callbacks in list(entry.callbacks):
            try:
                await callbacks.on_change(None)
            except Exception:
                logger.exception("subscriptions.refresh_callback_failed", owner_id=owner_id)

    def is_subscribed(self, owner_id: str) -> bool:
        entry = self._entries.get(owner_id)
        return entry is not None and entry.subscribed

    def callback_count(self, owner_id: str) -> int:
        entry = self._entries.get(owner_id)
        return len(entry.callbacks) if entry else 0

    def debug_info(self) -> dict[str, Any]:
        return {
            "active_channels": [
                owner for owner, entry in self._entries.items() if entry.subscribed
            ],
            "callback_counts": {
                owner: len(entry.callbacks) for owner, entry in self._entries.items()
            },
        }

    async def close_all(self) -> None:
        """Close every channel (application shutdown)."""
        async with self._lock:
            for entry in list(self._entries.values()):
                await self._close(entry)
            self._entries.clear()

    # ── Internals ───────────────────────────────────────────────────────

    async def _open(self, entry: _ChannelEntry) -> None:
        owner_id = entry.owner_id

        async def on_event(event: ChangeEvent) -> None:
            await self._dispatch(owner_id, event)

        async def on_status(status: ChannelStatus) -> None:
            self._on_status(owner_id, status)

        try:
            entry.handle = await self._broker.open_channel(owner_id, on_event, on_status)
        except SubscriptionError:
            raise
        except Exception as exc:
            raise SubscriptionError(owner_id, str(exc)) from exc

        entry.subscribed = True
        sync_active_channels.inc()
        logger.info("subscriptions.channel_opened", owner_id=owner_id)

    def _on_status(self, owner_id: str, status: ChannelStatus) -> None:
        if status == ChannelStatus.SUBSCRIBED:
            return
        entry = self._entries.get(owner_id)
        if entry is None:
            return
        # The broker already released the transport; re-subscribe reopens it.
        if entry.subscribed:
            sync_active_channels.dec()
        entry.subscribed = False
        entry.handle = None
        logger.warning(
            "subscriptions.channel_lost",
            owner_id=owner_id,
            status=status.value,
            callbacks=len(entry.callbacks),
        )

    async def _dispatch(self, owner_id: str, event: ChangeEvent) -> None:
        entry = self._entries.get(owner_id)
        if entry is None:
            return

        for callbacks in list(entry.callbacks):
            try:
                await callbacks.on_change(event)
            except Exception:
                logger.exception(
                    "subscriptions.change_callback_failed",
                    owner_id=owner_id,
                    event_type=event.event_type.value,
                )

        if event.event_type == ChangeEventType.INSERT:
            self._schedule_trigger(entry)

    def _schedule_trigger(self, entry: _ChannelEntry) -> None:
        # Trailing debounce: a burst of inserts yields a single drain.
        if entry.trigger_timer is not None:
            entry.trigger_timer.cancel()
        loop = asyncio.get_running_loop()
        entry.trigger_timer = loop.call_later(
            self._debounce, self._fire_trigger, entry.owner_id
        )

    def _fire_trigger(self, owner_id: str) -> None:
        entry = self._entries.get(owner_id)
        if entry is None:
            return
        entry.trigger_timer = None

        target = next(
            (c for c in entry.callbacks if c.on_insert_trigger_process is not None),
            None,
        )
        if target is None:
            return

        task = asyncio.create_task(self._run_trigger(owner_id, target))
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)

    async def _run_trigger(self, owner_id: str, callbacks: SubscriptionCallbacks) -> None:
        logger.debug("subscriptions.insert_trigger", owner_id=owner_id)
        try:
            await callbacks.on_insert_trigger_process()  # type: ignore[misc]
        except Exception:
            logger.exception("subscriptions.trigger_failed", owner_id=owner_id)

    async def _unsubscribe(self, owner_id: str, callbacks: SubscriptionCallbacks) -> None:
        async with self._lock:
            entry = self._entries.get(owner_id)
            if entry is None or callbacks not in entry.callbacks:
                return
            entry.callbacks.remove(callbacks)
            logger.debug(
                "subscriptions.callbacks_removed",
                owner_id=owner_id,
                remaining=len(entry.callbacks),
            )
            if not entry.callbacks:
                await self._close(entry)
                del self._entries[owner_id]

    async def _close(self, entry: _ChannelEntry) -> None:
        if entry.trigger_timer is not None:
            entry.trigger_timer.cancel()
            entry.trigger_timer = None
        handle, entry.handle = entry.handle, None
        if entry.subscribed:
            sync_active_channels.dec()
        entry.subscribed = False
        if handle is None:
            return
        try:
            await handle.close()
            logger.info("subscriptions.channel_closed", owner_id=entry.owner_id)
        except Exception:
            logger.exception("subscriptions.close_failed", owner_id=entry.owner_id)
