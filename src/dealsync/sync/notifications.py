"""Change-notification channels for sync queue rows.

A channel is keyed by owner and delivers ChangeEvent objects
(insert/update/delete of a queue row) to one handler. Two brokers:

- LocalChangeBroker: in-process fan-out for single-process deployments
- RedisChangeBroker: Redis pub/sub, one Redis channel per owner

Channel key pattern: sync:{owner_id}:queue
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from src.dealsync.sync.exceptions import SubscriptionError
from src.dealsync.sync.schemas import ChangeEventType, SyncQueueItem, utcnow

logger = structlog.get_logger(__name__)


class ChannelStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    CHANNEL_ERROR = "channel_error"


class ChangeEvent(BaseModel):
    """A queue row changed for ``owner_id``."""

    owner_id: str
    event_type: ChangeEventType
    record: SyncQueueItem
    occurred_at: datetime = Field(default_factory=utcnow)


EventHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusHandler = Callable[[ChannelStatus], Awaitable[None]]


def channel_key(owner_id: str) -> str:
    return f"sync:{owner_id}:queue"


class ChannelHandle(ABC):
    """An open channel; closing it stops delivery."""

    owner_id: str

    @abstractmethod
    async def close(self) -> None:
        ...


class ChangeBroker(ABC):
    """Subscribe/publish primitive keyed by owner identity."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every open channel of its owner."""
        ...

    @abstractmethod
    async def open_channel(
        self,
        owner_id: str,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChannelHandle:
        """Open a channel for ``owner_id``.

        Raises:
            SubscriptionError: If the channel cannot be opened.
        """
        ...


# ── In-process broker ───────────────────────────────────────────────────────


class LocalChannel(ChannelHandle):
    def __init__(
        self,
        broker: LocalChangeBroker,
        owner_id: str,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> None:
        self._broker = broker
        self.owner_id = owner_id
        self._on_event = on_event
        self._on_status = on_status
        self.closed = False

    async def deliver(self, event: ChangeEvent) -> None:
        if not self.closed:
            await self._on_event(event)

    async def fail(self, reason: str) -> None:
        """Drop the channel as if the transport broke."""
        logger.warning("change_channel.failed", owner_id=self.owner_id, reason=reason)
        self._broker._detach(self)
        self.closed = True
        await self._on_status(ChannelStatus.CHANNEL_ERROR)

    async def close(self) -> None:
        self._broker._detach(self)
        self.closed = True


class LocalChangeBroker(ChangeBroker):
    """Fan-out inside one event loop. Handlers are awaited in publish order."""

    def __init__(self) -> None:
        self._channels: dict[str, list[LocalChannel]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for channel in list(self._channels.get(event.owner_id, [])):
            try:
                await channel.deliver(event)
            except Exception:
                logger.exception(
                    "change_channel.delivery_failed",
                    owner_id=event.owner_id,
                    event_type=event.event_type.value,
                )

    async def open_channel(
        self,
        owner_id: str,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChannelHandle:
        channel = LocalChannel(self, owner_id, on_event, on_status)
        self._channels.setdefault(owner_id, []).append(channel)
        await on_status(ChannelStatus.SUBSCRIBED)
        return channel

    def open_channel_count(self, owner_id: str) -> int:
        return len(self._channels.get(owner_id, []))

    def channels(self, owner_id: str) -> list[LocalChannel]:
        return list(self._channels.get(owner_id, []))

    def _detach(self, channel: LocalChannel) -> None:
        channels = self._channels.get(channel.owner_id)
        if channels and channel in channels:
            channels.remove(channel)
            if not channels:
                del self._channels[channel.owner_id]


# ── Redis pub/sub broker ────────────────────────────────────────────────────


class RedisChannel(ChannelHandle):
    """Reader task consuming one Redis pub/sub subscription."""

    def __init__(
        self,
        owner_id: str,
        pubsub: aioredis.client.PubSub,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> None:
        self.owner_id = owner_id
        self._pubsub = pubsub
        self._on_event = on_event
        self._on_status = on_status
        self._task: asyncio.Task | None = None
        self._closing = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        status = ChannelStatus.CLOSED
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.model_validate_json(message["data"])
                except ValidationError:
                    logger.warning(
                        "change_channel.malformed_message",
                        owner_id=self.owner_id,
                    )
                    continue
                try:
                    await self._on_event(event)
                except Exception:
                    logger.exception(
                        "change_channel.delivery_failed",
                        owner_id=self.owner_id,
                    )
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as exc:
            status = ChannelStatus.CHANNEL_ERROR
            logger.warning(
                "change_channel.reader_failed",
                owner_id=self.owner_id,
                error=str(exc),
            )

        if not self._closing:
            await self._release()
            await self._on_status(status)

    async def _release(self) -> None:
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("change_channel.release_failed", owner_id=self.owner_id, error=str(exc))

    async def close(self) -> None:
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release()


class RedisChangeBroker(ChangeBroker):
    """Change channels over Redis pub/sub.

    Args:
        redis: Async Redis client (decode_responses=True).
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def publish(self, event: ChangeEvent) -> None:
        await self._redis.publish(channel_key(event.owner_id), event.model_dump_json())

    async def open_channel(
        self,
        owner_id: str,
        on_event: EventHandler,
        on_status: StatusHandler,
    ) -> ChannelHandle:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel_key(owner_id))
        except (RedisError, OSError) as exc:
            raise SubscriptionError(owner_id, str(exc)) from exc

        channel = RedisChannel(owner_id, pubsub, on_event, on_status)
        channel.start()
        await on_status(ChannelStatus.SUBSCRIBED)
        logger.debug("change_channel.opened", channel=channel_key(owner_id))
        return channel
