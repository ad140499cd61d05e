"""Tests for the change brokers (in-process and Redis pub/sub)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.dealsync.sync.exceptions import SubscriptionError
from src.dealsync.sync.notifications import (
    ChangeEvent,
    ChannelStatus,
    LocalChangeBroker,
    RedisChangeBroker,
    channel_key,
)
from src.dealsync.sync.schemas import (
    ChangeEventType,
    DealSnapshot,
    OperationType,
    PushPayload,
    SyncQueueItem,
)

OWNER = "owner-1"


def _event(owner_id: str = OWNER) -> ChangeEvent:
    item = SyncQueueItem(
        id="item-1",
        owner_record_id="rec-1",
        operation_type=OperationType.UPDATE,
        scheduled_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        payload=PushPayload(operation="update", snapshot=DealSnapshot(record_id="rec-1")),
    )
    return ChangeEvent(owner_id=owner_id, event_type=ChangeEventType.INSERT, record=item)


def test_channel_key_pattern():
    assert channel_key("abc") == "sync:abc:queue"


# ── LocalChangeBroker ────────────────────────────────────────────────────────


class TestLocalChangeBroker:
    async def test_open_reports_subscribed_and_delivers(self):
        broker = LocalChangeBroker()
        on_event, on_status = AsyncMock(), AsyncMock()

        await broker.open_channel(OWNER, on_event, on_status)
        event = _event()
        await broker.publish(event)

        on_status.assert_awaited_once_with(ChannelStatus.SUBSCRIBED)
        on_event.assert_awaited_once_with(event)

    async def test_closed_channel_receives_nothing(self):
        broker = LocalChangeBroker()
        on_event = AsyncMock()
        channel = await broker.open_channel(OWNER, on_event, AsyncMock())

        await channel.close()
        await broker.publish(_event())

        on_event.assert_not_awaited()
        assert broker.open_channel_count(OWNER) == 0

    async def test_handler_error_does_not_reach_publisher(self):
        broker = LocalChangeBroker()
        healthy = AsyncMock()
        await broker.open_channel(OWNER, AsyncMock(side_effect=RuntimeError("x")), AsyncMock())
        await broker.open_channel(OWNER, healthy, AsyncMock())

        await broker.publish(_event())

        healthy.assert_awaited_once()

    async def test_fail_reports_channel_error(self):
        broker = LocalChangeBroker()
        on_status = AsyncMock()
        channel = await broker.open_channel(OWNER, AsyncMock(), on_status)

        await channel.fail("boom")

        assert on_status.await_args.args[0] == ChannelStatus.CHANNEL_ERROR
        assert broker.open_channel_count(OWNER) == 0


# ── RedisChangeBroker ────────────────────────────────────────────────────────


def _pubsub(messages: list, error: Exception | None = None) -> MagicMock:
    """PubSub double whose listen() yields ``messages`` then raises ``error``."""
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    release = asyncio.Event()

    async def listen():
        for message in messages:
            yield message
        if error is not None:
            raise error
        await release.wait()

    pubsub.listen = listen
    return pubsub


@pytest.fixture
def redis_client() -> MagicMock:
    client = MagicMock()
    client.publish = AsyncMock()
    return client


class TestRedisChangeBroker:
    async def test_publish_uses_owner_channel(self, redis_client):
        broker = RedisChangeBroker(redis_client)
        event = _event()

        await broker.publish(event)

        channel, data = redis_client.publish.await_args.args
        assert channel == "sync:owner-1:queue"
        assert ChangeEvent.model_validate_json(data).record.id == "item-1"

    async def test_subscribe_failure_raises_subscription_error(self, redis_client):
        pubsub = _pubsub([])
        pubsub.subscribe.side_effect = RedisConnectionError("refused")
        redis_client.pubsub.return_value = pubsub
        broker = RedisChangeBroker(redis_client)

        with pytest.raises(SubscriptionError, match="refused"):
            await broker.open_channel(OWNER, AsyncMock(), AsyncMock())

    async def test_reader_delivers_valid_messages_and_skips_others(self, redis_client):
        event = _event()
        redis_client.pubsub.return_value = _pubsub(
            [
                {"type": "subscribe", "data": 1},
                {"type": "message", "data": "not json"},
                {"type": "message", "data": event.model_dump_json()},
            ]
        )
        broker = RedisChangeBroker(redis_client)
        delivered = asyncio.Event()
        on_event = AsyncMock(side_effect=lambda _: delivered.set())

        channel = await broker.open_channel(OWNER, on_event, AsyncMock())
        await asyncio.wait_for(delivered.wait(), timeout=1)
        await channel.close()

        assert on_event.await_count == 1
        assert on_event.await_args.args[0].record.id == "item-1"

    async def test_connection_loss_reports_channel_error(self, redis_client):
        pubsub = _pubsub([], error=RedisConnectionError("reset by peer"))
        redis_client.pubsub.return_value = pubsub
        broker = RedisChangeBroker(redis_client)
        statuses: list[ChannelStatus] = []
        errored = asyncio.Event()

        async def on_status(status: ChannelStatus) -> None:
            statuses.append(status)
            if status == ChannelStatus.CHANNEL_ERROR:
                errored.set()

        await broker.open_channel(OWNER, AsyncMock(), on_status)
        await asyncio.wait_for(errored.wait(), timeout=1)

        assert statuses == [ChannelStatus.SUBSCRIBED, ChannelStatus.CHANNEL_ERROR]
        pubsub.unsubscribe.assert_awaited()
        pubsub.aclose.assert_awaited()

    async def test_close_stops_reader_without_status_callback(self, redis_client):
        pubsub = _pubsub([])
        redis_client.pubsub.return_value = pubsub
        broker = RedisChangeBroker(redis_client)
        on_status = AsyncMock()

        channel = await broker.open_channel(OWNER, AsyncMock(), on_status)
        await asyncio.sleep(0)
        await channel.close()

        on_status.assert_awaited_once_with(ChannelStatus.SUBSCRIBED)
        pubsub.aclose.assert_awaited()
