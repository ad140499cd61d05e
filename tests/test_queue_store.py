"""Tests for SyncQueueStore: ordering, transitions, notifications, stats.

Runs against a per-test SQLite database; change events go through an
in-process LocalChangeBroker.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.dealsync.sync.exceptions import InvalidReference
from src.dealsync.sync.facade import build_payload
from src.dealsync.sync.notifications import ChangeEvent, ChannelStatus
from src.dealsync.sync.queue_store import SyncQueueStore
from src.dealsync.sync.schemas import (
    BusinessState,
    ChangeEventType,
    OperationType,
    QueueStatus,
    utcnow,
)

OWNER = "owner-1"


async def _enqueue(queue, record, operation=OperationType.UPDATE, priority=5, **kwargs):
    return await queue.enqueue(
        record.owner_id,
        record.id,
        operation,
        build_payload(record, operation),
        priority,
        **kwargs,
    )


# ── Enqueue ──────────────────────────────────────────────────────────────────


class TestEnqueue:
    async def test_enqueue_creates_pending_item(self, queue, record):
        """New items start pending with zero attempts and a typed payload."""
        item = await _enqueue(queue, record)

        assert item.status == QueueStatus.PENDING
        assert item.attempts == 0
        assert item.priority == 5
        assert item.owner_record_id == record.id
        assert item.payload.operation == "update"
        assert item.payload.snapshot.state == "sent"
        assert item.processed_at is None

    async def test_enqueue_for_unknown_record_raises(self, queue, record):
        payload = build_payload(record, OperationType.UPDATE)
        with pytest.raises(InvalidReference):
            await queue.enqueue(
                OWNER,
                "00000000-0000-0000-0000-000000000000",
                OperationType.UPDATE,
                payload,
            )

    async def test_enqueue_for_malformed_record_id_raises(self, queue, record):
        payload = build_payload(record, OperationType.UPDATE)
        with pytest.raises(InvalidReference):
            await queue.enqueue(OWNER, "not-a-uuid", OperationType.UPDATE, payload)

    async def test_enqueue_for_other_owners_record_raises(self, queue, record):
        """A record owned by someone else is an invalid reference."""
        payload = build_payload(record, OperationType.UPDATE)
        with pytest.raises(InvalidReference):
            await queue.enqueue("intruder", record.id, OperationType.UPDATE, payload)

    @pytest.mark.parametrize("priority", [0, 10])
    async def test_enqueue_rejects_out_of_range_priority(self, queue, record, priority):
        with pytest.raises(ValueError, match="priority"):
            await _enqueue(queue, record, priority=priority)

    async def test_enqueue_rejects_mismatched_payload(self, queue, record):
        payload = build_payload(record, OperationType.PULL)
        with pytest.raises(ValueError, match="does not match"):
            await queue.enqueue(OWNER, record.id, OperationType.UPDATE, payload)


# ── Ready ordering ───────────────────────────────────────────────────────────


class TestListReady:
    async def test_orders_by_priority_then_age(self, queue, record):
        """Lower priority value first; equal priorities keep insertion order."""
        first_normal = await _enqueue(queue, record, priority=5)
        second_normal = await _enqueue(queue, record, priority=5)
        urgent = await _enqueue(queue, record, priority=1)

        ready = await queue.list_ready(OWNER, 10)

        assert [i.id for i in ready] == [urgent.id, first_normal.id, second_normal.id]

    async def test_excludes_future_items(self, queue, record):
        await _enqueue(queue, record, scheduled_at=utcnow() + timedelta(minutes=5))
        assert await queue.list_ready(OWNER, 10) == []

    async def test_excludes_non_pending_items(self, queue, record):
        item = await _enqueue(queue, record)
        await queue.mark_processing(item.id)
        assert await queue.list_ready(OWNER, 10) == []

    async def test_respects_limit(self, queue, record):
        for _ in range(7):
            await _enqueue(queue, record)
        assert len(await queue.list_ready(OWNER, 5)) == 5

    async def test_scoped_to_owner(self, queue, records, record):
        other = await records.create("owner-2", "Other", BusinessState.SENT, 10.0)
        await _enqueue(queue, other)

        assert await queue.list_ready(OWNER, 10) == []
        assert len(await queue.list_ready("owner-2", 10)) == 1


# ── Transitions ──────────────────────────────────────────────────────────────


class TestTransitions:
    async def test_mark_result_success_completes(self, queue, record):
        item = await _enqueue(queue, record)
        await queue.mark_processing(item.id)

        done = await queue.mark_result(item.id, True)

        assert done.status == QueueStatus.COMPLETED
        assert done.attempts == 1
        assert done.processed_at is not None
        assert done.error_message is None

    async def test_mark_result_failure_records_error(self, queue, record):
        item = await _enqueue(queue, record)

        failed = await queue.mark_result(item.id, False, "boom")

        assert failed.status == QueueStatus.FAILED
        assert failed.attempts == 1
        assert failed.error_message == "boom"

    async def test_reschedule_returns_item_to_pending_later(self, queue, record):
        item = await _enqueue(queue, record)
        await queue.mark_result(item.id, False, "boom")

        before = utcnow()
        rescheduled = await queue.reschedule(item.id, timedelta(minutes=5))

        assert rescheduled.status == QueueStatus.PENDING
        assert rescheduled.attempts == 1
        assert rescheduled.error_message == "boom"
        assert rescheduled.scheduled_at >= before + timedelta(minutes=5) - timedelta(seconds=1)

    async def test_retry_failed_resets_items(self, queue, record):
        item = await _enqueue(queue, record)
        for _ in range(3):
            await queue.mark_result(item.id, False, "boom")

        reset = await queue.retry_failed(OWNER)

        assert [i.id for i in reset] == [item.id]
        fresh = await queue.get(item.id)
        assert fresh.status == QueueStatus.PENDING
        assert fresh.attempts == 0
        assert fresh.error_message is None
        assert [i.id for i in await queue.list_ready(OWNER, 5)] == [item.id]

    async def test_recover_stale_returns_abandoned_processing_items(
        self, queue, record, age_item
    ):
        stale = await _enqueue(queue, record)
        fresh = await _enqueue(queue, record)
        await queue.mark_processing(stale.id)
        await queue.mark_processing(fresh.id)
        await age_item(stale.id, 30)

        recovered = await queue.recover_stale(OWNER, timedelta(minutes=15))

        assert [i.id for i in recovered] == [stale.id]
        assert (await queue.get(stale.id)).status == QueueStatus.PENDING
        assert (await queue.get(fresh.id)).status == QueueStatus.PROCESSING

    async def test_get_unknown_returns_none(self, queue):
        assert await queue.get("not-a-uuid") is None


# ── Notifications ────────────────────────────────────────────────────────────


class TestNotifications:
    async def test_mutations_publish_events_to_owner_channel(self, queue, broker, record):
        events: list[ChangeEvent] = []

        async def on_event(event: ChangeEvent) -> None:
            events.append(event)

        async def on_status(status: ChannelStatus) -> None:
            pass

        await broker.open_channel(OWNER, on_event, on_status)

        item = await _enqueue(queue, record)
        await queue.mark_processing(item.id)
        await queue.mark_result(item.id, True)

        assert [e.event_type for e in events] == [
            ChangeEventType.INSERT,
            ChangeEventType.UPDATE,
            ChangeEventType.UPDATE,
        ]
        assert events[-1].record.status == QueueStatus.COMPLETED

    async def test_publish_failure_does_not_undo_write(self, session_factory, record):
        failing = AsyncMock()
        failing.publish.side_effect = RuntimeError("broker down")
        store = SyncQueueStore(session_factory, failing)

        item = await _enqueue(store, record)

        assert (await store.get(item.id)).status == QueueStatus.PENDING


# ── Stats ────────────────────────────────────────────────────────────────────


class TestStats:
    async def test_stats_counts_by_status(self, queue, record):
        pending = await _enqueue(queue, record)
        processing = await _enqueue(queue, record)
        failed = await _enqueue(queue, record)
        completed = await _enqueue(queue, record)
        await queue.mark_processing(processing.id)
        await queue.mark_result(failed.id, False, "boom")
        await queue.mark_result(completed.id, True)

        stats = await queue.stats(OWNER)

        assert stats.total_pending == 1
        assert stats.total_processing == 1
        assert stats.total_failed == 1
        assert stats.total_completed_today == 1
        assert stats.avg_processing_time_minutes >= 0.0
        assert (await queue.get(pending.id)).status == QueueStatus.PENDING

    async def test_stats_empty_owner(self, queue):
        stats = await queue.stats("nobody")
        assert stats.total_pending == 0
        assert stats.avg_processing_time_minutes == 0.0

    async def test_list_recent_newest_first(self, queue, record):
        first = await _enqueue(queue, record)
        second = await _enqueue(queue, record)

        recent = await queue.list_recent(OWNER)

        assert [i.id for i in recent] == [second.id, first.id]
