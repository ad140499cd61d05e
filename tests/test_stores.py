"""Tests for the record, mapping, config and conflict stores."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from src.dealsync.sync.exceptions import ConflictNotFound, InvalidReference
from src.dealsync.sync.schemas import (
    BusinessState,
    ConflictStatus,
    ConflictType,
    ResolutionStrategy,
    SyncConfig,
    SyncDirection,
    SyncLogOperation,
)

OWNER = "owner-1"


# ── RecordStore ──────────────────────────────────────────────────────────────


class TestRecordStore:
    async def test_create_and_get_for_owner(self, records):
        created = await records.create(OWNER, "Wedding", BusinessState.SENT, 2500.0)

        fetched = await records.get_for_owner(OWNER, created.id)

        assert fetched.name == "Wedding"
        assert fetched.state == BusinessState.SENT
        assert fetched.amount == 2500.0
        assert fetched.remote_deal_id is None

    async def test_get_for_owner_rejects_foreign_record(self, records, record):
        with pytest.raises(InvalidReference):
            await records.get_for_owner("owner-2", record.id)

    async def test_get_returns_none_for_bad_id(self, records):
        assert await records.get("bogus") is None

    async def test_apply_remote_only_touches_given_fields(self, records, record):
        close = datetime(2026, 12, 1, tzinfo=timezone.utc)

        updated = await records.apply_remote(
            record.id, state=BusinessState.APPROVED, close_date=close
        )

        assert updated.state == BusinessState.APPROVED
        assert updated.amount == 1000.0
        assert updated.close_date.date() == close.date()

    async def test_list_linked_only_returns_records_with_remote_deal(self, records, record):
        linked = await records.create(OWNER, "Linked", remote_deal_id="deal-9")

        result = await records.list_linked(OWNER)

        assert [r.id for r in result] == [linked.id]

    async def test_link_remote_sets_and_clears(self, records, record):
        await records.link_remote(record.id, "deal-1")
        assert (await records.get(record.id)).remote_deal_id == "deal-1"

        await records.link_remote(record.id, None)
        assert (await records.get(record.id)).remote_deal_id is None


# ── StateMappingStore ────────────────────────────────────────────────────────


class TestStateMappingStore:
    async def test_get_returns_pipeline_and_stage(self, mappings):
        await mappings.upsert(OWNER, BusinessState.SENT, "pipe-1", "stage-sent")

        assert await mappings.get(OWNER, BusinessState.SENT) == ("pipe-1", "stage-sent")
        assert await mappings.get(OWNER, BusinessState.LOST) is None

    async def test_upsert_replaces_existing_mapping(self, mappings):
        """At most one mapping per (owner, state)."""
        await mappings.upsert(OWNER, BusinessState.SENT, "pipe-1", "stage-a")
        await mappings.upsert(OWNER, BusinessState.SENT, "pipe-1", "stage-b")

        listed = await mappings.list_for_owner(OWNER)

        assert len(listed) == 1
        assert listed[0].remote_stage_id == "stage-b"

    async def test_require_raises_for_unmapped_state(self, mappings):
        with pytest.raises(InvalidReference, match="mapping"):
            await mappings.require(OWNER, BusinessState.CLOSED)

    async def test_find_state_for_stage(self, mappings):
        await mappings.upsert(OWNER, BusinessState.APPROVED, "pipe-1", "stage-won")

        assert await mappings.find_state_for_stage(OWNER, "stage-won") == BusinessState.APPROVED
        assert await mappings.find_state_for_stage(OWNER, "stage-unknown") is None
        assert await mappings.find_state_for_stage("owner-2", "stage-won") is None


# ── SyncConfigStore ──────────────────────────────────────────────────────────


class TestSyncConfigStore:
    async def test_missing_owner_gets_disabled_defaults(self, configs):
        config = await configs.get("new-owner")

        assert config.api_key_set is False
        assert config.automatic_enabled is False
        assert config.polling_interval_minutes == 30

    async def test_save_round_trips(self, configs):
        await configs.save(
            OWNER,
            SyncConfig(api_key_set=True, auto_sync=True, bidirectional_sync=True,
                       polling_interval_minutes=15),
        )
        config = await configs.get(OWNER)

        assert config.automatic_enabled is True
        assert config.polling_enabled is True
        assert config.polling_interval_minutes == 15

    async def test_list_automatic_owners(self, configs):
        await configs.save("owner-b", SyncConfig(api_key_set=True, auto_sync=True))
        await configs.save("owner-a", SyncConfig(api_key_set=True, auto_sync=True))
        await configs.save("no-key", SyncConfig(api_key_set=False, auto_sync=True))
        await configs.save("manual", SyncConfig(api_key_set=True, auto_sync=False))

        assert await configs.list_automatic_owners() == ["owner-a", "owner-b"]

    def test_polling_requires_automatic_sync(self):
        config = SyncConfig(api_key_set=True, auto_sync=False, bidirectional_sync=True)
        assert config.polling_enabled is False


# ── ConflictStore ────────────────────────────────────────────────────────────


class TestConflictStore:
    async def _pending(self, conflict_store, record, remote_state="approved"):
        return await conflict_store.upsert_pending(
            record.id,
            ConflictType.STATE,
            local_state="sent",
            remote_state=remote_state,
            local_amount=1000.0,
            remote_amount=1000.0,
        )

    async def test_upsert_pending_keeps_one_pending_row_per_record(
        self, conflict_store, record
    ):
        """A second detection overwrites the pending conflict."""
        first = await self._pending(conflict_store, record, "approved")
        second = await self._pending(conflict_store, record, "closed")

        assert first.id == second.id
        pending = await conflict_store.list_pending(OWNER)
        assert len(pending) == 1
        assert pending[0].remote_state == "closed"

    async def test_upsert_pending_unknown_record_raises(self, conflict_store):
        with pytest.raises(InvalidReference):
            await conflict_store.upsert_pending(
                "00000000-0000-0000-0000-000000000000",
                ConflictType.AMOUNT,
                local_state=None,
                remote_state=None,
                local_amount=1.0,
                remote_amount=500.0,
            )

    async def test_mark_resolved_settles_conflict(self, conflict_store, record):
        conflict = await self._pending(conflict_store, record)

        resolved = await conflict_store.mark_resolved(
            conflict.id, ResolutionStrategy.USE_REMOTE, "alice"
        )

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution_strategy == ResolutionStrategy.USE_REMOTE
        assert resolved.resolved_by == "alice"
        assert resolved.resolved_at is not None
        assert await conflict_store.pending_for_record(record.id) is None

    async def test_mark_resolved_twice_raises(self, conflict_store, record):
        conflict = await self._pending(conflict_store, record)
        await conflict_store.mark_resolved(conflict.id, ResolutionStrategy.USE_LOCAL, "a")

        with pytest.raises(ConflictNotFound):
            await conflict_store.mark_resolved(conflict.id, ResolutionStrategy.USE_LOCAL, "b")

    async def test_new_pending_allowed_after_resolution(self, conflict_store, record):
        first = await self._pending(conflict_store, record)
        await conflict_store.mark_resolved(first.id, ResolutionStrategy.USE_LOCAL, "a")

        second = await self._pending(conflict_store, record)

        assert second.id != first.id
        assert second.status == ConflictStatus.PENDING

    async def test_get_for_owner_hides_other_owners(self, conflict_store, record):
        conflict = await self._pending(conflict_store, record)

        assert await conflict_store.get_for_owner(OWNER, conflict.id) is not None
        assert await conflict_store.get_for_owner("owner-2", conflict.id) is None
        assert await conflict_store.get_for_owner(OWNER, "garbage") is None


# ── SyncLogStore ─────────────────────────────────────────────────────────────


class TestSyncLogStore:
    async def _append(self, sync_log, owner_id=OWNER, record_id="rec-1", **fields):
        return await sync_log.append(
            owner_id=owner_id,
            record_id=record_id,
            operation_type=fields.pop("operation_type", SyncLogOperation.APP_TO_REMOTE),
            direction=fields.pop("direction", SyncDirection.OUTBOUND),
            success=fields.pop("success", True),
            **fields,
        )

    async def test_append_stores_every_field(self, sync_log):
        entry = await self._append(
            sync_log,
            remote_deal_id="deal-1",
            old_state="sent",
            new_state="approved",
            old_amount=1000.0,
            new_amount=1200.0,
            remote_stage_id="stage-approved",
            force_sync=True,
        )

        [stored] = await sync_log.list_recent(OWNER)
        assert stored == entry
        assert stored.created_at.tzinfo is not None
        assert stored.force_sync is True

    async def test_list_recent_is_newest_first_and_limited(self, sync_log):
        for record_id in ("rec-1", "rec-2", "rec-3"):
            await self._append(sync_log, record_id=record_id)
            await asyncio.sleep(0.002)

        entries = await sync_log.list_recent(OWNER, limit=2)

        assert [e.owner_record_id for e in entries] == ["rec-3", "rec-2"]

    async def test_list_recent_is_scoped_to_owner(self, sync_log):
        await self._append(sync_log, owner_id="owner-2")
        failed = await self._append(sync_log, success=False, error_message="boom")

        assert await sync_log.list_recent(OWNER) == [failed]
        assert (await sync_log.list_recent(OWNER))[0].error_message == "boom"
