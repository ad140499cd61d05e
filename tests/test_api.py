"""Integration tests for the sync and health API endpoints.

Uses the real SyncService over the SQLite test database (FakeAdapter as
the remote) and httpx AsyncClient against the ASGI app. The lifespan is
not run; the service is placed on app.state directly.
"""

from __future__ import annotations

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.dealsync.api.v1 import health
from src.dealsync.main import create_app
from src.dealsync.sync.scheduler import drain_job_id, poll_job_id
from src.dealsync.sync.schemas import DealSnapshot

OWNER = "owner-1"
BASE = f"/api/v1/sync/{OWNER}"
MISSING_ID = "00000000-0000-0000-0000-000000000000"


@pytest_asyncio.fixture
async def app(service):
    application = create_app(service=service)
    application.state.sync_service = service
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    async def test_liveness(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_readiness_with_database_and_scheduler(
        self, client, session_factory, monkeypatch
    ):
        monkeypatch.setattr(health, "get_engine", lambda: session_factory.kw["bind"])

        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": "ok", "redis": "unused", "scheduler": "ok"}

    async def test_readiness_degraded_without_sync_service(
        self, app, client, session_factory, monkeypatch
    ):
        monkeypatch.setattr(health, "get_engine", lambda: session_factory.kw["bind"])
        app.state.sync_service = None

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["scheduler"] == "not_initialized"

    async def test_subscription_debug_view(self, client, service, enable_sync):
        await enable_sync()
        await service.activate_owner(OWNER)

        response = await client.get("/health/subscriptions")

        assert response.json() == {
            "active_channels": [OWNER],
            "callback_counts": {OWNER: 1},
        }

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


# ── Sync data ────────────────────────────────────────────────────────────────


class TestSyncData:
    async def test_empty_owner_view(self, client):
        response = await client.get(BASE)

        assert response.status_code == 200
        body = response.json()
        assert body["queue"] == []
        assert body["conflicts"] == []
        assert body["stats"]["total_pending"] == 0

    async def test_engine_not_initialized_returns_503(self, app, client):
        app.state.sync_service = None

        response = await client.get(BASE)

        assert response.status_code == 503
        assert "not initialized" in response.json()["detail"]


# ── Triggers ─────────────────────────────────────────────────────────────────


class TestTrigger:
    async def test_trigger_requires_configuration(self, client, record):
        response = await client.post(f"{BASE}/trigger", json={"record_id": record.id})
        assert response.status_code == 409

    async def test_trigger_unknown_record_is_404(self, client, enable_sync):
        await enable_sync()

        response = await client.post(f"{BASE}/trigger", json={"record_id": MISSING_ID})

        assert response.status_code == 404

    async def test_trigger_accepted(self, client, record, enable_sync):
        await enable_sync(auto_sync=False)

        response = await client.post(
            f"{BASE}/trigger", json={"record_id": record.id, "priority": 2}
        )

        assert response.status_code == 202
        body = response.json()
        assert body["priority"] == 2
        assert body["status"] == "pending"
        assert body["owner_record_id"] == record.id

    async def test_priority_out_of_range_rejected(self, client, record, enable_sync):
        await enable_sync()

        response = await client.post(
            f"{BASE}/trigger", json={"record_id": record.id, "priority": 0}
        )

        assert response.status_code == 422

    async def test_resolution_operation_cannot_be_triggered(self, client, record, enable_sync):
        await enable_sync()

        response = await client.post(
            f"{BASE}/trigger",
            json={"record_id": record.id, "operation": "resolve-conflict-use-local"},
        )

        assert response.status_code == 422

    async def test_process_drains_now(self, client, adapter, record, enable_sync):
        await enable_sync(auto_sync=False)
        await client.post(f"{BASE}/trigger", json={"record_id": record.id})

        response = await client.post(f"{BASE}/process")

        assert response.status_code == 200
        assert response.json()["completed"] == 1
        assert len(adapter.calls) == 1

    async def test_push_and_pull_priorities(self, client, record, enable_sync):
        await enable_sync(auto_sync=False)

        push = await client.post(f"{BASE}/records/{record.id}/push", json={"force_amount": True})
        pull = await client.post(f"{BASE}/records/{record.id}/pull")

        assert push.status_code == pull.status_code == 202
        assert push.json()["priority"] == 3
        assert push.json()["operation_type"] == "force-amount-update"
        assert pull.json()["priority"] == 2

    async def test_amounts(self, client, record, enable_sync):
        await enable_sync(auto_sync=False)

        response = await client.post(f"{BASE}/amounts")

        assert response.status_code == 202
        assert len(response.json()["enqueued"]) == 1


# ── Conflicts ────────────────────────────────────────────────────────────────


class TestConflicts:
    async def test_resolve_unknown_conflict_is_404(self, client):
        response = await client.post(
            f"{BASE}/conflicts/{MISSING_ID}/resolve",
            json={"strategy": "use-remote", "resolved_by": "alice"},
        )
        assert response.status_code == 404

    async def test_resolve_enqueues_priority_one(self, client, service, record, enable_sync):
        await enable_sync(auto_sync=False)
        conflict = await service.resolver.detect(
            record.id,
            record.snapshot(),
            DealSnapshot(record_id=record.id, state="approved", amount=1000.0),
        )

        listed = await client.get(f"{BASE}/conflicts")
        response = await client.post(
            f"{BASE}/conflicts/{conflict.id}/resolve",
            json={"strategy": "use-remote", "resolved_by": "alice"},
        )

        assert [c["id"] for c in listed.json()] == [conflict.id]
        assert response.status_code == 202
        assert response.json()["priority"] == 1
        assert response.json()["operation_type"] == "resolve-conflict-use-remote"
        assert (await client.get(f"{BASE}/conflicts")).json() == []

    async def test_resolution_shows_in_sync_log(self, client, service, record, enable_sync):
        await enable_sync(auto_sync=False)
        conflict = await service.resolver.detect(
            record.id,
            record.snapshot(),
            DealSnapshot(record_id=record.id, state="approved", amount=1000.0),
        )
        await client.post(
            f"{BASE}/conflicts/{conflict.id}/resolve",
            json={"strategy": "use-local", "resolved_by": "alice"},
        )

        response = await client.get(f"{BASE}/logs", params={"limit": 10})

        assert response.status_code == 200
        [entry] = response.json()
        assert entry["operation_type"] == "conflict_resolution"
        assert entry["direction"] == "resolution"
        assert entry["owner_record_id"] == record.id

    async def test_log_limit_is_bounded(self, client):
        response = await client.get(f"{BASE}/logs", params={"limit": 0})
        assert response.status_code == 422

    async def test_resolver_name_required(self, client):
        response = await client.post(
            f"{BASE}/conflicts/{MISSING_ID}/resolve",
            json={"strategy": "use-local", "resolved_by": ""},
        )
        assert response.status_code == 422


# ── Configuration & activation ───────────────────────────────────────────────


class TestConfiguration:
    async def test_put_config_applies_jobs(self, client, service):
        response = await client.put(
            f"{BASE}/config",
            json={
                "api_key_set": True,
                "auto_sync": True,
                "bidirectional_sync": True,
                "polling_interval_minutes": 15,
            },
        )

        assert response.status_code == 200
        jobs = response.json()["jobs"]
        assert drain_job_id(OWNER) in jobs
        assert poll_job_id(OWNER) in jobs
        config = (await client.get(f"{BASE}/config")).json()
        assert config["polling_interval_minutes"] == 15
        assert service.subscriptions.is_subscribed(OWNER)

    async def test_activate_and_deactivate(self, client, service, enable_sync):
        await enable_sync()

        activated = await client.post(f"{BASE}/activate")
        deactivated = await client.post(f"{BASE}/deactivate")

        assert activated.json() == {"owner_id": OWNER, "jobs": [drain_job_id(OWNER)]}
        assert deactivated.status_code == 204
        assert service.scheduler.job_ids(OWNER) == []

    async def test_retry_failed(self, client, service, record, enable_sync):
        await enable_sync(auto_sync=False)
        queued = await client.post(f"{BASE}/trigger", json={"record_id": record.id})
        await service.queue.mark_result(queued.json()["id"], False, "boom")

        response = await client.post(f"{BASE}/retry-failed")

        assert response.json() == {"reset": 1}
