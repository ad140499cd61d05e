"""Prometheus metrics for the HTTP surface and the sync engine.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_remote_call(): Context manager for remote CRM call metrics
- Sync counters/histograms used by the processor and conflict resolver
- get_metrics_response(): FastAPI route handler for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "dealsync_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "dealsync_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_items_processed_total = Counter(
    "sync_items_processed_total",
    "Queue items processed, by operation and outcome",
    ["operation", "outcome"],
)

sync_drain_duration_seconds = Histogram(
    "sync_drain_duration_seconds",
    "Duration of one bounded queue drain",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

sync_drains_skipped_total = Counter(
    "sync_drains_skipped_total",
    "Drains skipped, by reason",
    ["reason"],
)

sync_conflicts_detected_total = Counter(
    "sync_conflicts_detected_total",
    "Conflicts recorded, by conflict type",
    ["conflict_type"],
)

sync_remote_requests_total = Counter(
    "sync_remote_requests_total",
    "Requests sent to the CRM integration function",
    ["action", "status"],
)

sync_remote_request_duration_seconds = Histogram(
    "sync_remote_request_duration_seconds",
    "CRM integration request duration in seconds",
    ["action"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

sync_active_channels = Gauge(
    "sync_active_channels",
    "Open change-notification channels",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/route.

    Uses the matched route pattern so owner ids in the path do not blow up
    label cardinality. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Remote Call Helper ───────────────────────────────────────────────────────


@asynccontextmanager
async def track_remote_call(action: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one CRM integration request.

    Usage:
        async with track_remote_call("upsert_deal") as tracker:
            response = await client.post(...)
            tracker["status"] = "rejected"  # optional override

    Records duration and a success/error count (``error`` when the body
    raises, or whatever the caller stored in ``tracker["status"]``).
    """
    tracker: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        sync_remote_requests_total.labels(action=action, status=tracker["status"]).inc()
        sync_remote_request_duration_seconds.labels(action=action).observe(
            time.perf_counter() - start_time
        )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
