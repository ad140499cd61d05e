"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, a
lifespan that builds and starts the sync engine, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealsync.config import get_settings
from src.dealsync.core.database import close_db, get_session_factory, init_db
from src.dealsync.core.logging import configure_structlog
from src.dealsync.core.monitoring import MetricsMiddleware, get_metrics_response
from src.dealsync.core.redis import close_redis
from src.dealsync.api.middleware.logging import LoggingMiddleware
from src.dealsync.api.v1.router import router as v1_router
from src.dealsync.sync.service import SyncService, build_sync_service

log = structlog.get_logger(__name__)


def create_app(service: SyncService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Pre-built SyncService. When given, the lifespan neither
            creates tables nor builds its own engine (tests inject one).
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the sync engine and restore enabled owners; stop it on shutdown."""
        configure_structlog()

        sync_service = service
        if sync_service is None:
            await init_db()
            sync_service = build_sync_service(get_session_factory())
        sync_service.start()
        app.state.sync_service = sync_service
        restored = await sync_service.activate_enabled_owners()
        log.info(
            "sync_engine.started",
            environment=settings.ENVIRONMENT.value,
            owners=len(restored),
        )

        yield

        try:
            await sync_service.shutdown()
        except Exception:
            log.warning("sync_engine.shutdown_failed", exc_info=True)
        app.state.sync_service = None

        if service is None:
            await close_db()
            await close_redis()
        log.info("sync_engine.stopped")

    app = FastAPI(
        title="DealSync API",
        version="0.1.0",
        description="Bidirectional sync between business records and a remote CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app
