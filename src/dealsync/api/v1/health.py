"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready) and a debug view
of the open change channels (/health/subscriptions).
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dealsync.config import BrokerBackend, get_settings
from src.dealsync.core.database import get_engine
from src.dealsync.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and (when used as broker) Redis connectivity."""
    settings = get_settings()
    checks: dict = {"database": "ok", "redis": "unused", "scheduler": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if settings.SYNC_BROKER == BrokerBackend.redis:
        try:
            pong = await get_redis_pool().ping()
            checks["redis"] = "ok" if pong else "error"
            if not pong:
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        checks["scheduler"] = "not_initialized"
    elif not service.scheduler.running:
        checks["scheduler"] = "stopped"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: DB, Redis (if it is the broker) and the scheduler.

    Returns 200 if all pass, 503 if any critical dependency fails.
    """
    checks = await _check_dependencies(request)
    all_healthy = (
        checks.get("database") == "ok"
        and checks.get("redis") in ("ok", "unused")
        and checks.get("scheduler") == "ok"
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )


@router.get("/health/subscriptions")
async def subscription_check(request: Request):
    """Open change channels and callback counts per owner."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Sync engine not initialized"},
        )
    return service.subscriptions.debug_info()
