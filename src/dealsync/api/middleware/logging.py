"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- owner_id (from the path, for sync routes)
- request_id (UUID generated per request, added to response as X-Request-ID)
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)


def _owner_from_path(path: str) -> str | None:
    # /api/v1/sync/{owner_id}/...
    parts = path.strip("/").split("/")
    if len(parts) >= 4 and parts[:3] == ["api", "v1", "sync"]:
        return parts[3]
    return None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every request with owner context and timing.

    Reuses an incoming X-Request-ID or generates one, and includes it in
    both the log entry and the response headers.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        owner_id = _owner_from_path(request.url.path)
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.monotonic() - start_time) * 1000, 2)
            logger.error(
                "request_error",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
                owner_id=owner_id,
                request_id=request_id,
            )
            raise

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id

        log_method = logger.info if response.status_code < 400 else logger.warning
        if response.status_code >= 500:
            log_method = logger.error

        log_method(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            owner_id=owner_id,
            request_id=request_id,
        )

        return response
