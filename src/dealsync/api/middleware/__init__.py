"""API middleware package."""

from src.dealsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
