"""Async SQLAlchemy engine, declarative base, and session factories.

Provides:
- Base: Declarative base for every sync table
- get_engine(): Lazy engine singleton built from settings
- get_session_factory(): async_sessionmaker injected into the stores
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.dealsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(pool_size=20, max_overflow=10)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for sync engine models."""


# ── Session Factories ───────────────────────────────────────────────────────


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine`` (objects survive commit)."""
    return async_sessionmaker(engine, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory for the global engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all sync tables if they don't exist."""
    # Register models on the metadata before create_all
    import src.dealsync.sync.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
