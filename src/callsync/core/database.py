"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all tables
- get_session(): Async generator yielding an AsyncSession
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.callsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


class Base(DeclarativeBase):
    """Base class for all persistence models."""


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def init_db() -> None:
    """Create tables that don't exist yet (development bootstrap)."""
    # Import models so their tables are registered on Base.metadata.
    from src.callsync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
