"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all integrator tables
- get_engine(): Lazily created engine for the configured DATABASE_URL
- make_session_factory(): Session factory callable consumed by SyncRepository
- init_db() / close_db(): Table creation for dev/tests and engine disposal
- check_connection(): SELECT 1 probe used before each pipeline run
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.kaspi_amo.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=5, pool_pre_ping=True)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for integrator state tables."""

    metadata = MetaData(naming_convention=naming_convention)


# ── Session Factory ─────────────────────────────────────────────────────────

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session_factory callable bound to ``engine``.

    The returned callable is an async generator function yielding one
    AsyncSession, matching the ``async for session in factory()`` pattern
    the repository uses.
    """

    async def _session_factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session_factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist (dev and tests; prod uses Alembic)."""
    # Import models so they register on Base.metadata
    from src.kaspi_amo.sync import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_connection(engine: AsyncEngine | None = None) -> bool:
    """Return True if the database answers a trivial query."""
    engine = engine or get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
