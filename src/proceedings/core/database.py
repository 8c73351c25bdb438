"""Async SQLAlchemy engine, declarative base and session factories.

Provides:
- Base: Declarative base for all transcript tables
- create_engine_from_settings(): Build the AsyncEngine for DATABASE_URL
- make_session_factory(): Async-generator session factory consumed by repositories
- create_tables() / dispose_engine(): Schema bootstrap and shutdown

There is no module-level engine: the store is initialized once at process
start (see ``init_store`` in the transcripts repository) and handed to the
pipeline as a dependency.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.proceedings.config import Settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]


# ── Declarative Base ────────────────────────────────────────────────────────

metadata = MetaData()


class Base(DeclarativeBase):
    """Base class for transcript persistence models."""

    metadata = metadata


# ── Engine & Sessions ───────────────────────────────────────────────────────


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    kwargs: dict = {"echo": False}
    if settings.DATABASE_URL.startswith("postgresql"):
        kwargs.update(pool_size=20, max_overflow=10)
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Return a callable that yields AsyncSession instances bound to engine."""

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session


async def create_tables(engine: AsyncEngine) -> None:
    """Create transcript tables if they don't exist."""
    # Import for side effect: registers models on Base.metadata
    from src.proceedings.transcripts import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    """Dispose of the engine and close all connections."""
    await engine.dispose()
