"""Async database engine and session management.

The engine is created lazily from ``settings.database_url`` so importing
this module never opens a connection. Pool sizing applies to server
databases only; SQLite (used in tests) gets the driver defaults.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from concierge.config import settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    url = url or settings.database_url
    kwargs: dict = {
        "echo": settings.database_echo if echo is None else echo,
        "pool_pre_ping": True,
    }
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=20, max_overflow=20, pool_timeout=30, pool_recycle=3600)
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def db_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager for a unit of work: commits on success, rolls back on error.

    Usage:
        async with db_session() as db:
            await db.execute(...)
    """
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create tables directly from the models.

    In production, use Alembic migrations. This is for dev/test only.
    """
    from concierge.db.models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_created", url=engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    """Dispose of the shared engine's connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
