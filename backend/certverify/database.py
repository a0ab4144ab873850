"""
CertVerify Backend — Database Engine & Sessions
=================================================

What:  Async SQLAlchemy engine and session factory construction.
Why:   Centralizes all database connection logic in one place.
How:   create_engine_from_settings() builds a pooled async engine;
       create_session_factory() wraps it. Both are called by the service
       container; nothing here runs at import time.

Connection Pooling Strategy:
    pool_size=20:      Persistent connections for normal load
    max_overflow=10:   Temporary connections for traffic spikes
    pool_pre_ping:     Validates connections before use
    pool_recycle=3600: Recycles connections every hour

    SQLite (used by the test-suite through aiosqlite) does not take pool
    sizing arguments, so they are only applied to server databases.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from certverify.config import Settings


class Base(DeclarativeBase):
    """Base class for all ORM models; shares one metadata object."""


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    kwargs = {"echo": settings.log_level == "DEBUG"}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows are converted to schemas after commit
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Creates missing tables from ORM metadata (DATABASE_AUTO_CREATE / tests)."""
    # Import registers the models on Base.metadata
    from certverify import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    """Closes all pooled connections; called during application shutdown."""
    await engine.dispose()
