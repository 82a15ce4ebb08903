"""
Database connection management for the SQL queue and blob store.

Adapters take an explicit session factory; when they are given none they use
the process-wide one set up by init_db().
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from queuepump.config import Settings, get_settings
from queuepump.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async engine from settings.

    Args:
        settings: Settings to use; defaults to the cached environment settings.

    Returns:
        AsyncEngine: A new engine, traced when otel_instrument_sqlalchemy is set.
    """
    settings = settings or get_settings()
    engine = create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )
    if settings.otel_instrument_sqlalchemy:
        instrument_sqlalchemy(engine.sync_engine)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


async def init_db() -> None:
    """
    Set up the process-wide session factory.
    Must be called before adapters without an explicit factory are used.
    """
    global _session_factory
    _session_factory = create_session_factory(get_engine())
    logger.info("Database connection initialized")


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """
    One transaction: commits on success and rolls back on error.

    Args:
        session_factory: Factory to use instead of the one set up by init_db().

    Yields:
        AsyncSession: An async database session.

    Raises:
        RuntimeError: If no factory is given and init_db() was not called.
    """
    factory = session_factory or _session_factory
    if factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
