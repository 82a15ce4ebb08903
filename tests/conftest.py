"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from queuepump.config import PumpConfig, Settings
from queuepump.db.connection import create_session_factory
from queuepump.db.models import Base
from queuepump.storage import InMemoryBlobStore, InMemoryQueueClient

# Integration tests only run when a test database is provided
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def queue() -> InMemoryQueueClient:
    """Create an empty in-memory queue."""
    return InMemoryQueueClient(name="test-queue")


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    """Create an empty in-memory blob store."""
    return InMemoryBlobStore(container="test-overflow")


@pytest.fixture
def fast_config() -> PumpConfig:
    """Pump configuration with short delays so tests finish quickly."""
    return PumpConfig(
        queue_name="test-queue",
        concurrency=1,
        max_messages_per_fetch=10,
        visibility_timeout_seconds=0.05,
        max_dequeue_attempts=3,
        empty_backoff_base_seconds=0.005,
        empty_backoff_max_seconds=0.02,
        metrics_interval_seconds=0.01,
    )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL or "postgresql+asyncpg://localhost/unused",
        queue_name="settings-queue",
        log_level="DEBUG",
        log_format="console",
        pump_concurrency=4,
        pump_max_dequeue_attempts=5,
        pump_visibility_timeout_seconds=30,
        overflow_container="settings-overflow",
        overflow_max_inline_bytes=256,
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """Session factory on a clean test database."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, pool_pre_ping=True)

    async with engine.begin() as conn:
        await conn.execute(sa.text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(sa.text("TRUNCATE TABLE queue_messages, overflow_blobs"))

    yield create_session_factory(engine)

    await engine.dispose()
