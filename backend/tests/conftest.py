"""
Pytest Configuration and Shared Fixtures

This module provides common fixtures and configuration for all tests.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))


# =============================================================================
# CLOCK FIXTURES
# =============================================================================


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic, manually advanced time source"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock pinned to FIXED_NOW"""
    return FakeClock()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest_asyncio.fixture
async def db_engine():
    """
    In-memory SQLite engine with the privacy tables created.

    StaticPool keeps the single in-memory connection alive for the test.
    """
    from config.database import Base
    import compliance.repositories  # noqa: F401  (registers the ORM tables)

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Real async session on the in-memory database"""
    async with session_factory() as session:
        yield session


# =============================================================================
# MOCK REDIS FIXTURE
# =============================================================================


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing"""
    redis = AsyncMock()

    redis.get.return_value = None
    redis.setex.return_value = True
    redis.ping.return_value = True

    return redis
