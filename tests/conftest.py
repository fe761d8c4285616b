"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                        # Run all tests
    pytest tests/test_invitations.py -v  # Run specific test file

Services run against an in-memory SQLite database (aiosqlite) created
fresh for every test.
"""

from __future__ import annotations

import os

# Must be set before allay.config is imported anywhere
os.environ.setdefault("ALLAY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ALLAY_JWT_SECRET", "test-secret-with-enough-length-for-hs256")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from allay.db.models import Base
from allay.realtime.bus import TenantEventBus


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def bus() -> AsyncGenerator[TenantEventBus, None]:
    """Event bus with a short heartbeat; shut down after each test."""
    bus = TenantEventBus(heartbeat_interval=0.05, queue_max=16)
    yield bus
    await bus.shutdown()
