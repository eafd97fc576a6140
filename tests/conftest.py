"""Shared test fixtures and configuration."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("TRIPCOMPOSER_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TRIPCOMPOSER_SECRET_KEY", "test-secret-key-do-not-use")
os.environ.setdefault("TRIPCOMPOSER_LOG_LEVEL", "WARNING")
os.environ.setdefault("EVENT_BUS_BACKEND", "memory")

from tripcomposer.config import Settings
from tripcomposer.database import Base
from tripcomposer.events import EventBus, EventEnvelope, set_event_bus

# Register every table on Base.metadata.
import tripcomposer.modules.bookings.models  # noqa: F401,E402
import tripcomposer.modules.disputes.models  # noqa: F401,E402
import tripcomposer.modules.identity.models  # noqa: F401,E402
import tripcomposer.modules.matching.models  # noqa: F401,E402
import tripcomposer.modules.requests.models  # noqa: F401,E402
import tripcomposer.modules.trust.models  # noqa: F401,E402
import tripcomposer.modules.wishlist.models  # noqa: F401,E402
import tripcomposer.modules.workload.models  # noqa: F401,E402
import tripcomposer.security.audit  # noqa: F401,E402


@pytest.fixture
def settings() -> Settings:
    """Return test settings."""
    return Settings(
        tripcomposer_env="test",
        database_url="sqlite+aiosqlite:///:memory:",
        tripcomposer_secret_key="test-secret-key",
        tripcomposer_log_level="WARNING",
    )


class EventRecorder:
    """Collects every envelope published on a bus."""

    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    async def __call__(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def of_type(self, event_type: str) -> list[EventEnvelope]:
        return [e for e in self.events if e.event_type == str(event_type)]

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


@pytest.fixture(autouse=True)
def event_bus() -> EventBus:
    """Install a fresh process-wide event bus for every test."""
    bus = EventBus(handler_timeout=5)
    set_event_bus(bus)
    yield bus
    set_event_bus(None)


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    rec = EventRecorder()
    event_bus.subscribe_all(rec, priority=1000)
    return rec


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean in-memory database session for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


