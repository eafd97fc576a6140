"""Async database engine and session management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from tripcomposer.config import get_settings
from tripcomposer.logging_config import get_logger

logger = get_logger(__name__)

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """SQLAlchemy declarative base with naming conventions."""

    metadata = MetaData(naming_convention=convention)


_engine = None
_session_factory = None


def get_engine():
    """Return the singleton async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=False,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the singleton session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(session: Optional[AsyncSession] = None) -> AsyncGenerator[AsyncSession, None]:
    """Yield the caller's session if one was injected, else a fresh transactional scope.

    An injected session is flushed but never committed here; its owner
    decides when the transaction ends.
    """
    if session is not None:
        yield session
        await session.flush()
        return
    async with get_session() as own:
        yield own


async def init_db() -> None:
    """Create all tables."""
    # Import all models so Base.metadata knows about them
    import tripcomposer.modules.bookings.models  # noqa: F401
    import tripcomposer.modules.disputes.models  # noqa: F401
    import tripcomposer.modules.identity.models  # noqa: F401
    import tripcomposer.modules.matching.models  # noqa: F401
    import tripcomposer.modules.requests.models  # noqa: F401
    import tripcomposer.modules.trust.models  # noqa: F401
    import tripcomposer.modules.wishlist.models  # noqa: F401
    import tripcomposer.modules.workload.models  # noqa: F401
    import tripcomposer.security.audit  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized")


async def close_db() -> None:
    """Dispose of the engine connection pool."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    logger.info("database_closed")
