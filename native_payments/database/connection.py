"""
Database engine, sessions and startup helpers.

Production runs on PostgreSQL through asyncpg; the test suite points
``DATABASE_URL`` at an aiosqlite file, which does not take pool options.
"""
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from native_payments.config import get_settings
from native_payments.database.models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        options: Dict[str, Any] = {"echo": settings.database_echo}
        if not settings.database_url.startswith("sqlite"):
            options.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,
                pool_recycle=3600,
            )
        _engine = create_async_engine(settings.database_url, **options)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Return the session factory.

    Sessions keep loaded attributes after commit: services hand committed
    rows straight to the snapshot helpers that build API responses.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit when the block succeeds, roll back when it raises.

    Example:
        async with session_scope() as db:
            await analytics.snapshot_day(db)
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency wrapping each request in :func:`session_scope`.

    Services commit their own state transitions before calling providers;
    this final commit covers the rows written after the last of those.
    """
    async with session_scope() as session:
        yield session


async def ping_database() -> float:
    """
    Run a trivial query.

    Returns:
        float: Round trip in milliseconds
    """
    start = time.perf_counter()
    async with get_session_factory()() as session:
        (await session.execute(text("SELECT 1"))).scalar()
    return (time.perf_counter() - start) * 1000


async def init_db() -> None:
    """
    Create any missing tables.

    Deployments run the alembic migrations; this covers local runs and tests.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def prepare_database(registry: Any) -> None:
    """
    Create missing tables and record the configured providers.

    Args:
        registry: :class:`~native_payments.integrations.registry.ProviderRegistry`
            whose adapters are written to ``payment_providers``
    """
    await init_db()
    async with session_scope() as db:
        await registry.sync_providers(db)
    logger.info("database_prepared", providers=[a.provider_id for a in registry.available()])


async def close_db() -> None:
    """Dispose of the engine; the next call to :func:`get_engine` starts over."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
