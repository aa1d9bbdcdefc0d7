"""Async SQLAlchemy engine and session factory for the shared registry.

Engine type is determined by the database URL scheme:
  - ``postgres://`` / ``postgresql://`` -> rewritten for asyncpg, small pool
  - ``sqlite+aiosqlite://``              -> single-connection SQLite (tests, local)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fleet_core.executor.endpoint import normalize_endpoint, to_async_engine_args

logger = logging.getLogger(__name__)

# Cache of async_sessionmaker instances keyed by engine identity.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    *,
    connect_timeout: int = 5,
    statement_timeout_ms: int = 60_000,
) -> AsyncEngine:
    """Create an async engine for the shared registry database.

    PostgreSQL URLs get the same connect and statement timeouts as migration
    targets.  The pool is kept small: the fleet tool holds at most one
    registry connection at a time.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)

    url, connect_args = to_async_engine_args(
        normalize_endpoint(
            database_url,
            connect_timeout=connect_timeout,
            statement_timeout_ms=statement_timeout_ms,
        )
    )
    engine = create_async_engine(
        url,
        pool_size=1,
        max_overflow=1,
        pool_pre_ping=True,
        pool_timeout=10,
        echo=False,
        connect_args=connect_args,
    )
    logger.info("Created registry engine")
    return engine


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.
    """
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def dispose_engine(engine: AsyncEngine) -> None:
    """Dispose *engine* and forget its cached session factory."""
    _session_factories.pop(id(engine), None)
    await engine.dispose()
