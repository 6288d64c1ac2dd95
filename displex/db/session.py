"""
Database Session Management - Async SQLAlchemy session factory.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for small installs and
tests. SQLite connections get foreign keys switched on so identity deletes
cascade to tokens and linked accounts.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from displex.config import settings
from displex.observability.tracing import instrument_sqlalchemy

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``database_url`` with per-backend setup."""
    if database_url.startswith("sqlite"):
        # In-memory databases only exist per connection
        pool_kwargs: dict[str, Any] = {}
        if ":memory:" in database_url or database_url.endswith("://"):
            pool_kwargs["poolclass"] = StaticPool
        engine = create_async_engine(database_url, echo=echo, **pool_kwargs)
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        pool_pre_ping=True,
        echo=echo,
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, echo=settings.database_echo)
        instrument_sqlalchemy(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session.

    Usage:
        async with get_session() as session:
            await session.execute(...)
            await session.commit()
    """
    factory = get_session_factory()
    async with factory() as session:
        yield session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a database session.

    Usage:
        @router.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    factory = get_session_factory()
    async with factory() as session:
        yield session


async def close_engine() -> None:
    """Dispose the engine (for graceful shutdown)."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
