"""
Database engines and sessions.

Writes go to the primary (DATABASE_URL); verification and health reads go to
DATABASE_READ_URL when a replica is configured, otherwise they share the
primary's engine. Sessions never expire objects on commit, so results built
from ORM rows stay readable after the ledger commits.
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

from stampledger.config import settings
from stampledger.observability.tracing import instrument_sqlalchemy

_write_engine: AsyncEngine | None = None
_read_engine: AsyncEngine | None = None

_write_session_factory: async_sessionmaker[AsyncSession] | None = None
_read_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **overrides: Any) -> AsyncEngine:
    """
    Create an async engine for url.

    Postgres gets the configured pool sizing. SQLite takes no pool sizing and
    needs foreign keys switched on per connection (anchors reference
    registrations).
    """
    options: dict[str, Any] = {"echo": settings.log_level.upper() == "DEBUG"}
    is_sqlite = url.startswith("sqlite")
    if not is_sqlite:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
        )
    options.update(overrides)

    engine = create_async_engine(url, **options)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    instrument_sqlalchemy(engine)
    return engine


def get_write_engine() -> AsyncEngine:
    global _write_engine
    if _write_engine is None:
        _write_engine = build_engine(settings.database_url)
    return _write_engine


def get_read_engine() -> AsyncEngine:
    """Replica engine, or the primary's when no replica is configured."""
    global _read_engine
    if settings.read_database_url == settings.database_url:
        return get_write_engine()
    if _read_engine is None:
        _read_engine = build_engine(settings.read_database_url)
    return _read_engine


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    global _write_session_factory
    if _write_session_factory is None:
        _write_session_factory = async_sessionmaker(
            get_write_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _write_session_factory


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    global _read_session_factory
    if _read_session_factory is None:
        _read_session_factory = async_sessionmaker(
            get_read_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _read_session_factory


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Write session outside a request (maintenance scripts).

    Usage:
        async with get_write_session() as session:
            await BalanceReconciler(session).reconcile_all()
    """
    async with get_write_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for the primary.

    Services commit their own units of work; anything left open when the
    request fails is rolled back.
    """
    async with get_write_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only queries (replica when configured)."""
    async with get_read_session_factory()() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    global _write_engine, _read_engine, _write_session_factory, _read_session_factory

    for engine in (_read_engine, _write_engine):
        if engine is not None:
            await engine.dispose()

    _write_engine = _read_engine = None
    _write_session_factory = _read_session_factory = None
