"""Async engine and session factory setup."""

from __future__ import annotations

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fingerprint_risk.storage.models import Base

logger = logging.getLogger(__name__)


def to_async_url(url: str) -> str:
    """Return the async driver form of a database URL.

    Plain ``postgresql://`` URLs are mapped to asyncpg and plain
    ``sqlite://`` URLs to aiosqlite; URLs naming a driver are unchanged.
    """
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    return url


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests correctly.

    The sqlite3 driver otherwise defers BEGIN to the first DML statement,
    and releasing a savepoint opened outside a transaction commits it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given database URL.

    Args:
        url: Database connection string.
        echo: Log every SQL statement.

    Returns:
        Configured AsyncEngine.
    """
    async_url = to_async_url(url)
    if async_url.startswith("sqlite"):
        engine = create_async_engine(async_url, echo=echo)
        _enable_sqlite_savepoints(engine)
        return engine
    return create_async_engine(
        async_url,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized (%d tables)", len(Base.metadata.tables))
