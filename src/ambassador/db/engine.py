"""Async SQLAlchemy engine and session factory (SQLite-only).

Usage:
    engine = create_engine(settings.database_url)
    async with get_session(engine) as session:
        ...

Background sweeps use ``get_serializable_session`` so that each roleplay is
stopped or archived inside its own serializable transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ambassador.db.models import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Enables WAL journal mode and a 15-second busy timeout so concurrent
    sessions (sweeps, Discord commands, web requests) don't immediately
    fail with "database is locked".
    """
    connect_args: dict[str, object] = {"timeout": 15}

    engine = create_async_engine(database_url, echo=False, connect_args=connect_args)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, connection_record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=15000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_tables_ready")


# Module-level caches: one session factory per engine instance.
# Keyed by the engine's sync_engine identity so multiple test engines remain
# isolated, while all production requests share a single factory.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}
_serializable_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a cached session factory bound to *engine*."""
    key = id(engine.sync_engine)
    if key not in _session_factories:
        _session_factories[key] = async_sessionmaker(engine, expire_on_commit=False)
    return _session_factories[key]


def create_serializable_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Return a cached session factory whose transactions run SERIALIZABLE."""
    key = id(engine.sync_engine)
    if key not in _serializable_factories:
        serializable = engine.execution_options(isolation_level="SERIALIZABLE")
        _serializable_factories[key] = async_sessionmaker(serializable, expire_on_commit=False)
    return _serializable_factories[key]


@asynccontextmanager
async def _managed(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Re-raise pattern: must catch all to ensure rollback on any error
            await session.rollback()
            raise


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session that auto-commits on success, rolls back on error."""
    async with _managed(create_session_factory(engine)) as session:
        yield session


@asynccontextmanager
async def get_serializable_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Like ``get_session``, but the transaction runs at SERIALIZABLE isolation."""
    async with _managed(create_serializable_session_factory(engine)) as session:
        yield session
