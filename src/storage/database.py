"""Async SQLAlchemy engine and session management.

A single ``Database`` is created at startup and injected into every store.
Each store operation runs in its own short transaction via ``transaction()``
so that row-level constraints and locks, not in-process mutexes, keep shared
state consistent when several service instances use the same database.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import Insert, event, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from src.storage.tables import Base

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return _is_sqlite(url) and (url.endswith("://") or ":memory:" in url)


class Database:
    """Owns the async engine and hands out transactional sessions.

    Parameters
    ----------
    url:
        SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...`` or
        ``sqlite+aiosqlite:///./retrieval.db``. In-memory SQLite shares a
        single connection so every session sees the same data.
    echo:
        Log emitted SQL.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        engine_kwargs: dict = {"echo": echo}
        if _is_memory_sqlite(url):
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        elif not _is_sqlite(url):
            engine_kwargs["pool_pre_ping"] = True

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if _is_sqlite(url):
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self._sessionmaker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def supports_row_locks(self) -> bool:
        """SQLite serializes writers itself and has no ``FOR UPDATE``."""
        return not _is_sqlite(self.url)

    async def create_all(self) -> None:
        """Create any missing tables and indexes."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; the caller controls commits."""
        async with self._sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in a transaction: commit on success, rollback on error."""
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def ping(self) -> bool:
        """Return ``True`` if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()

    def insert_or_ignore(self, table: type[Base], **values: object) -> Insert:
        """INSERT that silently skips rows violating a unique constraint.

        The result's ``rowcount`` is 1 when the row was new and 0 when it
        already existed.
        """
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table).values(**values).on_conflict_do_nothing()
        return sqlite_insert(table).values(**values).on_conflict_do_nothing()


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:  # noqa: ANN001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
