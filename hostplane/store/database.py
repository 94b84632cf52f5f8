"""Store — the single aiosqlite connection every repository shares.

Writes go through `transaction()`, which serializes writers on an asyncio
lock and commits or rolls back as one step. Nested `transaction()` calls in
the same task join the outer one, so a manager can allocate a port and
insert the owning record atomically.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from hostplane.migrations.runner import apply_migrations

_logger = logging.getLogger(__name__)

_in_transaction: ContextVar[bool] = ContextVar("hostplane_in_transaction", default=False)


def ts(value: datetime) -> str:
    """Fixed-width ISO timestamp so string order matches time order."""
    return value.isoformat(timespec="microseconds")


class Store:
    """Owns the database connection and schema."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> list[int]:
        """Open the connection and apply pending migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        applied = await apply_migrations(self._db)
        if applied:
            _logger.info("Store at %s migrated to version %d", self._db_path, applied[-1])
        return applied

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store is not initialized")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        if _in_transaction.get():
            yield self.db
            return
        async with self._lock:
            token = _in_transaction.set(True)
            try:
                yield self.db
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise
            finally:
                _in_transaction.reset(token)

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one write statement; returns the affected row count."""
        async with self.transaction() as db:
            cursor = await db.execute(sql, tuple(params))
            return cursor.rowcount

    async def fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    async def fetch_one(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self.db.execute(sql, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def fetch_value(self, sql: str, params: Iterable[Any] = ()) -> Any:
        row = await self.fetch_one(sql, params)
        return row[0] if row is not None else None
