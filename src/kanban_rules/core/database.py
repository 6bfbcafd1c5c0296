"""Shared SQLite plumbing for the engine's stores."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from .errors import StoreError


def to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteStore:
    """Owns one aiosqlite connection; subclasses provide ``SCHEMA``."""

    SCHEMA = ""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        if db_path != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        try:
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(self.SCHEMA)
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"Cannot open store at {self.db_path}: {e}", operation="initialize") from e

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection, translating driver failures into StoreError."""
        if self._db is None:
            raise StoreError(f"{type(self).__name__} is not initialized", operation=operation)
        try:
            yield self._db
        except aiosqlite.Error as e:
            if self._db is not None and self._db.in_transaction:
                await self._db.rollback()
            raise StoreError(f"{operation} failed: {e}", operation=operation) from e
