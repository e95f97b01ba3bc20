"""
SQLite local store.

Keeps every table in a single ``rows`` table keyed by (table, key), with
values encoded as JSON text by the store codec. Each write is committed on
its own, which gives the atomic single-row put/delete the engine needs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import StoreError
from .base import ChangeOp, LocalStore, StoreChange
from .codec import decode_value, encode_value

logger = logging.getLogger(__name__)


@dataclass
class SQLiteStoreConfig:
    """Configuration for the SQLite store."""

    db_path: str | Path = ":memory:"

    @classmethod
    def from_env(cls) -> SQLiteStoreConfig:
        """Create config from environment variables."""
        import os

        return cls(db_path=os.environ.get("OFFLINE_SYNC_DB_PATH", ":memory:"))


class SQLiteStore(LocalStore):
    """
    Local store backed by a SQLite file.

    Usage:
        store = await SQLiteStore.create(SQLiteStoreConfig(db_path="local.db"))
        await store.put("invoices", "abc", {"total": 100})
        await store.close()
    """

    def __init__(self, config: SQLiteStoreConfig):
        super().__init__()
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False

    @classmethod
    async def create(cls, config: SQLiteStoreConfig | None = None) -> SQLiteStore:
        """Create and initialize a SQLite store."""
        if config is None:
            config = SQLiteStoreConfig.from_env()

        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        db_path = str(self.config.db_path)
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = await aiosqlite.connect(db_path)
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS rows (
                    tbl TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (tbl, key)
                )
            """)
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS sequences (
                    tbl TEXT NOT NULL PRIMARY KEY,
                    next_value INTEGER NOT NULL
                )
            """)
            await self.conn.commit()
        except (OSError, aiosqlite.Error) as e:
            raise StoreError("initialize", db_path, e) from e

        self._initialized = True
        logger.info(f"SQLite store initialized: {db_path}")

    def _connection(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StoreError("connection", cause=RuntimeError("store is not initialized"))
        return self.conn

    async def get(self, table: str, key: str) -> Any | None:
        conn = self._connection()
        try:
            async with conn.execute(
                "SELECT value FROM rows WHERE tbl = ? AND key = ?", (table, key)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError("get", table, e) from e
        return decode_value(row[0]) if row else None

    async def put(self, table: str, key: str, value: Any) -> None:
        encoded = encode_value(value)
        conn = self._connection()
        try:
            async with conn.execute(
                "SELECT 1 FROM rows WHERE tbl = ? AND key = ?", (table, key)
            ) as cursor:
                created = await cursor.fetchone() is None
            await conn.execute(
                """
                INSERT INTO rows (tbl, key, value) VALUES (?, ?, ?)
                ON CONFLICT (tbl, key) DO UPDATE SET value = excluded.value
                """,
                (table, key, encoded),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise StoreError("put", table, e) from e
        self._notify(StoreChange(table, ChangeOp.PUT, key, created=created))

    async def add(self, table: str, value: Any) -> str:
        encoded = encode_value(value)
        conn = self._connection()
        try:
            await conn.execute(
                "INSERT OR IGNORE INTO sequences (tbl, next_value) VALUES (?, 0)", (table,)
            )
            await conn.execute(
                "UPDATE sequences SET next_value = next_value + 1 WHERE tbl = ?", (table,)
            )
            async with conn.execute(
                "SELECT next_value FROM sequences WHERE tbl = ?", (table,)
            ) as cursor:
                row = await cursor.fetchone()
            key = str(row[0])
            await conn.execute(
                "INSERT INTO rows (tbl, key, value) VALUES (?, ?, ?)", (table, key, encoded)
            )
            await conn.commit()
        except aiosqlite.Error as e:
            await conn.rollback()
            raise StoreError("add", table, e) from e
        self._notify(StoreChange(table, ChangeOp.PUT, key, created=True))
        return key

    async def delete(self, table: str, key: str) -> bool:
        conn = self._connection()
        try:
            cursor = await conn.execute(
                "DELETE FROM rows WHERE tbl = ? AND key = ?", (table, key)
            )
            removed = cursor.rowcount > 0
            await conn.commit()
        except aiosqlite.Error as e:
            raise StoreError("delete", table, e) from e
        if removed:
            self._notify(StoreChange(table, ChangeOp.DELETE, key))
        return removed

    async def all(self, table: str) -> list[tuple[str, Any]]:
        conn = self._connection()
        try:
            async with conn.execute(
                "SELECT key, value FROM rows WHERE tbl = ? ORDER BY rowid", (table,)
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StoreError("all", table, e) from e
        return [(key, decode_value(value)) for key, value in rows]

    async def clear(self, table: str) -> int:
        conn = self._connection()
        try:
            cursor = await conn.execute("DELETE FROM rows WHERE tbl = ?", (table,))
            count = cursor.rowcount
            await conn.commit()
        except aiosqlite.Error as e:
            raise StoreError("clear", table, e) from e
        self._notify(StoreChange(table, ChangeOp.CLEAR))
        return count

    async def count(self, table: str) -> int:
        conn = self._connection()
        try:
            async with conn.execute(
                "SELECT COUNT(*) FROM rows WHERE tbl = ?", (table,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError("count", table, e) from e
        return int(row[0]) if row else 0

    async def close(self) -> None:
        """Close the connection."""
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        self._initialized = False
