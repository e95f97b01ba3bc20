"""
In-memory local store.

Holds rows in per-table dictionaries. Values are stored as decoded copies
of their encoded form, so the same conformance rules and copy semantics
apply as for the SQLite store.
"""

from __future__ import annotations

from typing import Any

from .base import ChangeOp, LocalStore, StoreChange
from .codec import decode_value, encode_value


class MemoryStore(LocalStore):
    """Local store kept in process memory. Useful for tests and previews."""

    def __init__(self) -> None:
        super().__init__()
        self._tables: dict[str, dict[str, str]] = {}
        self._sequences: dict[str, int] = {}

    def _table(self, table: str) -> dict[str, str]:
        return self._tables.setdefault(table, {})

    async def get(self, table: str, key: str) -> Any | None:
        raw = self._table(table).get(key)
        return decode_value(raw) if raw is not None else None

    async def put(self, table: str, key: str, value: Any) -> None:
        encoded = encode_value(value)
        rows = self._table(table)
        created = key not in rows
        rows[key] = encoded
        self._notify(StoreChange(table, ChangeOp.PUT, key, created=created))

    async def add(self, table: str, value: Any) -> str:
        encoded = encode_value(value)
        seq = self._sequences.get(table, 0) + 1
        self._sequences[table] = seq
        key = str(seq)
        self._table(table)[key] = encoded
        self._notify(StoreChange(table, ChangeOp.PUT, key, created=True))
        return key

    async def delete(self, table: str, key: str) -> bool:
        removed = self._table(table).pop(key, None) is not None
        if removed:
            self._notify(StoreChange(table, ChangeOp.DELETE, key))
        return removed

    async def all(self, table: str) -> list[tuple[str, Any]]:
        return [(key, decode_value(raw)) for key, raw in self._table(table).items()]

    async def clear(self, table: str) -> int:
        rows = self._table(table)
        count = len(rows)
        rows.clear()
        self._notify(StoreChange(table, ChangeOp.CLEAR))
        return count

    async def count(self, table: str) -> int:
        return len(self._table(table))
