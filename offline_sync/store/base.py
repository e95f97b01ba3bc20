"""
Abstract local store interface.

The sync engine treats the device-local persistent store as an external
collaborator with a minimal contract: named tables of values keyed by
string id, atomic single-row put/delete, iteration, and a lightweight
change notification. No transactions are required.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .codec import check_persistable

logger = logging.getLogger(__name__)


class ChangeOp(Enum):
    """Kind of change reported to store listeners."""

    PUT = "put"
    DELETE = "delete"
    CLEAR = "clear"


@dataclass(frozen=True)
class StoreChange:
    """A single change notification."""

    table: str
    op: ChangeOp
    key: str | None = None
    created: bool = False


StoreListener = Callable[[StoreChange], None]


class LocalStore(ABC):
    """Table-like local persistent store.

    Implementations must:
    - Reject values that fail :meth:`check_persistable` before writing
    - Return copies, so callers never mutate stored state in place
    - Assign increasing keys in :meth:`add`
    - Call :meth:`_notify` after every successful write
    """

    def __init__(self) -> None:
        self._listeners: list[StoreListener] = []

    # -------------------------------------------------------------------------
    # Row operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get(self, table: str, key: str) -> Any | None:
        """Get a value by key, or None if absent."""
        ...

    @abstractmethod
    async def put(self, table: str, key: str, value: Any) -> None:
        """Insert or replace a value."""
        ...

    @abstractmethod
    async def add(self, table: str, value: Any) -> str:
        """Insert a value under a store-assigned key and return the key.

        Keys are decimal strings increasing in insertion order and are
        never reused within a table.
        """
        ...

    @abstractmethod
    async def delete(self, table: str, key: str) -> bool:
        """Delete a value. Returns True if a row was removed."""
        ...

    @abstractmethod
    async def all(self, table: str) -> list[tuple[str, Any]]:
        """All (key, value) pairs of a table in insertion order."""
        ...

    @abstractmethod
    async def clear(self, table: str) -> int:
        """Remove every row of a table. Returns the number removed."""
        ...

    async def count(self, table: str) -> int:
        """Number of rows in a table."""
        return len(await self.all(table))

    async def close(self) -> None:
        """Release resources."""
        return None

    # -------------------------------------------------------------------------
    # Conformance
    # -------------------------------------------------------------------------

    def check_persistable(self, value: Any) -> None:
        """Raise NotPersistableError unless the store can hold ``value``."""
        check_persistable(value)

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> None:
        """Register a change listener."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        """Remove a change listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed for %s", change)
