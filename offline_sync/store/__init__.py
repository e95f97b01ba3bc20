"""
Local persistent store.

Provides the store contract the sync engine consumes, the value codec that
defines what can be persisted, and two implementations.
"""

from .base import ChangeOp, LocalStore, StoreChange, StoreListener
from .codec import check_persistable, decode_value, encode_value, is_persistable
from .memory import MemoryStore
from .sqlite import SQLiteStore, SQLiteStoreConfig

__all__ = [
    # Contract
    "LocalStore",
    "StoreChange",
    "StoreListener",
    "ChangeOp",
    # Codec
    "check_persistable",
    "is_persistable",
    "encode_value",
    "decode_value",
    # Implementations
    "MemoryStore",
    "SQLiteStore",
    "SQLiteStoreConfig",
]
