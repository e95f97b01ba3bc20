"""
Remote store access.

Provides the contract for the authoritative server-side store, the error
classification the sync processor relies on, and an aiohttp client.
"""

from .base import (
    RETRYABLE_STATUS_CODES,
    CreateResult,
    RemoteStore,
    classify_remote_error,
    is_retryable_status,
)
from .http import HttpRemoteStore

__all__ = [
    "RemoteStore",
    "CreateResult",
    "classify_remote_error",
    "is_retryable_status",
    "RETRYABLE_STATUS_CODES",
    "HttpRemoteStore",
]
