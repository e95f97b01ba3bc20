"""
Outbox and background synchronization.

The outbox records local mutations durably; the processor drains it
against the remote store with retry/backoff and per-entry isolation.
"""

from .backoff import compute_backoff, next_attempt_time
from .outbox import FALLBACK_ERROR_PREFIX, QUEUE_TABLE, Outbox, normalize_entity
from .processor import ProcessorState, SyncProcessor, SyncResult

__all__ = [
    # Outbox
    "Outbox",
    "QUEUE_TABLE",
    "FALLBACK_ERROR_PREFIX",
    "normalize_entity",
    # Backoff
    "compute_backoff",
    "next_attempt_time",
    # Processor
    "SyncProcessor",
    "SyncResult",
    "ProcessorState",
]
