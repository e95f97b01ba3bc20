"""
Offline Sync

Offline synchronization engine for a local-first client.

Provides:
- Durable mutation outbox with idempotent enqueue
- Clone-safety for arbitrary payloads (awaitables, callables, cycles)
- Background sync with retry/backoff and per-entry failure isolation
- Identity-change reconciliation for device-local data

Usage:

    >>> from offline_sync import SyncConfig, create_sync_service
    >>> service = await create_sync_service(SyncConfig(remote_url="https://api.example.com/api"))
    >>> service.on("confirm:clear-local-data", lambda request: request.respond("sync"))
    >>> await service.enqueue("invoices", "create", "client_42", {"total": 100})
    >>> await service.sync_all()
    >>> status = await service.status()
    >>> status.pending, status.failed
    (0, 0)

Stores:

    # SQLite on disk
    from offline_sync.store import SQLiteStore, SQLiteStoreConfig

    # In memory, for tests and previews
    from offline_sync.store import MemoryStore
"""

from .config import SyncConfig
from .events import EventBus
from .exceptions import (
    ConfigurationError,
    IdentityConflict,
    NetworkFailure,
    NotPersistableError,
    QueueWriteFailure,
    RemoteRejection,
    SanitizationFailure,
    StoreError,
    SyncEngineError,
)
from .identity import (
    ConfirmationAnswer,
    ConfirmationRequest,
    IdentityMarker,
    IdentityReconciler,
    ReconcileOutcome,
    ReconcileResult,
    SyncCooldown,
)
from .logging_utils import configure_sync_logging
from .models import (
    CustomerPayload,
    EntityType,
    InvoiceItem,
    InvoicePayload,
    PaymentPayload,
    QueueAction,
    QueueEntry,
    RecordPayload,
    SyncStatus,
    UtilityServicePayload,
)
from .remote import CreateResult, HttpRemoteStore, RemoteStore, classify_remote_error
from .sanitization import DROPPED, make_clone_safe, safe_stringify, sanitize, sanitize_sync
from .service import FullSyncResult, QueueStatus, SyncService, create_sync_service
from .store import LocalStore, MemoryStore, SQLiteStore, SQLiteStoreConfig
from .sync import Outbox, SyncProcessor, SyncResult, compute_backoff

__version__ = "0.1.0"

__all__ = [
    # Service
    "SyncService",
    "create_sync_service",
    "QueueStatus",
    "FullSyncResult",
    "SyncConfig",
    "EventBus",
    "configure_sync_logging",
    # Queue and processing
    "Outbox",
    "SyncProcessor",
    "SyncResult",
    "compute_backoff",
    # Identity
    "IdentityReconciler",
    "IdentityMarker",
    "SyncCooldown",
    "ReconcileOutcome",
    "ReconcileResult",
    "ConfirmationAnswer",
    "ConfirmationRequest",
    # Sanitization
    "sanitize",
    "sanitize_sync",
    "make_clone_safe",
    "safe_stringify",
    "DROPPED",
    # Models
    "QueueEntry",
    "QueueAction",
    "EntityType",
    "SyncStatus",
    "InvoicePayload",
    "InvoiceItem",
    "CustomerPayload",
    "RecordPayload",
    "PaymentPayload",
    "UtilityServicePayload",
    # Stores
    "LocalStore",
    "MemoryStore",
    "SQLiteStore",
    "SQLiteStoreConfig",
    # Remote
    "RemoteStore",
    "HttpRemoteStore",
    "CreateResult",
    "classify_remote_error",
    # Exceptions
    "SyncEngineError",
    "SanitizationFailure",
    "QueueWriteFailure",
    "NetworkFailure",
    "RemoteRejection",
    "IdentityConflict",
    "StoreError",
    "NotPersistableError",
    "ConfigurationError",
]
