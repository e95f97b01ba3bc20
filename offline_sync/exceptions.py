"""
Custom exceptions for the offline sync engine.

Every failure in the engine degrades to one of these types. Errors raised
during a user-initiated local write propagate to the caller; errors raised
during background sync are recorded on the queue entry and surfaced through
aggregate status instead.
"""

from __future__ import annotations


class SyncEngineError(Exception):
    """Base exception for all sync engine errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SanitizationFailure(SyncEngineError):
    """A value could not be made persistence-safe.

    Non-fatal: sanitization records it and yields a pruned value or a
    string placeholder instead.
    """

    def __init__(self, path: str, reason: str, cause: Exception | None = None):
        details = {"path": path, "reason": reason}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Sanitization failed at {path}: {reason}", details)
        self.path = path
        self.reason = reason
        self.cause = cause


class QueueWriteFailure(SyncEngineError):
    """Raised when a mutation cannot be written to the outbox in any form.

    Only raised after the fallback snapshot write has also failed. Callers
    must report it to the user as a failed local save.
    """

    def __init__(
        self,
        entity: str,
        action: str,
        entity_id: str | None,
        cause: Exception | None = None,
    ):
        details = {"entity": entity, "action": action, "entity_id": entity_id}
        if cause:
            details["cause"] = str(cause)
        super().__init__(
            f"Failed to save {action} of {entity} {entity_id} locally",
            details,
        )
        self.entity = entity
        self.action = action
        self.entity_id = entity_id
        self.cause = cause


class NetworkFailure(SyncEngineError):
    """Recoverable remote failure (connectivity, timeout, overload).

    The entry is retried with backoff.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status = status
        self.cause = cause


class RemoteRejection(SyncEngineError):
    """Terminal remote failure (validation, authorization, unknown entity).

    The entry is marked failed and never retried automatically.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status = status
        self.cause = cause


class IdentityConflict(SyncEngineError):
    """A new principal took over local storage that still holds unsynced data.

    Needs an explicit decision through the confirmation protocol.
    """

    def __init__(self, from_principal: str, to_principal: str, pending_count: int):
        super().__init__(
            f"Signed-in user changed from {from_principal} to {to_principal} "
            f"with {pending_count} pending change(s)",
            {
                "from": from_principal,
                "to": to_principal,
                "pending_count": pending_count,
            },
        )
        self.from_principal = from_principal
        self.to_principal = to_principal
        self.pending_count = pending_count


class StoreError(SyncEngineError):
    """Raised when a local store operation fails."""

    def __init__(self, operation: str, table: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if table:
            details["table"] = table
        if cause:
            details["cause"] = str(cause)
        message = f"Store error during {operation}"
        if table:
            message += f": {table}"
        super().__init__(message, details)
        self.operation = operation
        self.table = table
        self.cause = cause


class NotPersistableError(SyncEngineError):
    """Raised when a value tree fails the store's structural conformance check."""

    def __init__(self, path: str, type_name: str):
        super().__init__(
            f"Value at {path} of type {type_name} cannot be persisted",
            {"path": path, "type": type_name},
        )
        self.path = path
        self.type_name = type_name


class ConfigurationError(SyncEngineError):
    """Raised when sync configuration is invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            f"Invalid configuration for {field}: {reason}",
            {"field": field, "reason": reason},
        )
        self.field = field
        self.reason = reason
