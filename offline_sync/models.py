"""
Data model for the sync engine.

Defines queue entries, the actions and entity types they refer to, the
sync status carried by local records, and typed payload variants for each
entity type.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

SYNC_STATUS_FIELD = "syncStatus"
SERVER_ID_FIELD = "serverId"

# Prefix of ids generated on the device before the server assigns one
CLIENT_ID_PREFIX = "client_"

# Maps "<entity>:<entity_id>" to the server-assigned id
ID_MAP_TABLE = "id_map"


class QueueAction(str, Enum):
    """Mutation kinds carried by the outbox."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    """Sync state of a local record."""

    PENDING = "pending"
    SYNCED = "synced"


class EntityType(str, Enum):
    """Entity tables that can be mutated through the outbox."""

    INVOICES = "invoices"
    CUSTOMERS = "customers"
    RECORDS = "records"
    PAYMENTS = "payments"
    UTILITY_SERVICES = "utility_services"

    @classmethod
    def parse(cls, name: str | EntityType | None) -> EntityType | None:
        """Resolve an entity name, accepting singular and camelCase forms.

        Returns None for unknown names.
        """
        if isinstance(name, EntityType):
            return name
        if not name:
            return None
        key = str(name).strip().replace("-", "_")
        if not key.isupper():
            # utilityServices -> utility_services
            key = "".join(f"_{c}" if c.isupper() else c for c in key).lstrip("_")
        key = key.lower()
        for candidate in (key, f"{key}s"):
            try:
                return cls(candidate)
            except ValueError:
                continue
        return None


def id_map_key(entity: str, entity_id: str) -> str:
    return f"{entity}:{entity_id}"


def is_client_id(entity_id: str | None) -> bool:
    """Whether an id was generated on the device and never replaced."""
    return bool(entity_id) and str(entity_id).startswith(CLIENT_ID_PREFIX)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class QueueEntry:
    """A pending mutation awaiting remote confirmation.

    Attributes:
        id: Store-assigned key, increasing in insertion order
        entity: Entity discriminator (e.g. "invoices")
        entity_id: Local id of the mutated record, stable across retries
        action: create, update or delete
        payload: Sanitized value tree, or None
        payload_snapshot: String serialization kept only when sanitization failed
        timestamp: When the mutation was queued
        attempts: Number of sync attempts so far
        failed: Terminal state; never retried automatically
        next_attempt_at: Earliest time of the next attempt
        last_error: Last error message
        last_attempt_at: When the processor last picked the entry up
        failed_at: When the entry turned terminal
    """

    id: str
    entity: str
    entity_id: str | None
    action: QueueAction
    payload: Any = None
    payload_snapshot: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    attempts: int = 0
    failed: bool = False
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, str | None]:
        """Dedup key."""
        return (self.entity, self.action.value, self.entity_id)

    @property
    def record_key(self) -> tuple[str, str | None]:
        """Key of the local record this entry mutates."""
        return (self.entity, self.entity_id)

    def is_due(self, now: datetime) -> bool:
        """Whether the entry may be attempted at ``now``."""
        return not self.failed and (self.next_attempt_at is None or self.next_attempt_at <= now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "id": self.id,
            "entity": self.entity,
            "entityId": self.entity_id,
            "action": self.action.value,
            "payload": self.payload,
            "payloadSnapshot": self.payload_snapshot,
            "timestamp": _format_datetime(self.timestamp),
            "attempts": self.attempts,
            "failed": self.failed,
            "nextAttemptAt": _format_datetime(self.next_attempt_at),
            "lastError": self.last_error,
            "lastAttemptAt": _format_datetime(self.last_attempt_at),
            "failedAt": _format_datetime(self.failed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        """Create from a persisted dictionary."""
        entity_id = data.get("entityId")
        return cls(
            id=str(data["id"]),
            entity=data["entity"],
            entity_id=str(entity_id) if entity_id is not None else None,
            action=QueueAction(data["action"]),
            payload=data.get("payload"),
            payload_snapshot=data.get("payloadSnapshot"),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            attempts=int(data.get("attempts") or 0),
            failed=bool(data.get("failed", False)),
            next_attempt_at=_parse_datetime(data.get("nextAttemptAt")),
            last_error=data.get("lastError"),
            last_attempt_at=_parse_datetime(data.get("lastAttemptAt")),
            failed_at=_parse_datetime(data.get("failedAt")),
        )


# =============================================================================
# Payload variants
# =============================================================================


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class EntityPayload:
    """Base for typed mutation payloads.

    ``to_dict`` emits camelCase keys, the shape local records and the remote
    API use, and omits unset fields so partial updates stay partial.

    The map is shallow: nested values are returned as given, so the
    sanitizer walks them with its own cycle and awaitable handling.
    """

    entity_type = None  # type: EntityType | None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, date):
                value = value.isoformat()
            out[_camel(f.name)] = value
        return out


@dataclass
class InvoiceItem:
    description: str
    quantity: float = 1
    unit_price: float = 0


@dataclass
class InvoicePayload(EntityPayload):
    entity_type = EntityType.INVOICES

    invoice_number: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    status: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    items: list[InvoiceItem] | None = None
    sub_total: float | None = None
    tax: float | None = None
    total: float | None = None
    server_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        if isinstance(out.get("items"), list):
            out["items"] = [
                {_camel(f.name): getattr(item, f.name) for f in fields(item)}
                if is_dataclass(item)
                else item
                for item in out["items"]
            ]
        return out


@dataclass
class CustomerPayload(EntityPayload):
    entity_type = EntityType.CUSTOMERS

    name: str | None = None
    phone: str | None = None
    email: str | None = None
    is_active: bool | None = None
    server_id: str | None = None


@dataclass
class RecordPayload(EntityPayload):
    entity_type = EntityType.RECORDS

    record_type: str | None = None
    amount: float | None = None
    description: str | None = None
    record_date: date | None = None
    customer_id: str | None = None
    image_path: str | None = None
    ocr_data: dict[str, Any] | None = None
    server_id: str | None = None


@dataclass
class PaymentPayload(EntityPayload):
    entity_type = EntityType.PAYMENTS

    invoice_id: str | None = None
    transaction_id: str | None = None
    status: str | None = None
    amount: float | None = None
    provider: str | None = None
    payment_date: date | None = None
    server_id: str | None = None


@dataclass
class UtilityServicePayload(EntityPayload):
    entity_type = EntityType.UTILITY_SERVICES

    name: str | None = None
    description: str | None = None
    unit_price: float | None = None
    server_id: str | None = None


PAYLOAD_TYPES: dict[EntityType, type[EntityPayload]] = {
    EntityType.INVOICES: InvoicePayload,
    EntityType.CUSTOMERS: CustomerPayload,
    EntityType.RECORDS: RecordPayload,
    EntityType.PAYMENTS: PaymentPayload,
    EntityType.UTILITY_SERVICES: UtilityServicePayload,
}
