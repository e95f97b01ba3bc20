"""
Durable mutation outbox.

Every local create/update/delete is recorded here before it is attempted
against the remote store. Entries live in the ``sync_queue`` table of the
local store, keyed by a store-assigned increasing id, and survive restarts.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..config import SyncConfig
from ..exceptions import QueueWriteFailure
from ..models import EntityType, QueueAction, QueueEntry, utcnow
from ..sanitization import DROPPED, SanitizeReport, safe_stringify, sanitize
from ..store.base import LocalStore
from .backoff import next_attempt_time

logger = logging.getLogger(__name__)

QUEUE_TABLE = "sync_queue"

FALLBACK_ERROR_PREFIX = "enqueue-sanitization-fallback"


def normalize_entity(entity: str | EntityType) -> str:
    """Canonical entity name; unknown names are kept as given."""
    parsed = EntityType.parse(entity)
    return parsed.value if parsed else str(entity)


def _order(entry: QueueEntry) -> tuple[datetime, int, str]:
    seq = int(entry.id) if entry.id.isdigit() else 0
    return (entry.timestamp, seq, entry.id)


class Outbox:
    """Persistent queue of pending mutations.

    Invariants:
    - At most one non-failed entry per (entity, action, entity_id)
    - Failed entries are never removed or reset except by an explicit
      retry_failed, discard, clear_failed or clear_all call
    """

    def __init__(
        self,
        store: LocalStore,
        config: SyncConfig | None = None,
        table: str = QUEUE_TABLE,
        rand: Callable[[], float] = random.random,
    ):
        """Initialize the outbox.

        Args:
            store: Local store holding the queue table
            config: Sync configuration (defaults if None)
            table: Queue table name
            rand: Jitter source for retry scheduling
        """
        self.store = store
        self.config = config or SyncConfig()
        self.table = table
        self._rand = rand
        self._write_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        entity: str | EntityType,
        action: str | QueueAction,
        entity_id: Any,
        payload: Any = None,
        *,
        timestamp: datetime | None = None,
    ) -> str:
        """Record a mutation.

        Idempotent: if a non-failed entry with the same entity, action and
        entity id exists, its id is returned and nothing is written.

        Args:
            entity: Entity type (e.g. "invoices")
            action: create, update or delete
            entity_id: Local id of the mutated record
            payload: Arbitrary value tree; sanitized before writing
            timestamp: Queue time (defaults to now)

        Returns:
            Id of the queue entry

        Raises:
            ValueError: If action is not a known mutation kind
            QueueWriteFailure: If neither the entry nor its fallback could be written
        """
        action = QueueAction(action)
        entity_name = normalize_entity(entity)
        entity_id = str(entity_id) if entity_id is not None else None
        entry = QueueEntry(
            id="",
            entity=entity_name,
            entity_id=entity_id,
            action=action,
            timestamp=timestamp or utcnow(),
        )

        # Payload awaitables are resolved outside the write lock.
        reason = None
        if payload is not None:
            report = SanitizeReport()
            try:
                safe = await sanitize(
                    payload,
                    max_depth=self.config.sanitize_max_depth,
                    check=self.store.check_persistable,
                    report=report,
                )
            except Exception as e:
                logger.warning(f"Sanitizing payload of {entity_name} {entity_id} failed: {e}")
                safe = DROPPED
                report.add("<root>", "sanitization failed", e)
            if report:
                logger.debug(
                    "Sanitized payload of %s %s: removed %s",
                    entity_name, entity_id, ", ".join(report.paths),
                )
            if safe is DROPPED:
                reason = "payload could not be made persistable"
            else:
                entry.payload = safe

        async with self._write_lock:
            if entity_id is not None:
                existing = await self.find_active(entity_name, action, entity_id)
                if existing is not None:
                    logger.debug(
                        "Coalesced %s %s %s into queue entry %s",
                        action.value, entity_name, entity_id, existing.id,
                    )
                    return existing.id

            if reason is None:
                try:
                    return await self._insert(entry)
                except Exception as e:
                    logger.warning(f"Queue write of {entity_name} {entity_id} rejected: {e}")
                    reason = str(e)

            return await self._insert_fallback(entry, payload, reason)

    async def _insert(self, entry: QueueEntry) -> str:
        row = entry.to_dict()
        row.pop("id")
        entry.id = await self.store.add(self.table, row)
        logger.debug("Queued %s %s %s as %s", entry.action.value, entry.entity, entry.entity_id, entry.id)
        return entry.id

    async def _insert_fallback(self, entry: QueueEntry, original: Any, reason: str) -> str:
        entry.payload = None
        entry.payload_snapshot = safe_stringify(original)
        entry.last_error = f"{FALLBACK_ERROR_PREFIX}: {reason}"
        try:
            entry_id = await self._insert(entry)
        except Exception as e:
            logger.error(f"Fallback queue write of {entry.entity} {entry.entity_id} failed: {e}")
            raise QueueWriteFailure(entry.entity, entry.action.value, entry.entity_id, e) from e
        logger.warning(f"Queued {entry.entity} {entry.entity_id} with payload snapshot only: {reason}")
        return entry_id

    async def _save(self, entry: QueueEntry) -> None:
        row = entry.to_dict()
        row.pop("id")
        await self.store.put(self.table, entry.id, row)

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def all_entries(self) -> list[QueueEntry]:
        """Every entry, oldest first (timestamp, then id)."""
        entries = []
        for key, row in await self.store.all(self.table):
            try:
                entries.append(QueueEntry.from_dict({**row, "id": key}))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable queue entry {key}: {e}")
        entries.sort(key=_order)
        return entries

    async def get(self, entry_id: str) -> QueueEntry | None:
        row = await self.store.get(self.table, str(entry_id))
        if row is None:
            return None
        return QueueEntry.from_dict({**row, "id": str(entry_id)})

    async def find_active(
        self, entity: str, action: str | QueueAction, entity_id: str
    ) -> QueueEntry | None:
        """The non-failed entry for (entity, action, entity_id), if any."""
        key = (normalize_entity(entity), QueueAction(action).value, entity_id)
        for entry in await self.all_entries():
            if not entry.failed and entry.key == key:
                return entry
        return None

    async def has_pending_for(
        self, entity: str, entity_id: str, exclude: str | None = None
    ) -> bool:
        """Whether a non-failed entry other than ``exclude`` targets the record."""
        record = (normalize_entity(entity), entity_id)
        return any(
            not entry.failed and entry.record_key == record and entry.id != exclude
            for entry in await self.all_entries()
        )

    async def drain(
        self,
        batch_size: int | None = None,
        *,
        now: datetime | None = None,
        include_scheduled: bool = False,
    ) -> list[QueueEntry]:
        """Entries ready to be attempted, oldest first.

        At most one entry per record is returned, and an entry is held back
        while an older entry for the same record is scheduled for later or
        failed.

        Args:
            batch_size: Maximum entries (defaults to config.batch_size)
            now: Reference time for next_attempt_at
            include_scheduled: Ignore next_attempt_at

        Returns:
            List of entries to attempt
        """
        limit = batch_size or self.config.batch_size
        now = now or utcnow()

        batch: list[QueueEntry] = []
        seen: set[tuple[str, str | None]] = set()
        for entry in await self.all_entries():
            record = entry.record_key if entry.entity_id is not None else (entry.entity, f"#{entry.id}")
            if record in seen:
                continue
            seen.add(record)

            if entry.failed:
                continue
            if not include_scheduled and not entry.is_due(now):
                continue
            batch.append(entry)
            if len(batch) >= limit:
                break
        return batch

    async def count(self) -> int:
        return await self.store.count(self.table)

    async def pending_count(self) -> int:
        return sum(1 for entry in await self.all_entries() if not entry.failed)

    async def failed_count(self) -> int:
        return sum(1 for entry in await self.all_entries() if entry.failed)

    # -------------------------------------------------------------------------
    # Processor bookkeeping
    # -------------------------------------------------------------------------

    async def mark_attempt(self, entry: QueueEntry, now: datetime | None = None) -> None:
        """Record that the processor picked the entry up."""
        entry.last_attempt_at = now or utcnow()
        await self._save(entry)

    async def record_failure(
        self,
        entry: QueueEntry,
        error: str,
        *,
        terminal: bool = False,
        now: datetime | None = None,
    ) -> QueueEntry:
        """Record a failed attempt.

        Schedules the next attempt with backoff, or marks the entry failed
        when the failure is terminal or max_attempts is reached.

        Returns:
            The updated entry
        """
        now = now or utcnow()
        entry.attempts += 1
        entry.last_error = error
        entry.last_attempt_at = now

        if terminal or entry.attempts >= self.config.max_attempts:
            entry.failed = True
            entry.failed_at = now
            entry.next_attempt_at = None
        else:
            entry.next_attempt_at = next_attempt_time(entry.attempts, self.config, now, self._rand)

        await self._save(entry)
        return entry

    async def mark_failed(self, entry: QueueEntry, error: str, now: datetime | None = None) -> QueueEntry:
        """Mark an entry terminally failed."""
        return await self.record_failure(entry, error, terminal=True, now=now)

    async def remove(self, entry_id: str) -> bool:
        """Delete an entry after the remote confirmed it."""
        return await self.store.delete(self.table, str(entry_id))

    # -------------------------------------------------------------------------
    # Explicit user actions
    # -------------------------------------------------------------------------

    async def retry_failed(self, entry_id: str | None = None) -> int:
        """Reset failed entries so the processor picks them up again.

        A failed entry whose key already has a pending entry is removed
        instead, since the pending one carries the newer mutation.

        Args:
            entry_id: Only this entry (all failed entries if None)

        Returns:
            Number of entries reset
        """
        async with self._write_lock:
            entries = await self.all_entries()
            active = {entry.key for entry in entries if not entry.failed}

            reset = 0
            for entry in entries:
                if not entry.failed:
                    continue
                if entry_id is not None and entry.id != str(entry_id):
                    continue
                if entry.key in active:
                    logger.info(f"Dropping failed entry {entry.id}, superseded by a pending twin")
                    await self.remove(entry.id)
                    continue

                entry.failed = False
                entry.failed_at = None
                entry.attempts = 0
                entry.next_attempt_at = None
                await self._save(entry)
                active.add(entry.key)
                reset += 1

        if reset:
            logger.info(f"Reset {reset} failed queue entries")
        return reset

    async def discard(self, entry_id: str) -> bool:
        """Drop an entry without syncing it."""
        removed = await self.remove(entry_id)
        if removed:
            logger.info(f"Discarded queue entry {entry_id}")
        return removed

    async def clear_failed(self) -> int:
        removed = 0
        for entry in await self.all_entries():
            if entry.failed and await self.remove(entry.id):
                removed += 1
        if removed:
            logger.info(f"Cleared {removed} failed queue entries")
        return removed

    async def clear_all(self) -> int:
        removed = await self.store.clear(self.table)
        logger.info(f"Cleared {removed} queue entries")
        return removed
