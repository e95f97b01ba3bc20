"""
Sync processor.

Drains the outbox against the remote store:
- One cycle at a time; concurrent callers share the running cycle
- Each entry succeeds, is rescheduled with backoff, or turns failed on
  its own; one bad entry never stops the batch
- Periodic cycles, debounced cycles after new queue entries, and an
  immediate cycle when connectivity returns
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..events import SYNC_ERROR, SYNC_FINISHED, SYNC_ITEM_FAILED, SYNC_START, EventBus
from ..exceptions import RemoteRejection
from ..logging_utils import SyncLoggerAdapter
from ..models import (
    ID_MAP_TABLE,
    SERVER_ID_FIELD,
    SYNC_STATUS_FIELD,
    EntityType,
    QueueAction,
    QueueEntry,
    SyncStatus,
    id_map_key,
    is_client_id,
    utcnow,
)
from ..remote.base import CreateResult, RemoteStore, classify_remote_error
from ..sanitization import DROPPED, sanitize_sync
from ..store.base import ChangeOp, LocalStore, StoreChange
from .outbox import Outbox

logger = logging.getLogger(__name__)


class ProcessorState(Enum):
    """Current state of the processor."""

    IDLE = "idle"
    SYNCING = "syncing"
    PAUSED = "paused"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of one processor cycle."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    skipped: str | None = None

    @property
    def success(self) -> bool:
        return self.skipped is None and self.retried == 0 and self.failed == 0 and not self.errors

    def merge(self, other: SyncResult) -> None:
        """Add the counts of another cycle."""
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.failed += other.failed
        self.errors.extend(other.errors)
        self.duration_ms += other.duration_ms


class SyncProcessor:
    """Drains the outbox against the remote store.

    Per-entry state machine:
        PENDING -> removed         remote accepted the mutation
        PENDING -> PENDING         recoverable failure, rescheduled with backoff
        PENDING -> FAILED          terminal rejection or max_attempts reached
    FAILED entries are never retried automatically.
    """

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        remote: RemoteStore,
        events: EventBus | None = None,
        config: SyncConfig | None = None,
        connectivity: Callable[[], Awaitable[bool]] | None = None,
        owner_check: Callable[[], Awaitable[bool]] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the processor.

        Args:
            store: Local store holding entity tables and the id map
            outbox: Queue to drain
            remote: Remote store
            events: Event bus for sync:* notifications
            config: Sync configuration
            connectivity: Optional probe; cycles are skipped while it returns False
            owner_check: Optional gate run before each cycle; the cycle is
                skipped when it returns False
            clock: Source of the current time
        """
        self.store = store
        self.outbox = outbox
        self.remote = remote
        self.events = events or EventBus()
        self.config = config or outbox.config
        self.connectivity = connectivity
        self.owner_check = owner_check
        self.clock = clock

        self._state = ProcessorState.IDLE
        self._inflight: asyncio.Future[SyncResult] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._triggered: set[asyncio.Future] = set()
        self._debounce: asyncio.TimerHandle | None = None
        self._watching = False

        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def is_running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._loop_task is not None

    # -------------------------------------------------------------------------
    # Cycles
    # -------------------------------------------------------------------------

    async def run_once(
        self,
        *,
        include_scheduled: bool = False,
        batch_size: int | None = None,
        check_owner: bool = True,
    ) -> SyncResult:
        """Run a cycle, or wait for the one already running.

        Never raises for entry failures; they are recorded on the entries
        and reported in the result.

        Args:
            include_scheduled: Also attempt entries whose next attempt is in the future
            batch_size: Maximum entries to attempt (defaults to config.batch_size)
            check_owner: Run the owner check before draining

        Returns:
            Result of the cycle that ran
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(
                self._cycle(include_scheduled, batch_size, check_owner)
            )
        return await asyncio.shield(self._inflight)

    def trigger(self) -> asyncio.Future[SyncResult] | None:
        """Start a cycle in the background unless one is running."""
        if self.is_syncing:
            return None
        future = asyncio.ensure_future(self.run_once())
        self._triggered.add(future)
        future.add_done_callback(self._triggered.discard)
        return future

    def notify_online(self) -> asyncio.Future[SyncResult] | None:
        """Connectivity came back; drain right away."""
        logger.info("Connectivity restored, triggering sync")
        return self.trigger()

    async def _cycle(
        self, include_scheduled: bool, batch_size: int | None, check_owner: bool
    ) -> SyncResult:
        result = SyncResult()

        if self._state == ProcessorState.PAUSED:
            result.skipped = "paused"
            return result

        if self.connectivity is not None and not await self.connectivity():
            self._state = ProcessorState.OFFLINE
            result.skipped = "offline"
            logger.debug("Skipping sync cycle while offline")
            return result

        if check_owner and self.owner_check is not None:
            try:
                allowed = await self.owner_check()
            except Exception:
                logger.exception("Owner check failed")
                allowed = False
            if not allowed:
                result.skipped = "owner"
                logger.debug("Skipping sync cycle, local data owner not confirmed")
                return result

        self._state = ProcessorState.SYNCING
        start = time.monotonic()
        self.events.broadcast(SYNC_START, {"started_at": self.clock().isoformat()})

        try:
            batch = await self.outbox.drain(
                batch_size, now=self.clock(), include_scheduled=include_scheduled
            )
            for entry in batch:
                await self._process_entry(entry, result)
        except Exception as e:
            logger.exception("Sync cycle aborted")
            result.errors.append(f"Sync cycle aborted: {e}")
            self.last_error = str(e)
            self._state = ProcessorState.ERROR
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self.events.broadcast(SYNC_ERROR, {"error": str(e), "result": result})
            return result

        self.last_sync_at = self.clock()
        self.last_error = result.errors[-1] if result.errors else None
        self._state = ProcessorState.IDLE
        result.duration_ms = int((time.monotonic() - start) * 1000)

        if result.processed:
            logger.info(
                "Sync cycle: %d processed, %d succeeded, %d retried, %d failed in %dms",
                result.processed, result.succeeded, result.retried, result.failed,
                result.duration_ms,
            )
        self.events.broadcast(SYNC_FINISHED, result)
        return result

    async def _process_entry(self, entry: QueueEntry, result: SyncResult) -> None:
        log = SyncLoggerAdapter(
            logger,
            {
                "entry_id": entry.id,
                "entity": entry.entity,
                "entity_id": entry.entity_id,
                "action": entry.action.value,
                "attempt": entry.attempts + 1,
            },
        )
        result.processed += 1

        try:
            entity_type = EntityType.parse(entry.entity)
            if entity_type is None:
                raise RemoteRejection(f"Unknown entity type: {entry.entity}")
            if entry.payload is None and entry.payload_snapshot and entry.action != QueueAction.DELETE:
                raise RemoteRejection("Payload was not persistable; only a snapshot was kept")

            await self.outbox.mark_attempt(entry, self.clock())
            await self._apply(entity_type, entry)
        except Exception as e:
            failure = classify_remote_error(e)
            terminal = isinstance(failure, RemoteRejection)
            message = f"{entry.action.value} {entry.entity} {entry.entity_id}: {failure.message}"
            result.errors.append(message)

            try:
                updated = await self.outbox.record_failure(
                    entry, failure.message, terminal=terminal, now=self.clock()
                )
            except Exception as store_error:
                log.error(f"Could not record failure of queue entry: {store_error}")
                return

            if updated.failed:
                result.failed += 1
                log.error("Queue entry failed after %d attempt(s): %s", updated.attempts, failure.message)
                self.events.broadcast(SYNC_ITEM_FAILED, {"entry": updated, "error": failure.message})
            else:
                result.retried += 1
                log.warning(
                    "Queue entry attempt %d failed, next attempt at %s: %s",
                    updated.attempts, updated.next_attempt_at, failure.message,
                )
            return

        await self.outbox.remove(entry.id)
        result.succeeded += 1
        log.debug("Synced %s %s", entry.action.value, entry.entity_id)

    # -------------------------------------------------------------------------
    # Remote application
    # -------------------------------------------------------------------------

    async def _apply(self, entity_type: EntityType, entry: QueueEntry) -> None:
        table = entity_type.value

        if entry.action == QueueAction.CREATE:
            created = await self.remote.create_entity(table, entry.payload)
            await self._after_create(table, entry, created)

        elif entry.action == QueueAction.UPDATE:
            server_id = await self.resolve_server_id(entry)
            canonical = await self.remote.update_entity(table, server_id, entry.payload)
            await self._after_update(table, entry, server_id, canonical)

        else:
            server_id = await self.known_server_id(entry)
            if server_id is None and is_client_id(entry.entity_id):
                logger.debug(f"Skipping remote delete of {entry.entity_id}, never reached the server")
            else:
                await self.remote.delete_entity(table, server_id or entry.entity_id)
            await self._after_delete(table, entry)

    async def known_server_id(self, entry: QueueEntry) -> str | None:
        """Server id of the entry's record, if one is known locally.

        Looked up in the payload, the id map, then the local row.
        """
        if isinstance(entry.payload, dict) and entry.payload.get(SERVER_ID_FIELD):
            return str(entry.payload[SERVER_ID_FIELD])
        if entry.entity_id is None:
            return None

        mapped = await self.store.get(ID_MAP_TABLE, id_map_key(entry.entity, entry.entity_id))
        if mapped:
            return str(mapped)

        row = await self.store.get(entry.entity, entry.entity_id)
        if isinstance(row, dict) and row.get(SERVER_ID_FIELD):
            return str(row[SERVER_ID_FIELD])
        return None

    async def resolve_server_id(self, entry: QueueEntry) -> str:
        """Server id to address, falling back to the local entity id."""
        return await self.known_server_id(entry) or str(entry.entity_id)

    async def _after_create(self, table: str, entry: QueueEntry, created: CreateResult) -> None:
        if entry.entity_id is None:
            return
        try:
            await self.store.put(ID_MAP_TABLE, id_map_key(table, entry.entity_id), created.remote_id)
            await self._merge_local(table, entry, created.remote_id, created.canonical)
        except Exception as e:
            logger.warning(f"Local update after create of {table} {entry.entity_id} failed: {e}")

    async def _after_update(
        self, table: str, entry: QueueEntry, server_id: str, canonical: dict[str, Any] | None
    ) -> None:
        if entry.entity_id is None:
            return
        try:
            await self._merge_local(table, entry, server_id, canonical)
        except Exception as e:
            logger.warning(f"Local update after update of {table} {entry.entity_id} failed: {e}")

    async def _after_delete(self, table: str, entry: QueueEntry) -> None:
        if entry.entity_id is None:
            return
        try:
            await self.store.delete(table, entry.entity_id)
            await self.store.delete(ID_MAP_TABLE, id_map_key(table, entry.entity_id))
        except Exception as e:
            logger.warning(f"Local cleanup after delete of {table} {entry.entity_id} failed: {e}")

    async def _merge_local(
        self, table: str, entry: QueueEntry, server_id: str, canonical: dict[str, Any] | None
    ) -> None:
        """Fold the server's view into the local row, if the row still exists."""
        row = await self.store.get(table, entry.entity_id)
        if not isinstance(row, dict):
            return

        merged = dict(row)
        if isinstance(canonical, dict):
            safe = sanitize_sync(canonical, check=self.store.check_persistable)
            if safe is not DROPPED:
                merged.update(safe)

        merged[SERVER_ID_FIELD] = server_id
        still_pending = await self.outbox.has_pending_for(table, entry.entity_id, exclude=entry.id)
        merged[SYNC_STATUS_FIELD] = (
            SyncStatus.PENDING.value if still_pending else SyncStatus.SYNCED.value
        )
        await self.store.put(table, entry.entity_id, merged)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def start(self, interval: float | None = None) -> None:
        """Start periodic cycles and react to new queue entries.

        Args:
            interval: Seconds between cycles (defaults to config)
        """
        if self._loop_task is not None:
            return

        period = interval if interval is not None else self.config.auto_sync_interval_seconds

        async def sync_loop() -> None:
            while True:
                try:
                    await asyncio.sleep(period)
                    if self._state != ProcessorState.PAUSED:
                        await self.run_once()
                except asyncio.CancelledError:
                    break
                except Exception:
                    logger.exception("Auto sync cycle failed")

        self.store.subscribe(self._on_store_change)
        self._watching = True
        self._loop_task = asyncio.create_task(sync_loop())
        logger.info(f"Auto sync started, every {period}s")

    async def stop(self) -> None:
        """Stop periodic and debounced cycles. A running cycle completes."""
        self._watching = False
        self.store.unsubscribe(self._on_store_change)
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
            logger.info("Auto sync stopped")

    def pause(self) -> None:
        """Pause sync cycles."""
        self._state = ProcessorState.PAUSED

    def resume(self) -> None:
        """Resume sync cycles."""
        if self._state == ProcessorState.PAUSED:
            self._state = ProcessorState.IDLE

    def _on_store_change(self, change: StoreChange) -> None:
        if not self._watching or change.table != self.outbox.table:
            return
        if change.op is not ChangeOp.PUT or not change.created:
            return
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.config.enqueue_debounce_seconds, self._debounced)

    def _debounced(self) -> None:
        self._debounce = None
        self.trigger()

    async def wait_idle(self) -> None:
        """Wait for the running and any triggered cycles to finish."""
        while self.is_syncing or self._triggered:
            pending = [f for f in (self._inflight, *self._triggered) if f is not None]
            await asyncio.gather(*pending, return_exceptions=True)
