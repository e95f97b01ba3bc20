"""
Sync service facade.

Wires the outbox, processor and identity reconciler together behind the
small surface the UI layer needs: queue a mutation, run a full sync, read
aggregate status, subscribe to events, and manage failed entries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import SyncConfig
from .events import DATA_REFRESHED, SYNC_CLEARED, SYNC_ERROR, EventBus, Handler
from .exceptions import ConfigurationError
from .identity.marker import IdentityMarker, SyncCooldown
from .identity.reconciler import IdentityReconciler, ReconcileResult
from .logging_utils import configure_sync_logging, get_sync_logger
from .models import SERVER_ID_FIELD, SYNC_STATUS_FIELD, EntityType, QueueAction, SyncStatus, utcnow
from .remote.base import RemoteStore
from .remote.http import HttpRemoteStore
from .sanitization import DROPPED, sanitize_sync
from .store.base import LocalStore
from .store.sqlite import SQLiteStore, SQLiteStoreConfig
from .sync.outbox import Outbox
from .sync.processor import SyncProcessor, SyncResult

logger = get_sync_logger("service")


@dataclass
class QueueStatus:
    """Aggregate sync status shown by the UI."""

    pending: int
    failed: int
    syncing: bool
    last_sync_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "failed": self.failed,
            "syncing": self.syncing,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error": self.last_error,
        }


@dataclass
class FullSyncResult:
    """Result of :meth:`SyncService.sync_all`."""

    reconcile: ReconcileResult | None = None
    drain: SyncResult = field(default_factory=SyncResult)
    pulled: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return (
            self.error is None
            and self.reconcile is not None
            and self.reconcile.proceed
            and self.drain.success
        )


class SyncService:
    """
    Offline sync engine exposed to the UI layer.

    Usage:
        service = await create_sync_service(SyncConfig.from_env())
        service.on("confirm:clear-local-data", ask_user)
        await service.enqueue("invoices", "create", "client_1", {"total": 100})
        await service.sync_all()
        print(await service.status())
        await service.close()
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        config: SyncConfig | None = None,
        marker: IdentityMarker | None = None,
        events: EventBus | None = None,
        connectivity: Callable[[], Awaitable[bool]] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the service.

        Args:
            store: Local store
            remote: Remote store
            config: Sync configuration
            marker: Identity marker (defaults to a file at config.marker_path)
            events: Event bus shared with the UI
            connectivity: Optional probe; background cycles are skipped while offline
            clock: Source of the current time
        """
        self.config = config or SyncConfig()
        self.store = store
        self.remote = remote
        self.events = events or EventBus()
        self.clock = clock

        self.outbox = Outbox(store, self.config)
        self.processor = SyncProcessor(
            store,
            self.outbox,
            remote,
            events=self.events,
            config=self.config,
            connectivity=connectivity,
            owner_check=self._owner_check,
            clock=clock,
        )
        self.marker = marker or IdentityMarker(self.config.marker_path)
        self.cooldown = SyncCooldown(self.config.min_full_sync_interval_seconds)
        self.reconciler = IdentityReconciler(
            store,
            self.outbox,
            self.processor,
            remote,
            self.events,
            self.marker,
            cooldown=self.cooldown,
            config=self.config,
        )

        self._full_sync: asyncio.Future[FullSyncResult] | None = None
        self._background: set[asyncio.Future] = set()
        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        entity: str | EntityType,
        action: str | QueueAction,
        entity_id: Any,
        payload: Any = None,
    ) -> str:
        """Queue a local mutation for sync.

        Raises:
            QueueWriteFailure: If the mutation could not be saved locally
        """
        return await self.outbox.enqueue(entity, action, entity_id, payload)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        full = self._full_sync is not None and not self._full_sync.done()
        return full or self.processor.is_syncing

    async def sync_all(self, force: bool = False) -> FullSyncResult:
        """Reconcile identity, drain the outbox, then refresh local tables.

        Concurrent calls share one run. Never raises for sync failures.

        Args:
            force: Ignore the full-sync cooldown
        """
        if self._full_sync is None or self._full_sync.done():
            self._full_sync = asyncio.ensure_future(self._run_full_sync(force))
        return await asyncio.shield(self._full_sync)

    async def sync_queue(self) -> SyncResult:
        """Drain the outbox once, without identity reconciliation or refresh."""
        return await self.processor.run_once()

    async def _run_full_sync(self, force: bool) -> FullSyncResult:
        result = FullSyncResult()
        try:
            reconcile = await self.reconciler.reconcile(force=force)
            result.reconcile = reconcile
            if not reconcile.proceed:
                logger.info(f"Full sync stopped after identity check: {reconcile.outcome.value}")
                if reconcile.error:
                    self.last_error = reconcile.error
                return result

            result.drain = await self._drain_all()
            result.pulled = await self._pull()
        except Exception as e:
            logger.exception("Full sync failed")
            result.error = str(e)
            self.last_error = str(e)
            self.events.broadcast(SYNC_ERROR, {"error": str(e)})
            return result

        self.cooldown.mark()
        self.last_sync_at = self.clock()
        self.last_error = result.drain.errors[-1] if result.drain.errors else None
        if result.pulled:
            self.events.broadcast(DATA_REFRESHED, {"pulled": result.pulled})
        return result

    async def _drain_all(self) -> SyncResult:
        total = SyncResult()
        while True:
            result = await self.processor.run_once(check_owner=False)
            total.merge(result)
            if result.skipped:
                total.skipped = result.skipped
                break
            if result.succeeded == 0 or result.processed < self.config.batch_size:
                break
        return total

    async def _pull(self) -> int:
        """Refresh entity tables from the remote. Rows with pending changes are kept."""
        pulled = 0
        for table in self.config.primary_tables:
            try:
                items = await self.remote.list_entities(table)
            except Exception as e:
                logger.warning(f"Refreshing {table} failed: {e}")
                continue
            if items is None:
                continue

            by_server_id = {}
            for key, row in await self.store.all(table):
                if isinstance(row, dict) and row.get(SERVER_ID_FIELD):
                    by_server_id[str(row[SERVER_ID_FIELD])] = (key, row)

            for item in items:
                server_id = item.get("_id", item.get("id"))
                if server_id is None:
                    continue
                server_id = str(server_id)

                key, existing = by_server_id.get(server_id, (server_id, None))
                if existing is None:
                    existing = await self.store.get(table, key)
                if isinstance(existing, dict) and existing.get(SYNC_STATUS_FIELD) == SyncStatus.PENDING.value:
                    continue

                safe = sanitize_sync(item, check=self.store.check_persistable)
                if safe is DROPPED:
                    logger.warning(f"Skipping unpersistable {table} item {server_id}")
                    continue
                safe[SERVER_ID_FIELD] = server_id
                safe[SYNC_STATUS_FIELD] = SyncStatus.SYNCED.value
                await self.store.put(table, key, safe)
                pulled += 1
        return pulled

    async def _owner_check(self) -> bool:
        if await self.reconciler.owner_matches():
            return True
        self._schedule_full_sync()
        return False

    def _schedule_full_sync(self) -> asyncio.Future[FullSyncResult] | None:
        if self._full_sync is not None and not self._full_sync.done():
            return None
        future = asyncio.ensure_future(self.sync_all())
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return future

    def notify_online(self) -> asyncio.Future[FullSyncResult] | None:
        """Connectivity came back; run a full sync in the background."""
        logger.info("Connectivity restored, scheduling full sync")
        return self._schedule_full_sync()

    # -------------------------------------------------------------------------
    # Status and events
    # -------------------------------------------------------------------------

    async def status(self) -> QueueStatus:
        """Pending and failed counts plus the latest sync outcome."""
        candidates = [t for t in (self.last_sync_at, self.processor.last_sync_at) if t is not None]
        return QueueStatus(
            pending=await self.outbox.pending_count(),
            failed=await self.outbox.failed_count(),
            syncing=self.is_syncing,
            last_sync_at=max(candidates) if candidates else None,
            last_error=self.last_error or self.processor.last_error,
        )

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        return self.events.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self.events.off(event, handler)

    # -------------------------------------------------------------------------
    # Failed entries
    # -------------------------------------------------------------------------

    async def retry_failed(self, entry_id: str | None = None) -> int:
        """Make failed entries eligible again and kick off a drain."""
        reset = await self.outbox.retry_failed(entry_id)
        if reset:
            self.processor.trigger()
        return reset

    async def discard(self, entry_id: str) -> bool:
        return await self.outbox.discard(entry_id)

    async def clear_failed(self) -> int:
        removed = await self.outbox.clear_failed()
        if removed:
            self.events.broadcast(SYNC_CLEARED, {"type": "failed", "count": removed})
        return removed

    async def clear_all(self) -> int:
        """Drop every queued mutation, pending or failed."""
        removed = await self.outbox.clear_all()
        if removed:
            self.events.broadcast(SYNC_CLEARED, {"type": "all", "count": removed})
        return removed

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, interval: float | None = None) -> None:
        """Start background sync and run a first full sync."""
        await self.processor.start(interval)
        self._schedule_full_sync()

    async def stop(self) -> None:
        """Stop background sync."""
        await self.processor.stop()

    async def close(self) -> None:
        """Stop background work and release the store and remote."""
        await self.stop()
        pending = list(self._background)
        if self._full_sync is not None and not self._full_sync.done():
            pending.append(self._full_sync)
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.processor.wait_idle()
        await self.remote.close()
        await self.store.close()


async def create_sync_service(
    config: SyncConfig | None = None,
    *,
    store: LocalStore | None = None,
    remote: RemoteStore | None = None,
    events: EventBus | None = None,
) -> SyncService:
    """Create a sync service from configuration.

    With ``config.log_json`` set, the package logger is switched to JSON
    lines on stdout at ``config.log_level``.

    Args:
        config: Sync configuration (read from the environment if None)
        store: Local store (SQLite at config.db_path if None)
        remote: Remote store (HTTP client for config.remote_url if None)
        events: Event bus shared with the UI

    Returns:
        Ready SyncService

    Raises:
        ConfigurationError: If no remote is given and remote_url is unset
    """
    if config is None:
        config = SyncConfig.from_env()

    if config.log_json:
        configure_sync_logging(config.log_level)

    if remote is None:
        if not config.remote_url:
            raise ConfigurationError("remote_url", "required when no remote store is given")
        remote = HttpRemoteStore(
            config.remote_url,
            auth_token=config.auth_token,
            timeout=config.request_timeout_seconds,
        )

    if store is None:
        store = await SQLiteStore.create(SQLiteStoreConfig(db_path=config.db_path))

    return SyncService(
        store,
        remote,
        config=config,
        marker=IdentityMarker(config.marker_path),
        events=events,
    )
