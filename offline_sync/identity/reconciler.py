"""
Identity-change reconciler.

Local tables belong to whoever was signed in when they were filled. Before
each sync cycle the reconciler compares the authenticated principal with
the persisted marker and, when they differ, hands local storage over to the
new principal:

- Nothing pending: local data is cleared without asking
- Pending mutations: the UI is asked, through the confirmation event, to
  sync them first, discard them, or cancel

Local data is never cleared while unsynced mutations remain, unless the
user chose to discard them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..events import CONFIRM_CLEAR_LOCAL_DATA, LOCAL_DATA_CLEARED, EventBus
from ..exceptions import IdentityConflict, StoreError
from ..models import ID_MAP_TABLE
from ..remote.base import RemoteStore, classify_remote_error
from ..store.base import LocalStore
from ..sync.outbox import Outbox
from ..sync.processor import SyncProcessor, SyncResult
from .marker import IdentityMarker, SyncCooldown

logger = logging.getLogger(__name__)

LISTENER_POLL_SECONDS = 0.1

# Stands in for the previous owner when the marker file is unreadable
UNREADABLE_MARKER = "<unreadable>"


def _owner_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("_id", value.get("id"))
    if value is None or value == "":
        return None
    return str(value)


def _row_owners(row: Any, owner_fields: tuple[str, ...]) -> list[str]:
    if not isinstance(row, dict):
        return []
    owners = []
    for name in owner_fields:
        value = row.get(name)
        for item in value if isinstance(value, list) else [value]:
            owner = _owner_id(item)
            if owner is not None:
                owners.append(owner)
    return owners


class ReconcileOutcome(Enum):
    """What the reconciler decided for this cycle."""

    FIRST_RUN = "first_run"
    UNCHANGED = "unchanged"
    COOLDOWN = "cooldown"
    CLEARED = "cleared"
    FLUSHED_AND_CLEARED = "flushed_and_cleared"
    FLUSH_FAILED = "flush_failed"
    CANCELLED = "cancelled"
    IDENTITY_UNKNOWN = "identity_unknown"


_PROCEED = {
    ReconcileOutcome.FIRST_RUN,
    ReconcileOutcome.UNCHANGED,
    ReconcileOutcome.CLEARED,
    ReconcileOutcome.FLUSHED_AND_CLEARED,
}


class ConfirmationAnswer(str, Enum):
    """Choices offered when a new principal finds unsynced data."""

    SYNC = "sync"
    CLEAR = "clear"
    CANCEL = "cancel"

    @classmethod
    def parse(cls, value: Any) -> ConfirmationAnswer:
        """Unknown answers mean cancel."""
        if isinstance(value, ConfirmationAnswer):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown confirmation answer {value!r}, treating as cancel")
            return cls.CANCEL


@dataclass
class ConfirmationRequest:
    """Payload of the confirmation event.

    Attributes:
        from_principal: Principal that owns the local data
        to_principal: Principal now signed in
        pending_count: Unsynced queue entries
        respond: Call with "sync", "clear" or "cancel"; returns False if an
            answer was already given or the request timed out
    """

    from_principal: str
    to_principal: str
    pending_count: int
    respond: Callable[[Any], bool]


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass."""

    outcome: ReconcileOutcome
    principal: str | None = None
    previous_principal: str | None = None
    conflict: IdentityConflict | None = None
    answer: ConfirmationAnswer | None = None
    cleared: int = 0
    flush: SyncResult | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def proceed(self) -> bool:
        """Whether an ordinary drain may follow."""
        return self.outcome in _PROCEED


class IdentityReconciler:
    """Hands local storage over when the authenticated principal changes."""

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        processor: SyncProcessor,
        remote: RemoteStore,
        events: EventBus,
        marker: IdentityMarker,
        cooldown: SyncCooldown | None = None,
        config: SyncConfig | None = None,
    ):
        self.store = store
        self.outbox = outbox
        self.processor = processor
        self.remote = remote
        self.events = events
        self.marker = marker
        self.config = config or outbox.config
        self.cooldown = cooldown or SyncCooldown(self.config.min_full_sync_interval_seconds)

    async def reconcile(self, *, force: bool = False) -> ReconcileResult:
        """Compare the signed-in principal with the marker and act on it.

        Args:
            force: Ignore the full-sync cooldown

        Returns:
            ReconcileResult; ``proceed`` tells whether to drain afterwards

        Raises:
            StoreError: If clearing local data or saving the marker fails
        """
        try:
            principal = await self.remote.whoami()
        except Exception as e:
            failure = classify_remote_error(e)
            logger.warning(f"Could not determine signed-in user: {failure.message}")
            return ReconcileResult(ReconcileOutcome.IDENTITY_UNKNOWN, error=failure.message)

        if not principal:
            return ReconcileResult(
                ReconcileOutcome.IDENTITY_UNKNOWN, error="No authenticated user"
            )
        principal = str(principal)

        try:
            previous = await self.marker.load()
        except StoreError as e:
            logger.warning(f"Identity marker unreadable, treating owner as unknown: {e}")
            previous = UNREADABLE_MARKER

        if previous is None or previous == principal:
            if previous is not None and not force and not self.cooldown.is_ready():
                return ReconcileResult(
                    ReconcileOutcome.COOLDOWN,
                    principal=principal,
                    previous_principal=previous,
                    details={"retry_in_seconds": self.cooldown.remaining()},
                )

            foreign = await self.find_foreign_owner(principal)
            if foreign is not None:
                logger.warning(
                    f"Local data belongs to {foreign}, not to signed-in user {principal}"
                )
                result = await self._handle_change(foreign, principal)
                result.details["foreign_owner"] = foreign
                return result

            if previous is None:
                await self.marker.save(principal)
                logger.info(f"Local data now owned by {principal}")
                return ReconcileResult(ReconcileOutcome.FIRST_RUN, principal=principal)
            return ReconcileResult(
                ReconcileOutcome.UNCHANGED, principal=principal, previous_principal=previous
            )

        return await self._handle_change(previous, principal)

    async def owner_matches(self) -> bool:
        """Whether the signed-in principal is the recorded owner.

        Read-only; used to gate background drains between full syncs.
        """
        try:
            principal = await self.remote.whoami()
            previous = await self.marker.load()
        except Exception as e:
            logger.debug("Owner check failed: %s", e)
            return False
        return bool(principal) and previous == str(principal)

    async def find_foreign_owner(self, principal: str) -> str | None:
        """First principal other than ``principal`` that owns a local row.

        A row is foreign when its owner fields (``config.owner_fields``)
        name someone and none of them is ``principal``. Rows without owner
        fields are ignored.
        """
        for table in self.config.primary_tables:
            for _, row in await self.store.all(table):
                owners = _row_owners(row, self.config.owner_fields)
                if owners and principal not in owners:
                    return owners[0]
        return None

    async def _handle_change(self, previous: str, principal: str) -> ReconcileResult:
        pending = await self.outbox.count()
        logger.info(f"Signed-in user changed from {previous} to {principal}, {pending} pending")

        if pending == 0:
            cleared = await self.clear_local_data(principal)
            return ReconcileResult(
                ReconcileOutcome.CLEARED,
                principal=principal,
                previous_principal=previous,
                cleared=cleared,
            )

        conflict = IdentityConflict(previous, principal, pending)
        answer = await self.request_confirmation(conflict)
        result = ReconcileResult(
            ReconcileOutcome.CANCELLED,
            principal=principal,
            previous_principal=previous,
            conflict=conflict,
            answer=answer,
        )

        if answer is ConfirmationAnswer.CLEAR:
            result.cleared = await self.clear_local_data(principal)
            result.outcome = ReconcileOutcome.CLEARED
            return result

        if answer is ConfirmationAnswer.SYNC:
            result.flush = await self.flush()
            remaining = await self.outbox.count()
            if remaining == 0:
                result.cleared = await self.clear_local_data(principal)
                result.outcome = ReconcileOutcome.FLUSHED_AND_CLEARED
            else:
                logger.warning(
                    f"Flush left {remaining} unsynced change(s); keeping local data of {previous}"
                )
                result.outcome = ReconcileOutcome.FLUSH_FAILED
                result.conflict = IdentityConflict(previous, principal, remaining)
                result.error = result.conflict.message
            return result

        logger.info(f"Identity change to {principal} cancelled; local data kept")
        result.error = conflict.message
        return result

    async def request_confirmation(self, conflict: IdentityConflict) -> ConfirmationAnswer:
        """Ask the UI what to do with unsynced data of the previous owner.

        Waits up to ``listener_wait_seconds`` for a listener to appear and
        up to ``confirmation_timeout_seconds`` for the answer. Either wait
        running out counts as cancel. The first answer wins.
        """
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[ConfirmationAnswer] = loop.create_future()

        def respond(value: Any) -> bool:
            if answer.done():
                logger.debug(f"Ignoring late confirmation answer {value!r}")
                return False
            answer.set_result(ConfirmationAnswer.parse(value))
            return True

        deadline = loop.time() + self.config.listener_wait_seconds
        while not self.events.has_listeners(CONFIRM_CLEAR_LOCAL_DATA):
            if loop.time() >= deadline:
                logger.warning("No confirmation listener registered, cancelling identity change")
                return ConfirmationAnswer.CANCEL
            await asyncio.sleep(LISTENER_POLL_SECONDS)

        request = ConfirmationRequest(
            from_principal=conflict.from_principal,
            to_principal=conflict.to_principal,
            pending_count=conflict.pending_count,
            respond=respond,
        )
        self.events.emit(CONFIRM_CLEAR_LOCAL_DATA, request)

        try:
            return await asyncio.wait_for(answer, self.config.confirmation_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Confirmation timed out, cancelling identity change")
            return ConfirmationAnswer.CANCEL

    async def flush(self) -> SyncResult:
        """Drain the outbox ignoring retry schedules until no progress is made."""
        total = SyncResult()
        while await self.outbox.pending_count() > 0:
            result = await self.processor.run_once(include_scheduled=True, check_owner=False)
            total.merge(result)
            if result.succeeded == 0:
                break
        return total

    async def clear_local_data(self, principal: str) -> int:
        """Wipe the previous owner's data and hand storage to ``principal``.

        Clears the primary tables, the id map and the outbox, then saves
        the marker.

        Returns:
            Number of rows removed
        """
        removed = 0
        for table in self.config.primary_tables:
            removed += await self.store.clear(table)
        removed += await self.store.clear(ID_MAP_TABLE)
        removed += await self.outbox.clear_all()

        await self.marker.save(principal)
        self.cooldown.reset()
        logger.info(f"Cleared {removed} local row(s); local data now owned by {principal}")
        self.events.broadcast(LOCAL_DATA_CLEARED, {"principal": principal, "removed": removed})
        return removed
