"""
Tests for identity-change reconciliation.

The marker is seeded with "user-a" and the fake remote reports "user-b"
to simulate a different user signing in on the same device.
"""

import asyncio

import pytest

from offline_sync.events import CONFIRM_CLEAR_LOCAL_DATA, LOCAL_DATA_CLEARED
from offline_sync.identity import ConfirmationAnswer, ReconcileOutcome
from offline_sync.models import ID_MAP_TABLE

from conftest import StatusError


@pytest.fixture
async def handover(store, outbox, marker, remote):
    """Local data of user-a with one pending mutation; user-b signed in."""
    await marker.save("user-a")
    remote.principal = "user-b"
    await store.put("invoices", "client_1", {"total": 100, "syncStatus": "pending"})
    await store.put(ID_MAP_TABLE, "invoices:old", "srv_old")
    await outbox.enqueue("invoices", "create", "client_1", {"total": 100})


def answer_with(events, value):
    """Register a confirmation listener that answers immediately."""
    requests = []

    def listener(request):
        requests.append(request)
        request.respond(value)

    events.on(CONFIRM_CLEAR_LOCAL_DATA, listener)
    return requests


class TestSamePrincipal:
    """Tests for first runs and unchanged owners."""

    @pytest.mark.asyncio
    async def test_first_run_records_owner(self, reconciler, marker):
        """With no marker the signed-in user becomes the owner."""
        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FIRST_RUN
        assert result.proceed
        assert await marker.load() == "user-1"

    @pytest.mark.asyncio
    async def test_unchanged_owner(self, reconciler, marker):
        """The same user proceeds without touching local data."""
        await marker.save("user-1")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.UNCHANGED
        assert result.proceed

    @pytest.mark.asyncio
    async def test_cooldown_and_force(self, reconciler, marker):
        """A recent full sync defers the next one unless forced."""
        await marker.save("user-1")
        reconciler.cooldown.mark()

        deferred = await reconciler.reconcile()
        forced = await reconciler.reconcile(force=True)

        assert deferred.outcome is ReconcileOutcome.COOLDOWN
        assert not deferred.proceed
        assert deferred.details["retry_in_seconds"] > 0
        assert forced.outcome is ReconcileOutcome.UNCHANGED

    @pytest.mark.asyncio
    async def test_whoami_failure(self, reconciler, remote, marker):
        """An unknown identity stops the sync and leaves the marker alone."""
        await marker.save("user-a")
        remote.whoami_error = StatusError(503)

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.IDENTITY_UNKNOWN
        assert not result.proceed
        assert result.error
        assert await marker.load() == "user-a"

    @pytest.mark.asyncio
    async def test_signed_out(self, reconciler, remote):
        """No authenticated user means identity unknown."""
        remote.principal = None

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.IDENTITY_UNKNOWN

    @pytest.mark.asyncio
    async def test_owner_matches(self, reconciler, marker, remote):
        """owner_matches compares the signed-in user with the marker."""
        assert not await reconciler.owner_matches()

        await marker.save("user-1")
        assert await reconciler.owner_matches()

        remote.principal = "user-2"
        assert not await reconciler.owner_matches()


class TestPrincipalChange:
    """Tests for a different user signing in."""

    @pytest.mark.asyncio
    async def test_empty_outbox_clears_without_asking(self, reconciler, store, marker, remote, events):
        """Nothing to lose, so local data is handed over silently."""
        await marker.save("user-a")
        remote.principal = "user-b"
        await store.put("customers", "c1", {"name": "Ann"})
        asked = answer_with(events, "cancel")
        cleared = []
        events.on(LOCAL_DATA_CLEARED, cleared.append)

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CLEARED
        assert result.proceed
        assert asked == []
        assert await store.count("customers") == 0
        assert await marker.load() == "user-b"
        assert cleared == [{"principal": "user-b", "removed": 1}]

    @pytest.mark.asyncio
    async def test_clear_answer(self, handover, reconciler, store, outbox, marker, events):
        """Choosing clear discards pending changes and local data."""
        requests = answer_with(events, "clear")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CLEARED
        assert result.answer is ConfirmationAnswer.CLEAR
        assert requests[0].from_principal == "user-a"
        assert requests[0].to_principal == "user-b"
        assert requests[0].pending_count == 1
        assert await outbox.count() == 0
        assert await store.count("invoices") == 0
        assert await store.count(ID_MAP_TABLE) == 0
        assert await marker.load() == "user-b"

    @pytest.mark.asyncio
    async def test_sync_answer_flushes_then_clears(self, handover, reconciler, store, outbox, marker, remote, events):
        """Choosing sync sends pending changes before handing over."""
        answer_with(events, "sync")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FLUSHED_AND_CLEARED
        assert result.flush.succeeded == 1
        assert remote.calls_for("create")[0][3] == {"total": 100}
        assert await outbox.count() == 0
        assert await store.count("invoices") == 0
        assert await marker.load() == "user-b"

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_everything(self, handover, reconciler, store, outbox, marker, remote, events):
        """Unsynced changes after a flush keep the previous owner's data."""
        remote.fail_when(lambda call: True, StatusError(503), times=None)
        answer_with(events, "sync")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FLUSH_FAILED
        assert not result.proceed
        assert result.conflict.pending_count == 1
        assert "user-b" in result.error
        assert await outbox.count() == 1
        assert await store.get("invoices", "client_1") == {"total": 100, "syncStatus": "pending"}
        assert await marker.load() == "user-a"

    @pytest.mark.asyncio
    async def test_flush_counts_failed_entries_as_unsynced(self, handover, reconciler, outbox, marker, remote, events):
        """A rejected entry blocks the handover like a pending one."""
        remote.fail_when(lambda call: True, StatusError(422), times=None)
        answer_with(events, "sync")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FLUSH_FAILED
        assert await outbox.failed_count() == 1
        assert await marker.load() == "user-a"

    @pytest.mark.asyncio
    async def test_cancel_answer(self, handover, reconciler, store, outbox, marker, events):
        """Cancelling keeps local data and the previous owner."""
        answer_with(events, "cancel")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CANCELLED
        assert not result.proceed
        assert result.error == result.conflict.message
        assert await outbox.count() == 1
        assert await store.count("invoices") == 1
        assert await marker.load() == "user-a"

    @pytest.mark.asyncio
    async def test_unknown_answer_means_cancel(self, handover, reconciler, events):
        """Anything other than sync or clear cancels."""
        answer_with(events, "maybe later")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CANCELLED
        assert result.answer is ConfirmationAnswer.CANCEL

    @pytest.mark.asyncio
    async def test_unreadable_marker_treated_as_change(self, reconciler, marker, store):
        """A corrupt marker means the owner is unknown, so data is handed over."""
        marker.path.write_text("{not json")
        await store.put("customers", "c1", {"name": "Ann"})

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CLEARED
        assert await store.count("customers") == 0
        assert await marker.load() == "user-1"


class TestConfirmationProtocol:
    """Tests for the confirmation request and its timeouts."""

    @pytest.mark.asyncio
    async def test_no_listener_cancels(self, handover, reconciler, marker):
        """Without any listener the change is cancelled after a short wait."""
        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CANCELLED
        assert await marker.load() == "user-a"

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, handover, reconciler, events, outbox):
        """A listener that never answers counts as cancel."""
        requests = []
        events.on(CONFIRM_CLEAR_LOCAL_DATA, requests.append)

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CANCELLED
        assert len(requests) == 1
        assert requests[0].respond("clear") is False
        assert await outbox.count() == 1

    @pytest.mark.asyncio
    async def test_first_answer_wins(self, handover, reconciler, events, outbox):
        """Later answers are ignored."""
        accepted = []

        def listener(request):
            accepted.append(request.respond("clear"))
            accepted.append(request.respond("cancel"))

        events.on(CONFIRM_CLEAR_LOCAL_DATA, listener)

        result = await reconciler.reconcile()

        assert accepted == [True, False]
        assert result.outcome is ReconcileOutcome.CLEARED

    @pytest.mark.asyncio
    async def test_async_listener(self, handover, reconciler, events):
        """Listeners may answer later from a coroutine."""

        async def listener(request):
            await asyncio.sleep(0.01)
            request.respond(ConfirmationAnswer.CLEAR)

        events.on(CONFIRM_CLEAR_LOCAL_DATA, listener)

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CLEARED

    @pytest.mark.asyncio
    async def test_listener_registered_late(self, handover, reconciler, events):
        """A listener that appears within the wait still gets the request."""
        reconciler.config.listener_wait_seconds = 1.0

        async def register_later():
            await asyncio.sleep(0.02)
            answer_with(events, "clear")

        task = asyncio.ensure_future(register_later())
        result = await reconciler.reconcile()
        await task

        assert result.outcome is ReconcileOutcome.CLEARED


class TestForeignOwnedData:
    """Tests for local rows that name a different owner than the marker."""

    @pytest.mark.asyncio
    async def test_first_run_clears_foreign_rows(self, reconciler, store, marker):
        """With no marker, rows owned by someone else are not adopted."""
        await store.put("invoices", "srv_9", {"total": 5, "userId": "user-z"})
        await store.put("customers", "c1", {"name": "Ann"})

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CLEARED
        assert result.previous_principal == "user-z"
        assert result.details["foreign_owner"] == "user-z"
        assert await store.count("invoices") == 0
        assert await store.count("customers") == 0
        assert await marker.load() == "user-1"

    @pytest.mark.asyncio
    async def test_unchanged_marker_with_foreign_pending_asks(self, reconciler, store, outbox, marker, events):
        """Foreign rows with unsynced changes go through the confirmation flow."""
        await marker.save("user-1")
        await store.put("records", "client_r", {"amount": 5, "sellerId": {"_id": "user-z"}})
        await outbox.enqueue("records", "create", "client_r", {"amount": 5})
        requests = answer_with(events, "cancel")

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.CANCELLED
        assert requests[0].from_principal == "user-z"
        assert requests[0].to_principal == "user-1"
        assert await store.get("records", "client_r") is not None
        assert await outbox.count() == 1

    @pytest.mark.asyncio
    async def test_rows_of_current_owner_kept(self, reconciler, store, marker):
        """Rows naming the signed-in user, alone or among others, are kept."""
        await store.put("invoices", "srv_1", {"total": 5, "user": "user-1"})
        await store.put("customers", "srv_2", {"name": "Ann", "user": "user-z", "users": ["user-z", "user-1"]})

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FIRST_RUN
        assert await store.count("invoices") == 1
        assert await store.count("customers") == 1

    @pytest.mark.asyncio
    async def test_owner_fields_configurable(self, reconciler, store, marker):
        """Only the configured owner fields are inspected."""
        reconciler.config.owner_fields = ("createdBy",)
        await store.put("invoices", "srv_1", {"total": 5, "userId": "user-z"})

        result = await reconciler.reconcile()

        assert result.outcome is ReconcileOutcome.FIRST_RUN
        assert await store.count("invoices") == 1
