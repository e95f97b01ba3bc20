"""
Shared test configuration and fixtures.

Provides a scriptable in-memory remote store, so sync behavior can be
exercised without a server, plus fixtures wiring the engine together over
the in-memory local store.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest

from offline_sync.config import SyncConfig
from offline_sync.events import EventBus
from offline_sync.identity import IdentityMarker, IdentityReconciler, SyncCooldown
from offline_sync.remote import CreateResult, RemoteStore
from offline_sync.store import MemoryStore
from offline_sync.sync import Outbox, SyncProcessor


class StatusError(Exception):
    """Error carrying an HTTP status, like the ones client libraries raise."""

    def __init__(self, status: int, message: str = ""):
        super().__init__(message or f"HTTP {status}")
        self.status = status


@dataclass
class ScriptedFailure:
    predicate: Callable[[tuple], bool]
    error: Exception
    remaining: int | None = 1


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote store for testing.

    Every call is recorded in ``calls`` as (action, entity_type, remote_id,
    payload). Failures are scripted with :meth:`fail_when`.
    """

    def __init__(self, principal: str | None = "user-1"):
        self.principal = principal
        self.whoami_error: Exception | None = None
        self.entities: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple] = []
        self.supports_listing = False
        self.gate: asyncio.Event | None = None
        self.closed = False
        self._failures: list[ScriptedFailure] = []
        self._seq = 0

    def fail_when(
        self,
        predicate: Callable[[tuple], bool],
        error: Exception,
        times: int | None = 1,
    ) -> None:
        """Raise ``error`` for calls matching ``predicate`` (``times=None`` means always)."""
        self._failures.append(ScriptedFailure(predicate, error, times))

    def calls_for(self, action: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == action]

    async def _record(self, call: tuple) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        for failure in self._failures:
            if failure.remaining == 0 or not failure.predicate(call):
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
            raise failure.error

    async def create_entity(self, entity_type: str, payload: dict[str, Any] | None) -> CreateResult:
        await self._record(("create", entity_type, None, payload))
        self._seq += 1
        remote_id = f"srv_{self._seq}"
        entity = {**(payload or {}), "_id": remote_id}
        self.entities.setdefault(entity_type, {})[remote_id] = entity
        return CreateResult(remote_id=remote_id, canonical=dict(entity))

    async def update_entity(
        self, entity_type: str, remote_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        await self._record(("update", entity_type, remote_id, payload))
        table = self.entities.setdefault(entity_type, {})
        entity = {**table.get(remote_id, {}), **(payload or {}), "_id": remote_id}
        table[remote_id] = entity
        return dict(entity)

    async def delete_entity(self, entity_type: str, remote_id: str) -> None:
        await self._record(("delete", entity_type, remote_id, None))
        self.entities.get(entity_type, {}).pop(remote_id, None)

    async def whoami(self) -> str | None:
        if self.whoami_error is not None:
            raise self.whoami_error
        return self.principal

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]] | None:
        if not self.supports_listing:
            return None
        return [dict(entity) for entity in self.entities.get(entity_type, {}).values()]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def config(tmp_path) -> SyncConfig:
    """Config with short waits so tests run fast."""
    return SyncConfig(
        max_attempts=3,
        enqueue_debounce_seconds=0.01,
        listener_wait_seconds=0.05,
        confirmation_timeout_seconds=0.2,
        db_path=":memory:",
        marker_path=tmp_path / "identity.json",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def outbox(store, config) -> Outbox:
    return Outbox(store, config, rand=lambda: 0.0)


@pytest.fixture
def processor(store, outbox, remote, events, config) -> SyncProcessor:
    return SyncProcessor(store, outbox, remote, events=events, config=config)


@pytest.fixture
def marker(config) -> IdentityMarker:
    return IdentityMarker(config.marker_path)


@pytest.fixture
def reconciler(store, outbox, processor, remote, events, marker, config) -> IdentityReconciler:
    return IdentityReconciler(
        store,
        outbox,
        processor,
        remote,
        events,
        marker,
        cooldown=SyncCooldown(config.min_full_sync_interval_seconds),
        config=config,
    )
