"""
Remote store contract and error classification.

The remote store is the authoritative server-side copy of every entity.
The engine only needs create/update/delete per entity, a way to ask who is
signed in, and optionally a listing used to refresh local tables.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..exceptions import NetworkFailure, RemoteRejection

logger = logging.getLogger(__name__)

# Statuses that mean "try again later" rather than "this request is wrong"
RETRYABLE_STATUS_CODES = (408, 425, 429)


@dataclass
class CreateResult:
    """Outcome of a remote create."""

    remote_id: str
    canonical: dict[str, Any] | None = None


class RemoteStore(ABC):
    """Abstract remote store.

    Implementations raise whatever their transport raises; the processor
    runs every error through :func:`classify_remote_error`. Raising
    NetworkFailure or RemoteRejection directly is also fine.
    """

    @abstractmethod
    async def create_entity(self, entity_type: str, payload: dict[str, Any] | None) -> CreateResult:
        """Create an entity. Returns the server-assigned id and canonical form."""
        ...

    @abstractmethod
    async def update_entity(
        self, entity_type: str, remote_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        """Update an entity. Returns its canonical form if the server sends one."""
        ...

    @abstractmethod
    async def delete_entity(self, entity_type: str, remote_id: str) -> None:
        """Delete an entity."""
        ...

    @abstractmethod
    async def whoami(self) -> str | None:
        """Id of the currently authenticated principal."""
        ...

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]] | None:
        """All entities of a type, or None when listing is not supported."""
        return None

    async def close(self) -> None:
        """Release resources."""
        return None


def _extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from common client exceptions."""
    status = getattr(exc, "status_code", None)
    if status is not None:
        return int(status)
    # aiohttp.ClientResponseError
    status = getattr(exc, "status", None)
    if status is not None:
        return int(status)
    response = getattr(exc, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None) or getattr(response, "status", None)
        if code is not None:
            return int(code)
    return None


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES or status >= 500


def classify_remote_error(exc: Exception) -> NetworkFailure | RemoteRejection:
    """Map an arbitrary remote error to a recoverable or terminal failure.

    - Already classified errors are returned unchanged
    - HTTP 408/425/429 and 5xx are recoverable
    - Any other 4xx (validation, authorization, not found) is terminal
    - Connection errors, timeouts and anything unrecognized are recoverable
    """
    if isinstance(exc, (NetworkFailure, RemoteRejection)):
        return exc

    try:
        status = _extract_status_code(exc)
    except (TypeError, ValueError):
        status = None

    if status is not None:
        if is_retryable_status(status):
            return NetworkFailure(f"Remote unavailable ({status}): {exc}", status=status, cause=exc)
        if 400 <= status < 500:
            return RemoteRejection(f"Remote rejected request ({status}): {exc}", status=status, cause=exc)

    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
        return NetworkFailure(f"Remote unreachable: {exc}", cause=exc)

    logger.debug("Treating unrecognized remote error as recoverable: %r", exc)
    return NetworkFailure(f"Remote call failed: {exc}", status=status, cause=exc)
