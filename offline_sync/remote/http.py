"""
HTTP remote store over aiohttp.

Routes, relative to ``base_url``:

- ``POST   /{type}``        create, responds with the created entity
- ``PUT    /{type}/{id}``   update, responds with the updated entity
- ``DELETE /{type}/{id}``   delete
- ``GET    /{type}``        list
- ``GET    /auth/whoami``   ``{"userId": ...}``

Entity types map to route segments with underscores turned into hyphens
(``utility_services`` -> ``/utility-services``). Entities carry their id as
``_id`` or ``id``; a ``{"data": ...}`` envelope is unwrapped, and list
responses may also be wrapped under the resource name (``{"invoices": [...]}``).
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import date, datetime
from typing import Any

import aiohttp

from ..exceptions import NetworkFailure, RemoteRejection
from .base import CreateResult, RemoteStore, is_retryable_status

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and "_id" not in body and "id" not in body:
        return body["data"]
    return body


# Resource-named list envelopes, e.g. {"invoices": [...]} or {"services": [...]}
_LIST_KEY_ALIASES = {"utility_services": ("services",)}


def _entity_list(body: Any, entity_type: str) -> list[dict[str, Any]] | None:
    if isinstance(body, dict):
        camel = "".join(
            part if i == 0 else part.title()
            for i, part in enumerate(entity_type.split("_"))
        )
        candidates = (entity_type, camel, *_LIST_KEY_ALIASES.get(entity_type, ()))
        found = next((body[key] for key in candidates if isinstance(body.get(key), list)), None)
        if found is None:
            lists = [value for value in body.values() if isinstance(value, list)]
            found = lists[0] if len(lists) == 1 else None
        body = found
    if not isinstance(body, list):
        return None
    return [item for item in body if isinstance(item, dict)]


def _entity_id(entity: Any) -> str | None:
    if not isinstance(entity, dict):
        return None
    value = entity.get("_id", entity.get("id"))
    return str(value) if value is not None else None


class HttpRemoteStore(RemoteStore):
    """
    Remote store talking to a REST API.

    Example:
        >>> remote = HttpRemoteStore("https://api.example.com/api", auth_token=token)
        >>> result = await remote.create_entity("invoices", {"total": 100})
        >>> result.remote_id
        '6650c1...'
        >>> await remote.close()
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the remote store.

        Args:
            base_url: API root, e.g. "https://api.example.com/api"
            auth_token: Bearer token sent with every request
            timeout: Total request timeout in seconds
            session: Existing client session to reuse (not closed by us)
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def set_auth_token(self, token: str | None) -> None:
        """Replace the bearer token, e.g. after the user signs in again."""
        self.auth_token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    @staticmethod
    def route(entity_type: str) -> str:
        return "/" + entity_type.replace("_", "-")

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        data = None
        if payload is not None:
            data = json.dumps(payload, default=_json_default)
            headers["Content-Type"] = "application/json"

        try:
            async with self._get_session().request(
                method, url, data=data, headers=headers, timeout=self.timeout
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    message = f"{method} {path} failed: {resp.status} {text[:200]}"
                    if is_retryable_status(resp.status):
                        raise NetworkFailure(message, status=resp.status)
                    raise RemoteRejection(message, status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailure(f"{method} {path} failed: {e}", cause=e) from e

        if not text.strip():
            return None
        try:
            return _unwrap(json.loads(text))
        except json.JSONDecodeError:
            logger.warning(f"Non-JSON response from {method} {path}")
            return None

    async def create_entity(self, entity_type: str, payload: dict[str, Any] | None) -> CreateResult:
        body = await self._request("POST", self.route(entity_type), payload or {})
        remote_id = _entity_id(body)
        if remote_id is None:
            # Accepted by the server; never re-POST.
            raise RemoteRejection(f"Create of {entity_type} returned no id")
        return CreateResult(remote_id=remote_id, canonical=body)

    async def update_entity(
        self, entity_type: str, remote_id: str, payload: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        body = await self._request("PUT", f"{self.route(entity_type)}/{remote_id}", payload or {})
        return body if isinstance(body, dict) else None

    async def delete_entity(self, entity_type: str, remote_id: str) -> None:
        await self._request("DELETE", f"{self.route(entity_type)}/{remote_id}")

    async def list_entities(self, entity_type: str) -> list[dict[str, Any]] | None:
        body = await self._request("GET", self.route(entity_type))
        return _entity_list(body, entity_type)

    async def whoami(self) -> str | None:
        body = await self._request("GET", "/auth/whoami")
        if not isinstance(body, dict):
            return None
        principal = body.get("userId") or body.get("user_id") or _entity_id(body)
        return str(principal) if principal else None

    async def close(self) -> None:
        """Close the client session if we created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
