"""
Clone-safety utilities for queued mutation payloads.

UI code hands the outbox arbitrary value trees: dataclasses, mappings,
pending awaitables, callbacks, objects that reference themselves. Before a
payload can be persisted it has to be reduced to scalars, dates, binary
blobs and plain lists/dicts. This module does that reduction without ever
failing on awkward input:

- Awaitables are resolved first; a rejected one drops only its own field
- Callables are dropped and never invoked
- Cycles are detected by object identity and replaced by a placeholder
- Depth is bounded; deeper subtrees are dropped whole
- The result is checked against the store's conformance rules and pruned
  bottom-up until it passes

``make_clone_safe`` is the diagnostic variant that keeps the shape of the
input and replaces unsafe values with descriptive string markers, and
``safe_stringify`` turns that into the JSON snapshot kept on fallback queue
entries.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
import types
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import UUID

from .exceptions import SanitizationFailure
from .models import EntityPayload
from .store.codec import SCALAR_TYPES, check_persistable

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 20

# Placeholder markers
CIRCULAR = "[Circular]"
FUNCTION = "[Function]"
AWAITABLE = "[Awaitable]"
MAX_DEPTH = "[MaxDepth]"
ACCESS_ERROR = "[AccessError]"


class _Dropped:
    """Sentinel for "nothing safe remains"."""

    _instance: _Dropped | None = None

    def __new__(cls) -> _Dropped:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "DROPPED"


DROPPED = _Dropped()

PersistCheck = Callable[[Any], None]


@dataclass
class SanitizeReport:
    """Non-fatal issues found while sanitizing one value tree."""

    issues: list[SanitizationFailure] = field(default_factory=list)

    def add(self, path: str, reason: str, cause: Exception | None = None) -> None:
        self.issues.append(SanitizationFailure(path, reason, cause))

    @property
    def paths(self) -> list[str]:
        return [issue.path for issue in self.issues]

    def __len__(self) -> int:
        return len(self.issues)


# Container kinds returned by _Walker.classify
_LEAF = "leaf"
_ARRAY = "array"
_MAP = "map"

_ACCESS_FAILED = object()


class _Walker:
    """Shared traversal for the dropping and the placeholder variants."""

    def __init__(self, max_depth: int, report: SanitizeReport, placeholders: bool):
        self.max_depth = max_depth
        self.report = report
        self.placeholders = placeholders

    def unsafe(self, marker: str, path: str, reason: str, cause: Exception | None = None) -> Any:
        self.report.add(path, reason, cause)
        return marker if self.placeholders else DROPPED

    def classify(self, value: Any, path: str) -> tuple[str, Any]:
        if isinstance(value, SCALAR_TYPES):
            return _LEAF, value
        if isinstance(value, (datetime, date, bytes)):
            return _LEAF, value
        if isinstance(value, (bytearray, memoryview)):
            return _LEAF, bytes(value)
        if isinstance(value, (Decimal, UUID, PurePath)):
            return _LEAF, str(value)
        if isinstance(value, EntityPayload):
            return _MAP, list(value.to_dict().items())
        if isinstance(value, types.ModuleType):
            return _LEAF, self.unsafe("[Unsupported:module]", path, "unsupported type module")
        if callable(value):
            return _LEAF, self.unsafe(FUNCTION, path, "callable dropped")
        if isinstance(value, Mapping):
            return _MAP, self._mapping_items(value, path)
        if isinstance(value, (list, tuple, set, frozenset)):
            return _ARRAY, list(value)
        if is_dataclass(value):
            return _MAP, self._attribute_items(value, [f.name for f in fields(value)])
        try:
            attributes = vars(value)
        except TypeError:
            type_name = type(value).__name__
            return _LEAF, self.unsafe(
                f"[Unsupported:{type_name}]", path, f"unsupported type {type_name}"
            )
        return _MAP, list(attributes.items())

    def _mapping_items(self, value: Mapping, path: str) -> list[tuple[Any, Any]]:
        try:
            keys = list(value.keys())
        except Exception as e:
            self.report.add(path, "mapping keys not readable", e)
            return []
        items = []
        for key in keys:
            try:
                items.append((key, value[key]))
            except Exception:
                items.append((key, _ACCESS_FAILED))
        return items

    def _attribute_items(self, value: Any, names: list[str]) -> list[tuple[str, Any]]:
        items = []
        for name in names:
            try:
                items.append((name, getattr(value, name)))
            except Exception:
                items.append((name, _ACCESS_FAILED))
        return items

    @staticmethod
    def key_name(key: Any) -> str:
        if isinstance(key, str):
            return key
        if isinstance(key, Enum):
            return str(key.value)
        return str(key)

    # -------------------------------------------------------------------------
    # Synchronous traversal
    # -------------------------------------------------------------------------

    def walk(self, value: Any, path: str, depth: int, active: set[int]) -> Any:
        if depth > self.max_depth:
            return self.unsafe(MAX_DEPTH, path, "max depth exceeded")
        if value is _ACCESS_FAILED:
            return self.unsafe(ACCESS_ERROR, path, "value not readable")
        if inspect.isawaitable(value):
            if not self.placeholders and inspect.iscoroutine(value):
                value.close()
            return self.unsafe(AWAITABLE, path, "unresolved awaitable")
        if isinstance(value, Enum):
            value = value.value

        kind, content = self.classify(value, path)
        if kind == _LEAF:
            return content

        if id(value) in active:
            self.report.add(path, "circular reference")
            return CIRCULAR
        active.add(id(value))
        try:
            if kind == _ARRAY:
                out_list = []
                for i, item in enumerate(content):
                    result = self.walk(item, f"{path}[{i}]", depth + 1, active)
                    if result is not DROPPED:
                        out_list.append(result)
                return out_list

            out_map = {}
            for key, item in content:
                name = self.key_name(key)
                result = self.walk(item, f"{path}.{name}", depth + 1, active)
                if result is not DROPPED:
                    out_map[name] = result
            return out_map
        finally:
            active.discard(id(value))

    # -------------------------------------------------------------------------
    # Asynchronous traversal
    # -------------------------------------------------------------------------

    async def walk_async(self, value: Any, path: str, depth: int, active: set[int]) -> Any:
        if depth > self.max_depth:
            return self.unsafe(MAX_DEPTH, path, "max depth exceeded")
        if value is _ACCESS_FAILED:
            return self.unsafe(ACCESS_ERROR, path, "value not readable")
        if inspect.isawaitable(value):
            try:
                resolved = await value
            except Exception as e:
                logger.warning("Dropping rejected awaitable at %s: %s", path, e)
                return self.unsafe(AWAITABLE, path, "awaitable rejected", e)
            return await self.walk_async(resolved, path, depth + 1, active)
        if isinstance(value, Enum):
            value = value.value

        kind, content = self.classify(value, path)
        if kind == _LEAF:
            return content

        if id(value) in active:
            self.report.add(path, "circular reference")
            return CIRCULAR
        active.add(id(value))
        try:
            if kind == _ARRAY:
                out_list = []
                for i, item in enumerate(content):
                    result = await self.walk_async(item, f"{path}[{i}]", depth + 1, active)
                    if result is not DROPPED:
                        out_list.append(result)
                return out_list

            out_map = {}
            for key, item in content:
                name = self.key_name(key)
                result = await self.walk_async(item, f"{path}.{name}", depth + 1, active)
                if result is not DROPPED:
                    out_map[name] = result
            return out_map
        finally:
            active.discard(id(value))


def _passes(check: PersistCheck, value: Any) -> bool:
    try:
        check(value)
    except Exception:
        return False
    return True


def prune_non_persistable(
    value: Any,
    check: PersistCheck = check_persistable,
    report: SanitizeReport | None = None,
    path: str = "<root>",
) -> Any:
    """Remove the subtrees of ``value`` that fail ``check``.

    Tries the whole tree first, then each field, recursing into failing
    containers so only the offending leaves are lost. Returns DROPPED when
    not even an empty container passes.
    """
    report = report if report is not None else SanitizeReport()

    if _passes(check, value):
        return value

    if isinstance(value, list):
        pruned_list = []
        for i, item in enumerate(value):
            kept = prune_non_persistable(item, check, report, f"{path}[{i}]")
            if kept is not DROPPED:
                pruned_list.append(kept)
        result: Any = pruned_list
    elif isinstance(value, dict):
        pruned_map = {}
        for key, item in value.items():
            kept = prune_non_persistable(item, check, report, f"{path}.{key}")
            if kept is not DROPPED:
                pruned_map[key] = kept
        result = pruned_map
    else:
        report.add(path, f"{type(value).__name__} rejected by store")
        return DROPPED

    if _passes(check, result):
        return result
    report.add(path, "container rejected by store after pruning")
    return DROPPED


def _conform(value: Any, check: PersistCheck, report: SanitizeReport) -> Any:
    if value is DROPPED:
        return DROPPED
    if _passes(check, value):
        return value
    logger.warning("Sanitized value failed conformance check, pruning")
    return prune_non_persistable(value, check, report)


async def sanitize(
    value: Any,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    check: PersistCheck = check_persistable,
    report: SanitizeReport | None = None,
) -> Any:
    """
    Reduce ``value`` to a persistence-safe tree.

    Every awaitable in the tree is awaited before inspection, so the result
    never holds an unresolved handle.

    Args:
        value: Arbitrary value tree
        max_depth: Nesting bound; deeper subtrees are dropped
        check: Structural conformance check (raises when not persistable)
        report: Collects non-fatal issues

    Returns:
        The safe tree, or DROPPED if nothing safe remains
    """
    report = report if report is not None else SanitizeReport()
    walker = _Walker(max_depth, report, placeholders=False)
    normalized = await walker.walk_async(value, "<root>", 0, set())
    return _conform(normalized, check, report)


def sanitize_sync(
    value: Any,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    check: PersistCheck = check_persistable,
    report: SanitizeReport | None = None,
) -> Any:
    """Synchronous variant of :func:`sanitize`. Awaitables are dropped."""
    report = report if report is not None else SanitizeReport()
    walker = _Walker(max_depth, report, placeholders=False)
    normalized = walker.walk(value, "<root>", 0, set())
    return _conform(normalized, check, report)


def make_clone_safe(
    value: Any,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    report: SanitizeReport | None = None,
) -> Any:
    """
    Replace unsafe values with descriptive markers instead of dropping them.

    Meant for diagnostics: the result keeps the shape of the input, so a
    person can see what was removed and where.

    Markers: "[Function]", "[Awaitable]", "[Circular]", "[MaxDepth]",
    "[AccessError]", "[Unsupported:<type>]".
    """
    report = report if report is not None else SanitizeReport()
    walker = _Walker(max_depth, report, placeholders=True)
    return walker.walk(value, "<root>", 0, set())


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return f"[Bytes:{base64.b64encode(value).decode('ascii')}]"
    return str(value)


def safe_stringify(value: Any, *, max_depth: int = 50) -> str:
    """Serialize any value to a JSON string. Never raises."""
    try:
        return json.dumps(make_clone_safe(value, max_depth=max_depth), default=_json_default)
    except Exception as e:
        logger.warning(f"safe_stringify fell back to repr: {e}")
        try:
            return json.dumps(repr(value))
        except Exception:
            return '"[StringifyFailed]"'
