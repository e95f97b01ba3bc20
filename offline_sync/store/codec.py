"""
Value codec for persisted rows.

Defines which value trees a local store accepts (the structural
conformance check) and how they are encoded to JSON text:

- Scalars: None, bool, int, float, str
- Dates: datetime and date, tagged so they round-trip with their type
- Binary blobs: bytes, base64-encoded under a tag
- Plain arrays (list) and plain maps (dict with str keys)

Anything else, and any cyclic structure, fails the check.
"""

from __future__ import annotations

import base64
import json
from datetime import date, datetime
from typing import Any

from ..exceptions import NotPersistableError

_DATETIME_TAG = "$date"
_DATE_TAG = "$day"
_BYTES_TAG = "$bytes"
_MAP_TAG = "$map"
_TAGS = {_DATETIME_TAG, _DATE_TAG, _BYTES_TAG, _MAP_TAG}

SCALAR_TYPES = (type(None), bool, int, float, str)


def check_persistable(value: Any, path: str = "<root>") -> None:
    """Raise NotPersistableError unless ``value`` is a persistable tree."""
    _check(value, path, set())


def is_persistable(value: Any) -> bool:
    """Boolean form of :func:`check_persistable`."""
    try:
        check_persistable(value)
    except NotPersistableError:
        return False
    return True


def _check(value: Any, path: str, active: set[int]) -> None:
    if isinstance(value, SCALAR_TYPES) or isinstance(value, (bytes, date)):
        return
    if isinstance(value, (list, dict)):
        if id(value) in active:
            raise NotPersistableError(path, "cycle")
        active.add(id(value))
        try:
            if isinstance(value, list):
                for i, item in enumerate(value):
                    _check(item, f"{path}[{i}]", active)
            else:
                for key, item in value.items():
                    if not isinstance(key, str):
                        raise NotPersistableError(f"{path}.{key!r}", f"key {type(key).__name__}")
                    _check(item, f"{path}.{key}", active)
        finally:
            active.discard(id(value))
        return
    raise NotPersistableError(path, type(value).__name__)


def encode_value(value: Any) -> str:
    """Encode a persistable tree to JSON text."""
    check_persistable(value)
    return json.dumps(_to_json(value), separators=(",", ":"))


def decode_value(text: str) -> Any:
    """Decode JSON text produced by :func:`encode_value`."""
    return _from_json(json.loads(text))


def _to_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {_DATE_TAG: value.isoformat()}
    if isinstance(value, bytes):
        return {_BYTES_TAG: base64.b64encode(value).decode("ascii")}
    if isinstance(value, list):
        return [_to_json(item) for item in value]
    if isinstance(value, dict):
        out = {key: _to_json(item) for key, item in value.items()}
        if len(out) == 1 and next(iter(out)) in _TAGS:
            return {_MAP_TAG: out}
        return out
    return value


def _from_json(value: Any) -> Any:
    if isinstance(value, list):
        return [_from_json(item) for item in value]
    if isinstance(value, dict):
        if len(value) == 1:
            tag, inner = next(iter(value.items()))
            if tag == _DATETIME_TAG:
                return datetime.fromisoformat(inner)
            if tag == _DATE_TAG:
                return date.fromisoformat(inner)
            if tag == _BYTES_TAG:
                return base64.b64decode(inner)
            if tag == _MAP_TAG:
                return {key: _from_json(item) for key, item in inner.items()}
        return {key: _from_json(item) for key, item in value.items()}
    return value
