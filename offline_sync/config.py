"""
Configuration for the offline sync engine.

Values can be given directly, read from environment variables, or loaded
from the ``sync:`` section of a YAML settings file:

```yaml
sync:
  batch_size: 50
  max_attempts: 5
  initial_backoff_seconds: 2
  remote_url: "https://api.example.com"
  db_path: "~/.offline_sync/local.db"
```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_TABLES = (
    "invoices",
    "customers",
    "records",
    "payments",
    "utility_services",
)

# Row fields naming the principal a local record belongs to
DEFAULT_OWNER_FIELDS = ("user", "userId", "users", "sellerId", "owner", "ownerId")

DEFAULT_HOME = Path.home() / ".offline_sync"

ENV_PREFIX = "OFFLINE_SYNC_"


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    # Drain
    batch_size: int = 50

    # Retry settings
    max_attempts: int = 5
    initial_backoff_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.5
    max_backoff_seconds: float = 300.0

    # Scheduling
    auto_sync_interval_seconds: float = 30.0
    enqueue_debounce_seconds: float = 0.3
    min_full_sync_interval_seconds: float = 60.0

    # Identity change confirmation
    confirmation_timeout_seconds: float = 300.0
    listener_wait_seconds: float = 5.0

    # Sanitization
    sanitize_max_depth: int = 20

    # Local tables owned by the signed-in principal
    primary_tables: tuple[str, ...] = DEFAULT_PRIMARY_TABLES
    owner_fields: tuple[str, ...] = DEFAULT_OWNER_FIELDS

    # Locations
    db_path: str | Path = field(default_factory=lambda: DEFAULT_HOME / "local.db")
    marker_path: str | Path = field(default_factory=lambda: DEFAULT_HOME / "identity.json")

    # Remote
    remote_url: str | None = None
    auth_token: str | None = None
    request_timeout_seconds: float = 30.0

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigurationError("batch_size", "must be at least 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts", "must be at least 1")
        if self.initial_backoff_seconds <= 0:
            raise ConfigurationError("initial_backoff_seconds", "must be positive")
        if self.backoff_multiplier <= 1:
            raise ConfigurationError("backoff_multiplier", "must be greater than 1")
        # Keeps the jittered delay for attempt n below the minimum for n + 1.
        if not 0 <= self.backoff_jitter < self.backoff_multiplier - 1:
            raise ConfigurationError(
                "backoff_jitter", "must be in [0, backoff_multiplier - 1)"
            )
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ConfigurationError(
                "max_backoff_seconds", "must not be below initial_backoff_seconds"
            )
        if self.sanitize_max_depth < 1:
            raise ConfigurationError("sanitize_max_depth", "must be at least 1")
        for name in (
            "auto_sync_interval_seconds",
            "enqueue_debounce_seconds",
            "min_full_sync_interval_seconds",
            "confirmation_timeout_seconds",
            "listener_wait_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(name, "must not be negative")
        self.primary_tables = tuple(self.primary_tables)
        self.owner_fields = tuple(self.owner_fields)
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigurationError("log_level", f"unknown level {self.log_level!r}")
        self.log_level = str(self.log_level).upper()
        if str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path).expanduser()
        self.marker_path = Path(self.marker_path).expanduser()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown sync setting: {key}")
                continue
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from OFFLINE_SYNC_* environment variables."""
        data: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            data[f.name] = _coerce(f.name, raw, f.default)
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Path) -> SyncConfig:
        """Load config from the ``sync`` section of a YAML settings file.

        A missing file or section yields the defaults.
        """
        if not path.exists():
            return cls()

        try:
            content = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(str(path), f"invalid YAML: {e}") from e

        section = content.get("sync", {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError("sync", "section must be a mapping")
        return cls.from_dict(section)


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if isinstance(default, tuple):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
    except ValueError as e:
        raise ConfigurationError(name, f"cannot parse {raw!r}") from e
    return raw
