"""
Identity marker and full-sync cooldown.

The marker remembers which principal the device-local data belongs to. It
is a small JSON file replaced atomically (temp file + rename), so a crash
never leaves a half-written owner behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

import aiofiles
import aiofiles.os

from ..exceptions import StoreError
from ..models import utcnow

logger = logging.getLogger(__name__)


class IdentityMarker:
    """Persisted id of the principal that owns the local data.

    Usage:
        marker = IdentityMarker(Path("~/.offline_sync/identity.json").expanduser())
        previous = await marker.load()
        await marker.save("user-123")

    With ``path=None`` the marker lives in memory only.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else None
        self._principal: str | None = None

    async def load(self) -> str | None:
        """Last saved principal, or None if there is none yet.

        Raises:
            StoreError: If the marker file exists but cannot be read
        """
        if self.path is None:
            return self._principal

        try:
            if not await aiofiles.os.path.exists(self.path):
                self._principal = None
            else:
                async with aiofiles.open(self.path, encoding="utf-8") as f:
                    content = await f.read()
                data = json.loads(content) if content.strip() else {}
                principal = data.get("principal") if isinstance(data, dict) else None
                self._principal = str(principal) if principal else None
        except json.JSONDecodeError as e:
            raise StoreError("read_marker", str(self.path), e) from e
        except OSError as e:
            raise StoreError("read_marker", str(self.path), e) from e

        return self._principal

    async def save(self, principal: str) -> None:
        """Persist ``principal`` as the owner of the local data."""
        if self.path is not None:
            await self._write({"principal": principal, "updated_at": utcnow().isoformat()})
        self._principal = principal
        logger.debug(f"Identity marker set to {principal}")

    async def reset(self) -> None:
        """Forget the owner. The next sync is treated as a first run."""
        if self.path is not None:
            try:
                if await aiofiles.os.path.exists(self.path):
                    await aiofiles.os.remove(self.path)
            except OSError as e:
                raise StoreError("reset_marker", str(self.path), e) from e
        self._principal = None

    async def _write(self, data: dict) -> None:
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        except OSError as e:
            raise StoreError("write_marker", str(self.path), e) from e

        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".tmp_", suffix=".json")
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2))
                await f.flush()
                os.fsync(f.fileno())

            await aiofiles.os.rename(temp_path, self.path)
        except Exception as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise StoreError("write_marker", str(self.path), e) from e


class SyncCooldown:
    """Minimum spacing between full syncs for an unchanged principal.

    Holds a "not before" instant on a monotonic clock. The interval can be
    changed at runtime, which tests use to disable the cooldown.
    """

    def __init__(self, interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._last_mark: float | None = None

    def is_ready(self) -> bool:
        return self.remaining() <= 0

    def remaining(self) -> float:
        """Seconds until the next full sync is allowed."""
        if self._last_mark is None:
            return 0.0
        return max(0.0, self._last_mark + self.interval_seconds - self.clock())

    def mark(self) -> None:
        """Record that a full sync just completed."""
        self._last_mark = self.clock()

    def reset(self) -> None:
        self._last_mark = None

    def set_interval(self, seconds: float) -> None:
        self.interval_seconds = max(0.0, float(seconds))
