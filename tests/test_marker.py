"""
Tests for the identity marker and full-sync cooldown.
"""

import json

import pytest

from offline_sync.exceptions import StoreError
from offline_sync.identity import IdentityMarker, SyncCooldown


class TestIdentityMarker:
    """Tests for the persisted owner marker."""

    @pytest.mark.asyncio
    async def test_missing_file_means_no_owner(self, tmp_path):
        """No file yet means no recorded owner."""
        assert await IdentityMarker(tmp_path / "identity.json").load() is None

    @pytest.mark.asyncio
    async def test_save_and_reload(self, tmp_path):
        """A saved owner is read back by a fresh marker."""
        path = tmp_path / "state" / "identity.json"
        await IdentityMarker(path).save("user-1")

        assert await IdentityMarker(path).load() == "user-1"
        data = json.loads(path.read_text())
        assert data["principal"] == "user-1"
        assert "updated_at" in data

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, tmp_path):
        """The atomic write cleans up after itself."""
        path = tmp_path / "identity.json"
        marker = IdentityMarker(path)
        await marker.save("user-1")
        await marker.save("user-2")

        assert [p.name for p in tmp_path.iterdir()] == ["identity.json"]
        assert await marker.load() == "user-2"

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        """An unreadable marker raises StoreError."""
        path = tmp_path / "identity.json"
        path.write_text("{oops")

        with pytest.raises(StoreError):
            await IdentityMarker(path).load()

    @pytest.mark.asyncio
    async def test_reset(self, tmp_path):
        """Reset forgets the owner and removes the file."""
        path = tmp_path / "identity.json"
        marker = IdentityMarker(path)
        await marker.save("user-1")

        await marker.reset()

        assert not path.exists()
        assert await marker.load() is None

    @pytest.mark.asyncio
    async def test_memory_only(self):
        """Without a path the marker lives in memory."""
        marker = IdentityMarker()
        await marker.save("user-1")

        assert await marker.load() == "user-1"


class TestSyncCooldown:
    """Tests for the full-sync cooldown."""

    def test_ready_until_marked(self):
        """A fresh cooldown allows a sync right away."""
        cooldown = SyncCooldown(60)

        assert cooldown.is_ready()
        assert cooldown.remaining() == 0.0

    def test_interval_after_mark(self):
        """After a sync the next one waits the interval."""
        now = [100.0]
        cooldown = SyncCooldown(60, clock=lambda: now[0])
        cooldown.mark()

        now[0] = 130.0
        assert not cooldown.is_ready()
        assert cooldown.remaining() == 30.0

        now[0] = 160.0
        assert cooldown.is_ready()

    def test_reset_and_interval_change(self):
        """Reset clears the mark; a zero interval disables the cooldown."""
        cooldown = SyncCooldown(60)
        cooldown.mark()
        cooldown.reset()
        assert cooldown.is_ready()

        cooldown.mark()
        cooldown.set_interval(0)
        assert cooldown.is_ready()
