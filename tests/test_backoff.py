"""
Tests for the retry delay curve.
"""

import random
from datetime import UTC, datetime, timedelta

import pytest

from offline_sync.config import SyncConfig
from offline_sync.exceptions import ConfigurationError
from offline_sync.sync.backoff import compute_backoff, next_attempt_time


class TestComputeBackoff:
    """Tests for compute_backoff."""

    def test_first_attempt_uses_initial_delay(self):
        """Without jitter the first retry waits the initial delay."""
        config = SyncConfig()
        assert compute_backoff(1, config, rand=lambda: 0.0) == 2.0
        assert compute_backoff(2, config, rand=lambda: 0.0) == 4.0

    def test_strictly_increasing_despite_jitter(self):
        """The worst jittered delay for n stays below the best for n + 1."""
        config = SyncConfig(max_backoff_seconds=10_000)
        for attempts in range(1, 10):
            worst = compute_backoff(attempts, config, rand=lambda: 0.999999)
            best_next = compute_backoff(attempts + 1, config, rand=lambda: 0.0)
            assert worst < best_next

    def test_random_draws_stay_monotonic(self):
        """Random jitter never breaks the ordering."""
        config = SyncConfig(max_backoff_seconds=10_000)
        rng = random.Random(42)
        for _ in range(200):
            attempts = rng.randint(1, 8)
            assert compute_backoff(attempts, config, rng.random) < compute_backoff(
                attempts + 1, config, rng.random
            )

    def test_capped_at_max(self):
        """Delays never exceed max_backoff_seconds."""
        config = SyncConfig()
        assert compute_backoff(50, config) == 300.0

    def test_huge_attempt_count_does_not_overflow(self):
        """Float overflow falls back to the cap."""
        config = SyncConfig()
        assert compute_backoff(5000, config) == config.max_backoff_seconds

    def test_zero_attempts_treated_as_first(self):
        """Attempt counts below one use the initial delay."""
        assert compute_backoff(0, SyncConfig(), rand=lambda: 0.0) == 2.0

    def test_next_attempt_time(self):
        """The next attempt is scheduled delay seconds after now."""
        now = datetime(2024, 1, 1, tzinfo=UTC)
        at = next_attempt_time(3, SyncConfig(), now, rand=lambda: 0.0)
        assert at == now + timedelta(seconds=8)


class TestBackoffConfig:
    """Tests for backoff configuration validation."""

    def test_jitter_must_stay_below_multiplier_gap(self):
        """Jitter that could overlap the next attempt's delay is rejected."""
        with pytest.raises(ConfigurationError):
            SyncConfig(backoff_multiplier=2.0, backoff_jitter=1.0)

    def test_multiplier_must_grow(self):
        """A multiplier of one or less is rejected."""
        with pytest.raises(ConfigurationError):
            SyncConfig(backoff_multiplier=1.0)
