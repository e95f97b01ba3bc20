"""Retry delay curve for queue entries."""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import datetime, timedelta

from ..config import SyncConfig


def compute_backoff(
    attempts: int,
    config: SyncConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before the next attempt of an entry.

    ``initial * multiplier ** (attempts - 1) * (1 + jitter * U)`` with U in
    [0, 1), capped at ``max_backoff_seconds``. Config validation keeps
    ``jitter < multiplier - 1``, so the largest delay for one attempt count
    is still below the smallest delay for the next.

    Args:
        attempts: Attempts made so far, including the one that just failed
        config: Sync configuration
        rand: Source of U, injectable for tests

    Returns:
        Delay in seconds
    """
    exponent = max(attempts, 1) - 1
    try:
        base = config.initial_backoff_seconds * config.backoff_multiplier**exponent
    except OverflowError:
        return config.max_backoff_seconds
    delay = base * (1 + config.backoff_jitter * rand())
    return min(delay, config.max_backoff_seconds)


def next_attempt_time(
    attempts: int,
    config: SyncConfig,
    now: datetime,
    rand: Callable[[], float] = random.random,
) -> datetime:
    return now + timedelta(seconds=compute_backoff(attempts, config, rand))
