"""Batch sizing for the poll tick."""

from __future__ import annotations

import math


def ticks_per_cycle(target_interval_minutes: float, tick_interval_minutes: float) -> float:
    """How many poll ticks fit into one target interval (never below one)."""
    if target_interval_minutes <= 0 or tick_interval_minutes <= 0:
        raise ValueError("intervals must be positive")
    return max(1.0, target_interval_minutes / tick_interval_minutes)


def accounts_per_tick(active_accounts: int, target_interval_minutes: float, tick_interval_minutes: float) -> int:
    """Accounts to poll per tick so the whole population is covered once per target interval.

    >>> accounts_per_tick(1000, 30, 2)
    67
    """
    if active_accounts <= 0:
        return 0
    return max(1, math.ceil(active_accounts / ticks_per_cycle(target_interval_minutes, tick_interval_minutes)))
