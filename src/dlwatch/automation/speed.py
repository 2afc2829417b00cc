"""Throughput trends reconstructed from per-poll speed samples."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dlwatch.db.models import SpeedSample


async def load_speed_history(
    session: AsyncSession, item_ids: Iterable[str], since: datetime
) -> dict[str, list[SpeedSample]]:
    """Samples per item from ``since`` onwards, oldest first."""
    ids = list(item_ids)
    if not ids:
        return {}
    result = await session.execute(
        select(SpeedSample)
        .where(SpeedSample.item_id.in_(ids), SpeedSample.timestamp >= since)
        .order_by(SpeedSample.item_id, SpeedSample.timestamp.asc())
    )
    history: dict[str, list[SpeedSample]] = defaultdict(list)
    for sample in result.scalars():
        history[sample.item_id].append(sample)
    return dict(history)


def average_speed(samples: Sequence[Any], field: str, now: datetime, hours: float) -> float:
    """Average bytes/second of a cumulative counter over the last ``hours``.

    Needs at least two samples inside the window; otherwise 0.
    """
    cutoff = now - timedelta(hours=hours)
    window = [s for s in samples if s.timestamp >= cutoff]
    if len(window) < 2:
        return 0.0
    first, last = window[0], window[-1]
    elapsed = (last.timestamp - first.timestamp).total_seconds()
    if elapsed <= 0:
        return 0.0
    return max(0.0, (getattr(last, field) - getattr(first, field)) / elapsed)
