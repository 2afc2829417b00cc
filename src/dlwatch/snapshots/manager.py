"""Snapshot manager: decides which observations become history.

Every observation refreshes the shadow baseline; only meaningful movement
(a new item, a status change, progress or byte counters past the noise
threshold) produces a snapshot row. Speed samples are kept for items that
are still transferring so trend conditions can be evaluated later.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dlwatch.db.models import ShadowState, Snapshot, SpeedSample
from dlwatch.snapshots import shadow_store
from dlwatch.snapshots.status import is_terminal, item_key, item_status
from dlwatch.snapshots.telemetry import derive_telemetry

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of processing one account's item list."""

    items_seen: int
    snapshots_written: int
    samples_written: int
    items_removed: int = 0


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def item_ratio(item: dict[str, Any]) -> float:
    """Share ratio, computed from byte counters when the service omits it."""
    if item.get("ratio") is not None:
        return _float(item["ratio"])
    downloaded = _int(item.get("total_downloaded"))
    if downloaded <= 0:
        return 0.0
    return _int(item.get("total_uploaded")) / downloaded


def records_speed(status: str) -> bool:
    """Whether an item in this status gets a speed sample per poll."""
    return status != "queued" and not is_terminal(status)


class SnapshotManager:
    """Filters observations into history and keeps the shadow baseline current."""

    def __init__(self, change_threshold: float = 0.05, byte_threshold: int = 50 * 1024 * 1024) -> None:
        self.change_threshold = change_threshold
        self.byte_threshold = byte_threshold

    async def last_known_states(
        self, session: AsyncSession, account_id: int, item_ids: list[str]
    ) -> dict[str, ShadowState]:
        return await shadow_store.get_states(session, account_id, item_ids)

    def should_persist(self, account_id: int, item: dict[str, Any], prior: ShadowState | None) -> bool:
        """True for first sightings, status transitions and movement past the noise threshold."""
        if prior is None:
            return True
        if item_status(item) != prior.last_state:
            return True

        if abs(_float(item.get("progress")) - (prior.last_progress or 0.0)) > self.change_threshold:
            return True

        size = _int(item.get("size"))
        noise = max(self.byte_threshold, size * self.change_threshold) if size > 0 else self.byte_threshold
        downloaded_delta = abs(_int(item.get("total_downloaded")) - (prior.last_downloaded or 0))
        uploaded_delta = abs(_int(item.get("total_uploaded")) - (prior.last_uploaded or 0))
        return downloaded_delta > noise or uploaded_delta > noise

    def build_snapshot(self, account_id: int, item: dict[str, Any], now: datetime | None = None) -> Snapshot:
        return Snapshot(
            account_id=account_id,
            item_id=item_key(item),
            payload=dict(item),
            state=item_status(item),
            progress=_float(item.get("progress")),
            dl_speed=_int(item.get("download_speed")),
            ul_speed=_int(item.get("upload_speed")),
            seeds=_int(item.get("seeds")),
            peers=_int(item.get("peers")),
            ratio=item_ratio(item),
            created_at=now or datetime.now(timezone.utc),
        )

    async def process_items(
        self,
        session: AsyncSession,
        account_id: int,
        items: list[dict[str, Any]],
        now: datetime | None = None,
    ) -> ProcessResult:
        """Persist history for one poll of an account, then refresh the baseline.

        Snapshots and speed samples go in one transaction. Shadow rows, with
        their activity timers, are upserted one item at a time afterwards and
        rows for items the account no longer lists are dropped.
        """
        now = now or datetime.now(timezone.utc)
        keyed = [(item_key(item), item) for item in items]
        prior_states = await self.last_known_states(session, account_id, [key for key, _ in keyed])

        snapshots: list[Snapshot] = []
        samples: list[SpeedSample] = []
        for key, item in keyed:
            if self.should_persist(account_id, item, prior_states.get(key)):
                snapshots.append(self.build_snapshot(account_id, item, now))
            if records_speed(item_status(item)):
                samples.append(
                    SpeedSample(
                        item_id=key,
                        timestamp=now,
                        total_downloaded=_int(item.get("total_downloaded")),
                        total_uploaded=_int(item.get("total_uploaded")),
                    )
                )

        try:
            session.add_all(snapshots)
            session.add_all(samples)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise

        for key, item in keyed:
            status = item_status(item)
            downloaded = _int(item.get("total_downloaded"))
            uploaded = _int(item.get("total_uploaded"))
            await shadow_store.upsert_state(
                session,
                account_id=account_id,
                item_id=key,
                downloaded=downloaded,
                uploaded=uploaded,
                progress=_float(item.get("progress")),
                state=status,
                now=now,
                telemetry=derive_telemetry(
                    prior_states.get(key), item, status=status, downloaded=downloaded, uploaded=uploaded, now=now
                ),
            )
        removed = await shadow_store.remove_missing(session, account_id, [key for key, _ in keyed])

        logger.debug(
            "snapshot_batch_processed",
            account_id=account_id,
            items=len(items),
            snapshots=len(snapshots),
            samples=len(samples),
            removed=removed,
        )
        return ProcessResult(
            items_seen=len(items),
            snapshots_written=len(snapshots),
            samples_written=len(samples),
            items_removed=removed,
        )

    async def prune_old_history(
        self, session: AsyncSession, horizon: timedelta, now: datetime | None = None
    ) -> int:
        """Delete snapshots and speed samples older than the horizon. Returns rows deleted."""
        cutoff = (now or datetime.now(timezone.utc)) - horizon
        snapshots = await session.execute(delete(Snapshot).where(Snapshot.created_at < cutoff))
        samples = await session.execute(delete(SpeedSample).where(SpeedSample.timestamp < cutoff))
        await session.commit()
        return (snapshots.rowcount or 0) + (samples.rowcount or 0)  # type: ignore[attr-defined]

    async def prune_speed_samples(
        self, session: AsyncSession, horizon: timedelta, now: datetime | None = None
    ) -> int:
        """Delete speed samples older than the (usually shorter) sample horizon."""
        cutoff = (now or datetime.now(timezone.utc)) - horizon
        result = await session.execute(delete(SpeedSample).where(SpeedSample.timestamp < cutoff))
        await session.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]
