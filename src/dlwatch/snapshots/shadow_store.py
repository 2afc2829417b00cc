"""Latest-known state per item, used as the snapshot diff baseline and for activity timers."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from dlwatch.db.models import ShadowState
from dlwatch.snapshots.telemetry import Telemetry


def _insert_for(session: AsyncSession) -> Any:
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def get_states(session: AsyncSession, account_id: int, item_ids: Iterable[str]) -> dict[str, ShadowState]:
    """Bulk-read shadow rows for the given items; missing ids were never seen."""
    ids = list(item_ids)
    if not ids:
        return {}
    result = await session.execute(
        select(ShadowState)
        .where(ShadowState.account_id == account_id, ShadowState.item_id.in_(ids))
        .execution_options(populate_existing=True)
    )
    return {row.item_id: row for row in result.scalars()}


async def upsert_state(
    session: AsyncSession,
    *,
    account_id: int,
    item_id: str,
    downloaded: int,
    uploaded: int,
    progress: float,
    state: str,
    now: datetime,
    telemetry: Telemetry | None = None,
) -> None:
    """Insert or overwrite the shadow row for one item and commit it."""
    timers = asdict(telemetry or Telemetry())
    insert = _insert_for(session)
    stmt = insert(ShadowState).values(
        item_id=item_id,
        account_id=account_id,
        last_downloaded=downloaded,
        last_uploaded=uploaded,
        last_progress=progress,
        last_state=state,
        updated_at=now,
        **timers,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ShadowState.item_id],
        set_={
            "account_id": stmt.excluded.account_id,
            "last_downloaded": stmt.excluded.last_downloaded,
            "last_uploaded": stmt.excluded.last_uploaded,
            "last_progress": stmt.excluded.last_progress,
            "last_state": stmt.excluded.last_state,
            "updated_at": stmt.excluded.updated_at,
            **{name: stmt.excluded[name] for name in timers},
        },
    )
    await session.execute(stmt)
    await session.commit()


async def remove_missing(session: AsyncSession, account_id: int, seen_ids: Iterable[str]) -> int:
    """Drop the account's shadow rows for items the service no longer lists. Returns rows deleted."""
    stmt = delete(ShadowState).where(ShadowState.account_id == account_id)
    ids = list(seen_ids)
    if ids:
        stmt = stmt.where(ShadowState.item_id.not_in(ids))
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0  # type: ignore[attr-defined]
