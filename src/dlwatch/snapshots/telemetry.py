"""Activity and stall timers derived from consecutive observations.

Activity timestamps move whenever an item's byte counters grow between
polls. A downloading item that gains no bytes for longer than
``STALL_THRESHOLD`` is stalled from its last download activity; a seeding
item that uploads nothing for as long is upload-stalled the same way.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

STALL_THRESHOLD = timedelta(minutes=5)

# Items reported stalled with no recorded activity get a timestamp old enough to count as stalled.
BACKFILL_MARGIN = timedelta(minutes=1)

NOT_STALLED_STATES = frozenset({"downloading", "uploading", "seeding", "completed"})


def parse_timestamp(raw: Any) -> datetime | None:
    """ISO-8601 string or datetime to an aware UTC datetime; None when unparseable."""
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, str) and raw:
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Telemetry:
    last_download_activity_at: datetime | None = None
    stalled_since: datetime | None = None
    last_upload_activity_at: datetime | None = None
    upload_stalled_since: datetime | None = None

    @classmethod
    def from_shadow(cls, shadow: Any) -> Telemetry:
        return cls(
            last_download_activity_at=shadow.last_download_activity_at,
            stalled_since=shadow.stalled_since,
            last_upload_activity_at=shadow.last_upload_activity_at,
            upload_stalled_since=shadow.upload_stalled_since,
        )


def _first_sighting(item: dict[str, Any], status: str, downloaded: int, uploaded: int, now: datetime) -> Telemetry:
    if status == "downloading":
        return Telemetry(last_download_activity_at=now)
    if status == "seeding":
        return Telemetry(last_upload_activity_at=now)

    seen = now - STALL_THRESHOLD - BACKFILL_MARGIN if status == "stalled" else now
    telemetry = Telemetry(
        last_download_activity_at=seen if downloaded > 0 else None,
        last_upload_activity_at=seen if uploaded > 0 else None,
    )
    return _mark_reported_stall(telemetry, item, status, downloaded, now)


def _mark_reported_stall(
    telemetry: Telemetry, item: dict[str, Any], status: str, downloaded: int, now: datetime
) -> Telemetry:
    """An item the service already reports stalled is stalled since its last download activity."""
    if status != "stalled" or telemetry.stalled_since is not None:
        return telemetry
    if telemetry.last_download_activity_at is not None:
        return replace(telemetry, stalled_since=telemetry.last_download_activity_at)
    if downloaded == 0:
        return replace(telemetry, stalled_since=parse_timestamp(item.get("created_at")) or now)
    return telemetry


def derive_telemetry(
    prior: Any,
    item: dict[str, Any],
    *,
    status: str,
    downloaded: int,
    uploaded: int,
    now: datetime,
) -> Telemetry:
    """Next timers for an item given its previous shadow row (None on first sighting)."""
    if prior is None:
        return _first_sighting(item, status, downloaded, uploaded, now)

    last_dl = prior.last_download_activity_at
    stalled = prior.stalled_since
    last_ul = prior.last_upload_activity_at
    ul_stalled = prior.upload_stalled_since
    download_moved = downloaded > (prior.last_downloaded or 0)
    upload_moved = uploaded > (prior.last_uploaded or 0)

    if download_moved:
        last_dl, stalled = now, None
    if upload_moved:
        last_ul, ul_stalled = now, None

    if status != prior.last_state:
        if status == "downloading":
            last_dl = now
        if status == "seeding":
            last_ul = now
        if status in NOT_STALLED_STATES:
            stalled = None

    seen = now - STALL_THRESHOLD - BACKFILL_MARGIN if status == "stalled" else now
    if last_dl is None and downloaded > 0:
        last_dl = seen
    if last_ul is None and uploaded > 0:
        last_ul = seen

    if (
        status == "downloading"
        and stalled is None
        and not download_moved
        and last_dl is not None
        and now - last_dl > STALL_THRESHOLD
    ):
        stalled = last_dl

    if (
        status == "seeding"
        and ul_stalled is None
        and not upload_moved
        and last_ul is not None
        and now - last_ul > STALL_THRESHOLD
    ):
        ul_stalled = last_ul

    telemetry = Telemetry(
        last_download_activity_at=last_dl,
        stalled_since=stalled,
        last_upload_activity_at=last_ul,
        upload_stalled_since=ul_stalled,
    )
    return _mark_reported_stall(telemetry, item, status, downloaded, now)
