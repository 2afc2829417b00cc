"""Lifecycle status derivation for download items."""

from __future__ import annotations

from typing import Any

TERMINAL_STATES = frozenset({"completed", "failed", "inactive"})

STATUS_LABELS = (
    "queued",
    "failed",
    "stalled",
    "metadl",
    "checking_resume_data",
    "completed",
    "downloading",
    "seeding",
    "uploading",
    "inactive",
    "unknown",
)


def item_status(item: dict[str, Any]) -> str:
    """Derive a status label from the raw item flags.

    ``download_state`` keywords win over the finished/present/active flags;
    an item with none of those set is still queued.
    """
    download_state = (item.get("download_state") or "").lower()
    finished = bool(item.get("download_finished"))
    present = bool(item.get("download_present"))
    active = bool(item.get("active"))

    if item.get("queued") or (not download_state and not finished and not active):
        return "queued"

    if "failed" in download_state:
        return "failed"
    if "stalled" in download_state:
        return "stalled"
    if "metadl" in download_state:
        return "metadl"
    if "checkingresumedata" in download_state:
        return "checking_resume_data"

    if finished and present and not active:
        return "completed"
    if active and not finished and not present:
        return "downloading"
    if finished and present and active:
        return "seeding"
    if finished and not present and active:
        return "uploading"
    if not active and not present:
        return "inactive"
    return "unknown"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def item_key(item: dict[str, Any]) -> str:
    """Stable identifier for an item across polls.

    Queued entries live in a separate id space on the service side.
    """
    if item.get("queued"):
        return f"queued-{item['id']}"
    return str(item["id"])
