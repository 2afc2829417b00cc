"""ORM models for the polling and automation worker.

Accounts are created by the registration flow and rules by the dashboard;
the worker owns the scheduling and bookkeeping columns.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from dlwatch.db.base import Base, BigIntPK, JSONType, UtcDateTime


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(Base):
    """Maps to the 'accounts' table."""

    __tablename__ = "accounts"
    __table_args__ = (Index("ix_accounts_due", "is_active", "next_poll_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    credential_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    last_polled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    next_poll_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_poll_error: Mapped[str | None] = mapped_column(String(512), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())


# ---------------------------------------------------------------------------
# Diff baseline and history
# ---------------------------------------------------------------------------


class ShadowState(Base):
    """Maps to the 'shadow_state' table. One row per item, dropped once the item disappears."""

    __tablename__ = "shadow_state"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    last_downloaded: Mapped[int] = mapped_column(BigInteger, default=0)
    last_uploaded: Mapped[int] = mapped_column(BigInteger, default=0)
    last_progress: Mapped[float] = mapped_column(Float, default=0.0)
    last_state: Mapped[str] = mapped_column(String(32), nullable=False)
    last_download_activity_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    stalled_since: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_upload_activity_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    upload_stalled_since: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)


class Snapshot(Base):
    """Maps to the 'snapshots' table. Append-only."""

    __tablename__ = "snapshots"
    __table_args__ = (Index("ix_snapshots_item_created", "item_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    dl_speed: Mapped[int] = mapped_column(BigInteger, default=0)
    ul_speed: Mapped[int] = mapped_column(BigInteger, default=0)
    seeds: Mapped[int] = mapped_column(Integer, default=0)
    peers: Mapped[int] = mapped_column(Integer, default=0)
    ratio: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)


class SpeedSample(Base):
    """Maps to the 'speed_samples' table. One row per poll per active item."""

    __tablename__ = "speed_samples"
    __table_args__ = (Index("ix_speed_samples_item_ts", "item_id", "timestamp"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
    total_downloaded: Mapped[int] = mapped_column(BigInteger, default=0)
    total_uploaded: Mapped[int] = mapped_column(BigInteger, default=0)


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


class AutomationRule(Base):
    """Maps to the 'automation_rules' table."""

    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    target_type: Mapped[str] = mapped_column(String(16), default="torrent", server_default="torrent")
    trigger: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    conditions: Mapped[Any] = mapped_column(JSONType, nullable=True)
    action: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    cooldown_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_executed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_evaluated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, server_default=func.now(), onupdate=func.now())


class RuleExecutionLog(Base):
    """Maps to the 'rule_execution_log' table. Append-only."""

    __tablename__ = "rule_execution_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(128), nullable=False)
    execution_type: Mapped[str] = mapped_column(String(16), nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
