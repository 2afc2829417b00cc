"""Poller: fetches each due account's items and advances its schedule.

Each tick polls a bounded batch of the most overdue accounts. Per-account
work runs under a semaphore with a small positional stagger, and every
account succeeds or fails on its own.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dlwatch.config import Settings
from dlwatch.db.models import Account
from dlwatch.polling.batching import accounts_per_tick
from dlwatch.remote.client import DownloadApiClient
from dlwatch.remote.errors import RemoteApiError, RemoteAuthError, TransientRemoteError
from dlwatch.security.crypto import CipherError, CredentialCipher
from dlwatch.snapshots.manager import SnapshotManager

logger = structlog.get_logger()

ClientFactory = Callable[[str], DownloadApiClient]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DueAccount:
    id: int
    credential_encrypted: str


@dataclass
class PollerMetrics:
    ticks: int = 0
    polls: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    auth_failures: int = 0
    snapshots_written: int = 0
    last_tick_at: datetime | None = None
    last_tick_duration_ms: float | None = None
    last_batch_size: int = 0


@dataclass
class TickResult:
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: dict[int, str] = field(default_factory=dict)


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, RemoteAuthError):
        return "auth"
    if isinstance(exc, TransientRemoteError):
        return "transient"
    if isinstance(exc, RemoteApiError):
        return "remote"
    if isinstance(exc, CipherError):
        return "credential"
    if isinstance(exc, SQLAlchemyError):
        return "persistence"
    return "unexpected"


class Poller:
    """Rate-controlled fan-out over the account population."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        snapshots: SnapshotManager,
        cipher: CredentialCipher,
        client_factory: ClientFactory,
        *,
        target_interval: timedelta = timedelta(minutes=30),
        tick_interval: timedelta = timedelta(minutes=2),
        retry_interval: timedelta = timedelta(minutes=5),
        max_concurrency: int = 7,
        fetch_timeout: float = 60.0,
        stagger_seconds: float = 0.5,
        estimated_active_accounts: int = 0,
        count_refresh_ticks: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        if retry_interval >= target_interval:
            raise ValueError("retry interval must be shorter than the target interval")
        self._session_factory = session_factory
        self._snapshots = snapshots
        self._cipher = cipher
        self._client_factory = client_factory
        self.target_interval = target_interval
        self.tick_interval = tick_interval
        self.retry_interval = retry_interval
        self.max_concurrency = max_concurrency
        self.fetch_timeout = fetch_timeout
        self.stagger_seconds = stagger_seconds
        self.count_refresh_ticks = max(1, count_refresh_ticks)
        self._clock = clock
        self._active_estimate: int | None = estimated_active_accounts or None
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.metrics = PollerMetrics()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher,
        snapshots: SnapshotManager | None = None,
        client_factory: ClientFactory | None = None,
    ) -> Poller:
        def default_client(token: str) -> DownloadApiClient:
            return DownloadApiClient(
                token,
                base_url=settings.api_base_url,
                api_version=settings.api_version,
                timeout=settings.api_timeout_seconds,
            )

        return cls(
            session_factory,
            snapshots or SnapshotManager(settings.snapshot_change_threshold, settings.snapshot_byte_threshold),
            cipher,
            client_factory or default_client,
            target_interval=timedelta(minutes=settings.poll_target_interval_minutes),
            tick_interval=timedelta(minutes=settings.poll_tick_interval_minutes),
            retry_interval=timedelta(minutes=settings.poll_retry_interval_minutes),
            max_concurrency=settings.max_concurrent_polls,
            fetch_timeout=settings.poll_fetch_timeout_seconds,
            stagger_seconds=settings.poll_stagger_seconds,
            estimated_active_accounts=settings.estimated_active_accounts,
            count_refresh_ticks=settings.account_count_refresh_ticks,
        )

    # ------------------------------------------------------------------
    # Batch sizing and selection
    # ------------------------------------------------------------------

    def batch_size(self, active_accounts: int) -> int:
        return accounts_per_tick(
            active_accounts,
            self.target_interval.total_seconds() / 60,
            self.tick_interval.total_seconds() / 60,
        )

    async def _count_active(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count()).select_from(Account).where(Account.is_active.is_(True)))
        return int(result.scalar_one())

    async def _active_count(self, session: AsyncSession) -> int:
        """Active-account estimate, re-measured every few ticks rather than per tick."""
        refresh_due = (self.metrics.ticks - 1) % self.count_refresh_ticks == 0
        if self._active_estimate is None or (refresh_due and self.metrics.ticks > 1):
            self._active_estimate = await self._count_active(session)
        return self._active_estimate

    async def select_due(self, session: AsyncSession, now: datetime, limit: int) -> list[DueAccount]:
        """Most overdue active accounts first; never-polled accounts lead."""
        if limit <= 0:
            return []
        result = await session.execute(
            select(Account.id, Account.credential_encrypted)
            .where(
                Account.is_active.is_(True),
                or_(Account.next_poll_at.is_(None), Account.next_poll_at <= now),
            )
            .order_by(Account.next_poll_at.asc().nulls_first(), Account.id)
            .limit(limit)
        )
        return [DueAccount(id=row.id, credential_encrypted=row.credential_encrypted) for row in result]

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """Poll one batch of due accounts."""
        started = time.monotonic()
        self.metrics.ticks += 1
        now = self._clock()

        async with self._session_factory() as session:
            active = await self._active_count(session)
            limit = self.batch_size(active)
            due = await self.select_due(session, now, limit)

        self.metrics.last_batch_size = limit
        result = TickResult(selected=len(due))
        if due:
            outcomes = await asyncio.gather(
                *(self._run_staggered(index, account) for index, account in enumerate(due)),
                return_exceptions=True,
            )
            for account, outcome in zip(due, outcomes):
                if outcome is None:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    result.failures[account.id] = outcome if isinstance(outcome, str) else _failure_kind(outcome)

        self.metrics.last_tick_at = now
        self.metrics.last_tick_duration_ms = round((time.monotonic() - started) * 1000, 1)
        logger.info(
            "poll_tick_completed",
            active_estimate=active,
            batch_size=limit,
            selected=result.selected,
            succeeded=result.succeeded,
            failed=result.failed,
            duration_ms=self.metrics.last_tick_duration_ms,
        )
        return result

    async def _run_staggered(self, index: int, account: DueAccount) -> str | None:
        if index and self.stagger_seconds > 0:
            await asyncio.sleep(index * self.stagger_seconds)
        async with self._semaphore:
            return await self.poll_account(account)

    # ------------------------------------------------------------------
    # Per-account work
    # ------------------------------------------------------------------

    async def fetch_items(self, account: DueAccount) -> list[dict[str, Any]]:
        """Decrypt the credential and fetch current plus queued items."""
        token = self._cipher.decrypt(account.credential_encrypted)
        async with self._client_factory(token) as client:
            return await client.list_items("torrent")

    async def poll_account(self, account: DueAccount) -> str | None:
        """Poll one account. Returns None on success, else the failure kind."""
        self.metrics.polls += 1
        try:
            items = await asyncio.wait_for(self.fetch_items(account), timeout=self.fetch_timeout)
            async with self._session_factory() as session:
                processed = await self._snapshots.process_items(session, account.id, items, self._clock())
                await self._mark_success(session, account.id)
        except Exception as exc:
            kind = _failure_kind(exc)
            self._count_failure(kind)
            log = logger.exception if kind == "unexpected" else logger.warning
            log("account_poll_failed", account_id=account.id, kind=kind, error=str(exc) or type(exc).__name__)
            await self._mark_failure(account.id, f"{kind}: {exc}"[:512])
            return kind

        self.metrics.successes += 1
        self.metrics.snapshots_written += processed.snapshots_written
        return None

    def _count_failure(self, kind: str) -> None:
        self.metrics.failures += 1
        if kind == "timeout":
            self.metrics.timeouts += 1
        elif kind == "auth":
            self.metrics.auth_failures += 1

    async def _mark_success(self, session: AsyncSession, account_id: int) -> None:
        now = self._clock()
        await session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(
                last_polled_at=now,
                next_poll_at=now + self.target_interval,
                consecutive_failures=0,
                last_poll_error=None,
            )
        )
        await session.commit()

    async def _mark_failure(self, account_id: int, error: str) -> None:
        """Reschedule on the short retry interval; last_polled_at stays put."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(
                        next_poll_at=now + self.retry_interval,
                        consecutive_failures=Account.consecutive_failures + 1,
                        last_poll_error=error,
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("account_reschedule_failed", account_id=account_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        now = self._clock()
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(Account))).scalar_one()
            active = await self._count_active(session)
            due = (
                await session.execute(
                    select(func.count())
                    .select_from(Account)
                    .where(
                        Account.is_active.is_(True),
                        or_(Account.next_poll_at.is_(None), Account.next_poll_at <= now),
                    )
                )
            ).scalar_one()
        metrics = asdict(self.metrics)
        metrics["last_tick_at"] = self.metrics.last_tick_at.isoformat() if self.metrics.last_tick_at else None
        return {
            "total_accounts": int(total),
            "active_accounts": int(active),
            "due_accounts": int(due),
            "accounts_per_tick": self.batch_size(active),
            "target_interval_minutes": self.target_interval.total_seconds() / 60,
            "tick_interval_minutes": self.tick_interval.total_seconds() / 60,
            "max_concurrency": self.max_concurrency,
            "metrics": metrics,
        }
