"""Periodic job scheduler owning the poll, automation and cleanup triggers.

Each trigger is a ``PeriodicJob`` task handle held by the scheduler. A job
runs its body, then waits out the remainder of its interval, so it never
overlaps itself; different jobs run concurrently.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dlwatch.automation.engine import AutomationEngine
from dlwatch.config import Settings
from dlwatch.polling.poller import Poller
from dlwatch.security.crypto import AesGcmCipher, CredentialCipher
from dlwatch.snapshots.manager import SnapshotManager

logger = structlog.get_logger()

TickBody = Callable[[], Awaitable[Any]]


@dataclass
class JobStats:
    runs: int = 0
    failures: int = 0
    timeouts: int = 0
    last_started_at: str | None = None
    last_finished_at: str | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None


class PeriodicJob:
    """One independently stoppable periodic trigger."""

    def __init__(
        self,
        name: str,
        interval: float,
        body: TickBody,
        *,
        tick_timeout: float | None = None,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.interval = interval
        self.tick_timeout = tick_timeout
        self.initial_delay = initial_delay
        self._body = body
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.stats = JobStats()

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.armed:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"dlwatch-{self.name}")

    def stop(self) -> None:
        """Ask the loop to exit after the tick in flight, if any."""
        self._stop.set()

    async def wait(self, timeout: float) -> bool:
        """Wait for the loop to exit; cancel it after ``timeout``. True if it exited cleanly."""
        if self._task is None:
            return True
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.error("job_shutdown_timeout", job=self.name, grace_seconds=timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return False
        finally:
            self._task = None

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _loop(self) -> None:
        await self._sleep(self.initial_delay)
        while not self._stop.is_set():
            started = time.monotonic()
            await self.run_once()
            await self._sleep(self.interval - (time.monotonic() - started))

    async def run_once(self) -> None:
        """Run one tick; errors and overruns are logged, never raised."""
        started = time.monotonic()
        self.stats.runs += 1
        self.stats.last_started_at = datetime.now(timezone.utc).isoformat()
        try:
            with structlog.contextvars.bound_contextvars(job=self.name):
                if self.tick_timeout:
                    await asyncio.wait_for(self._body(), timeout=self.tick_timeout)
                else:
                    await self._body()
            self.stats.last_error = None
        except asyncio.TimeoutError:
            self.stats.timeouts += 1
            self.stats.failures += 1
            self.stats.last_error = f"tick exceeded {self.tick_timeout}s and was abandoned"
            logger.error("job_tick_timeout", job=self.name, timeout_seconds=self.tick_timeout)
        except Exception as exc:
            self.stats.failures += 1
            self.stats.last_error = str(exc) or type(exc).__name__
            logger.exception("job_tick_failed", job=self.name)
        finally:
            self.stats.last_duration_ms = round((time.monotonic() - started) * 1000, 1)
            self.stats.last_finished_at = datetime.now(timezone.utc).isoformat()


class JobScheduler:
    """Owns the three periodic triggers of the worker."""

    def __init__(
        self,
        poller: Poller,
        engine: AutomationEngine,
        snapshots: SnapshotManager,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        poll_interval: timedelta = timedelta(minutes=2),
        automation_interval: timedelta = timedelta(minutes=5),
        cleanup_interval: timedelta = timedelta(hours=1),
        history_retention: timedelta = timedelta(days=30),
        speed_retention: timedelta = timedelta(hours=24),
        tick_timeout: float | None = 600.0,
        shutdown_grace: float = 30.0,
    ) -> None:
        self.poller = poller
        self.engine = engine
        self.snapshots = snapshots
        self._session_factory = session_factory
        self.history_retention = history_retention
        self.speed_retention = speed_retention
        self.shutdown_grace = shutdown_grace
        self._jobs: list[PeriodicJob] = [
            PeriodicJob("poll", poll_interval.total_seconds(), poller.run_tick, tick_timeout=tick_timeout),
            PeriodicJob(
                "automation", automation_interval.total_seconds(), engine.evaluate_all_rules, tick_timeout=tick_timeout
            ),
            PeriodicJob(
                "cleanup",
                cleanup_interval.total_seconds(),
                self.run_cleanup,
                tick_timeout=tick_timeout,
                initial_delay=cleanup_interval.total_seconds(),
            ),
        ]

    @property
    def jobs(self) -> tuple[PeriodicJob, ...]:
        return tuple(self._jobs)

    def job(self, name: str) -> PeriodicJob:
        for job in self._jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    def start(self) -> None:
        """Arm every trigger."""
        for job in self._jobs:
            job.start()
        logger.info("scheduler_started", jobs=[job.name for job in self._jobs])

    async def shutdown(self) -> None:
        """Stop every trigger and wait for in-flight ticks within the grace period."""
        for job in self._jobs:
            job.stop()
        results = await asyncio.gather(*(job.wait(self.shutdown_grace) for job in self._jobs))
        logger.info(
            "scheduler_stopped",
            clean=[job.name for job, ok in zip(self._jobs, results) if ok],
            cancelled=[job.name for job, ok in zip(self._jobs, results) if not ok],
        )

    async def run_cleanup(self) -> int:
        """Prune aged history and speed samples."""
        async with self._session_factory() as session:
            history = await self.snapshots.prune_old_history(session, self.history_retention)
            samples = await self.snapshots.prune_speed_samples(session, self.speed_retention)
        logger.info("history_pruned", history_rows=history, speed_samples=samples)
        return history + samples

    async def status(self) -> dict[str, Any]:
        report: dict[str, Any] = {
            "jobs": [job.name for job in self._jobs if job.armed],
            "job_stats": {job.name: asdict(job.stats) for job in self._jobs},
        }
        for key, report_status in (("poller", self.poller.status), ("automation", self.engine.status)):
            try:
                report[key] = await report_status()
            except Exception as exc:
                logger.warning("status_report_failed", component=key, error=str(exc))
                report[key] = {"error": str(exc)}
        return report


def create_scheduler(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    cipher: CredentialCipher | None = None,
) -> JobScheduler:
    """Wire poller, automation engine and snapshot manager from settings."""
    cipher = cipher or AesGcmCipher(settings.encryption_key)
    snapshots = SnapshotManager(settings.snapshot_change_threshold, settings.snapshot_byte_threshold)
    poller = Poller.from_settings(settings, session_factory, cipher, snapshots)
    engine = AutomationEngine.from_settings(settings, session_factory, cipher, redis)
    return JobScheduler(
        poller,
        engine,
        snapshots,
        session_factory,
        poll_interval=timedelta(minutes=settings.poll_tick_interval_minutes),
        automation_interval=timedelta(minutes=settings.automation_tick_interval_minutes),
        cleanup_interval=timedelta(minutes=settings.cleanup_interval_minutes),
        history_retention=timedelta(days=settings.history_retention_days),
        speed_retention=timedelta(hours=settings.speed_sample_retention_hours),
        tick_timeout=settings.tick_timeout_seconds,
        shutdown_grace=settings.shutdown_grace_seconds,
    )
