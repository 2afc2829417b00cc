"""Standalone runner for the polling and automation worker.

Runs the same scheduler the API lifespan owns, without the HTTP surface.

Usage: python -m dlwatch.workers.runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

from dlwatch.config import get_settings
from dlwatch.database import close_db, create_all, get_session_factory, init_db
from dlwatch.middleware.logging import setup_logging
from dlwatch.redis_client import close_redis, get_redis, init_redis
from dlwatch.scheduler.jobs import create_scheduler

logger = logging.getLogger(__name__)


async def main() -> None:
    """Run the worker until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings)

    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    if settings.create_tables_on_startup:
        await create_all()

    scheduler = create_scheduler(settings, get_session_factory(), get_redis())
    stopped = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopped.set)

    logger.info(
        "Starting worker (poll every %smin, target %smin, automation every %smin)",
        settings.poll_tick_interval_minutes,
        settings.poll_target_interval_minutes,
        settings.automation_tick_interval_minutes,
    )
    scheduler.start()

    try:
        await stopped.wait()
    finally:
        logger.info("Shutting down worker (grace %ss)", settings.shutdown_grace_seconds)
        await scheduler.shutdown()
        await close_redis()
        await close_db()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
