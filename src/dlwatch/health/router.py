"""Liveness, readiness and version checks for the worker process."""

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from dlwatch.config import get_settings
from dlwatch.database import get_session
from dlwatch.redis_client import get_redis

router = APIRouter()


async def _check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


async def _check_redis() -> str:
    try:
        await get_redis().ping()
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


def _check_scheduler(request: Request) -> str:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return "error: scheduler not running"
    stopped = [job.name for job in scheduler.jobs if not job.armed]
    if stopped:
        return f"error: jobs not armed: {', '.join(stopped)}"
    return "ok"


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, Any]:
    """Readiness check: storage, redis and every periodic job armed."""
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "scheduler": _check_scheduler(request),
    }
    ready = all(result == "ok" for result in checks.values())
    return {"status": "ready" if ready else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "service": "dlwatch",
        "version": settings.app_version,
        "environment": settings.environment,
        "api_version": settings.api_version,
    }
