"""Read-only worker status plus the manual rule trigger."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from dlwatch.scheduler.jobs import JobScheduler

router = APIRouter(tags=["Status"])


def get_scheduler(request: Request) -> JobScheduler:
    """The scheduler owned by the app lifespan."""
    scheduler: JobScheduler | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


@router.get("/status")
async def worker_status(
    scheduler: JobScheduler = Depends(get_scheduler),  # noqa: B008
) -> dict[str, Any]:
    """Armed triggers, poll statistics and automation statistics."""
    return await scheduler.status()


@router.post("/automation/rules/{rule_id}/run")
async def run_rule(
    rule_id: int,
    scheduler: JobScheduler = Depends(get_scheduler),  # noqa: B008
) -> dict[str, Any]:
    """Evaluate one rule immediately. The rule's cooldown still applies."""
    outcome = await scheduler.engine.execute_rule(rule_id)
    return {**asdict(outcome), "fired": outcome.fired}
