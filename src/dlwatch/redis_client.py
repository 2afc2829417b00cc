"""Redis connection pool and pub/sub helpers for rule notifications."""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis

NOTIFICATION_CHANNEL = "dlwatch:notifications:{account_id}"

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def notification_channel(account_id: int) -> str:
    """Channel name that carries rule notifications for one account."""
    return NOTIFICATION_CHANNEL.format(account_id=account_id)


async def publish_notification(client: redis.Redis, account_id: int, payload: dict[str, Any]) -> int:
    """Publish a JSON notification for an account; returns the subscriber count."""
    return int(await client.publish(notification_channel(account_id), json.dumps(payload, default=str)))
