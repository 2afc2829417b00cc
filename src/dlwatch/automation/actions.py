"""Rule actions executed against matched items."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

from dlwatch.redis_client import publish_notification
from dlwatch.remote.client import DownloadApiClient
from dlwatch.snapshots.status import item_status

logger = structlog.get_logger()

CONTROL_OPERATIONS = {"stop_seeding", "force_start"}


class ActionError(ValueError):
    """The rule's action descriptor cannot be executed."""


class ActionExecutor:
    """Runs one rule's action for items of a single account and kind."""

    def __init__(
        self,
        client: DownloadApiClient,
        *,
        account_id: int,
        kind: str = "torrent",
        redis: aioredis.Redis | None = None,
    ) -> None:
        self._client = client
        self._redis = redis
        self.account_id = account_id
        self.kind = kind

    async def execute(self, action: dict[str, Any] | None, item: dict[str, Any], *, rule_name: str = "") -> None:
        """Execute the action for one item; raises on failure."""
        action_type = (action or {}).get("type")
        if not action_type:
            raise ActionError(f"action type is missing: {action!r}")

        if action_type in CONTROL_OPERATIONS:
            if item.get("queued"):
                await self._client.control_queued_item(item["id"], action_type, self.kind)
            else:
                await self._client.control_item(self.kind, item["id"], action_type)
        elif action_type == "delete":
            await self._client.delete_item(self.kind, item)
        elif action_type == "notify":
            await self._notify(action or {}, item, rule_name)
        else:
            raise ActionError(f"unknown action type: {action_type}")

        logger.info(
            "rule_action_executed",
            account_id=self.account_id,
            action=action_type,
            item_id=item.get("id"),
            item_name=item.get("name"),
        )

    async def _notify(self, action: dict[str, Any], item: dict[str, Any], rule_name: str) -> None:
        if self._redis is None:
            raise ActionError("notify action requires a redis connection")
        await publish_notification(
            self._redis,
            self.account_id,
            {
                "event": "rule_matched",
                "rule": rule_name,
                "message": action.get("message") or f"Rule '{rule_name}' matched {item.get('name') or item.get('id')}",
                "item": {
                    "id": item.get("id"),
                    "kind": self.kind,
                    "name": item.get("name"),
                    "status": item_status(item),
                },
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
