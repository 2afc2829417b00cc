"""Async HTTP client for the bulk-download service API."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from dlwatch.remote.errors import RemoteApiError, TransientRemoteError, classify_status

logger = structlog.get_logger()

USER_AGENT = "dlwatch-worker/0.1"

# kind -> (list endpoint, control endpoint, id field of the control payload)
ENDPOINTS: dict[str, tuple[str, str, str]] = {
    "torrent": ("/api/torrents/mylist", "/api/torrents/controltorrent", "torrent_id"),
    "usenet": ("/api/usenet/mylist", "/api/usenet/controlusenetdownload", "usenet_id"),
    "webdl": ("/api/webdl/mylist", "/api/webdl/controlwebdownload", "webdl_id"),
}
QUEUED_LIST = "/api/queued/getqueued"
QUEUED_CONTROL = "/api/queued/controlqueued"


def _endpoints(kind: str) -> tuple[str, str, str]:
    try:
        return ENDPOINTS[kind]
    except KeyError:
        raise ValueError(f"unknown item kind: {kind}") from None


class DownloadApiClient:
    """Bearer-authenticated client for one account.

    No retries happen here; a failed call surfaces as a ``RemoteApiError``
    and the caller reschedules.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://api.torbox.app",
        api_version: str = "v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/{api_version}",
            headers={
                "Authorization": f"Bearer {token}",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> DownloadApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"{endpoint} timed out", endpoint=endpoint) from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"{endpoint} connection failed: {exc}", endpoint=endpoint) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            raise classify_status(response.status_code, body, endpoint)
        if not isinstance(body, dict):
            raise RemoteApiError(
                f"{endpoint} returned a non-JSON body", status_code=response.status_code, endpoint=endpoint
            )
        if body.get("success") is False:
            detail = body.get("detail") or body.get("error") or "request rejected"
            raise RemoteApiError(f"{endpoint}: {detail}", status_code=response.status_code, endpoint=endpoint)
        return body.get("data")

    async def list_current_items(self, kind: str = "torrent") -> list[dict[str, Any]]:
        """Items the service is currently holding for the account."""
        endpoint = _endpoints(kind)[0]
        data = await self._request("GET", endpoint, params={"bypass_cache": "true"})
        return [dict(item) for item in data or []]

    async def list_queued_items(self, kind: str = "torrent") -> list[dict[str, Any]]:
        """Items waiting in the service's queue, flagged with ``queued``."""
        data = await self._request("GET", QUEUED_LIST, params={"type": kind, "bypass_cache": "true"})
        return [{**item, "queued": True} for item in data or []]

    async def list_items(self, kind: str = "torrent", *, include_queued: bool = True) -> list[dict[str, Any]]:
        """Current and queued items merged into one list."""
        if not include_queued:
            return await self.list_current_items(kind)
        current, queued = await asyncio.gather(
            self.list_current_items(kind),
            self.list_queued_items(kind),
        )
        return current + queued

    async def control_item(self, kind: str, item_id: int | str, operation: str) -> Any:
        """Run a control operation (delete, stop_seeding, resume...) on an item."""
        _, endpoint, id_field = _endpoints(kind)
        data = await self._request("POST", endpoint, json={id_field: item_id, "operation": operation})
        logger.debug("remote_control_sent", kind=kind, item_id=item_id, operation=operation)
        return data

    async def control_queued_item(self, item_id: int | str, operation: str, kind: str = "torrent") -> Any:
        """Run a control operation on a queued item."""
        return await self._request(
            "POST",
            QUEUED_CONTROL,
            json={"queued_id": item_id, "operation": operation, "type": kind},
        )

    async def delete_item(self, kind: str, item: dict[str, Any]) -> Any:
        """Delete an item through whichever endpoint owns it."""
        if item.get("queued"):
            return await self.control_queued_item(item["id"], "delete", kind)
        return await self.control_item(kind, item["id"], "delete")
