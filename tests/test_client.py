"""Download-service API client over a mocked transport."""

from __future__ import annotations

import json

import httpx
import pytest

from dlwatch.remote.client import DownloadApiClient
from dlwatch.remote.errors import RemoteApiError, RemoteAuthError, TransientRemoteError, classify_status


def make_client(handler) -> DownloadApiClient:
    return DownloadApiClient(
        "tok-a",
        base_url="https://api.example.test/",
        api_version="v1",
        transport=httpx.MockTransport(handler),
    )


def ok(data) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data})


class TestListing:
    @pytest.mark.asyncio
    async def test_merges_current_and_queued_items(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/v1/api/torrents/mylist":
                return ok([{"id": 1, "name": "a"}])
            if request.url.path == "/v1/api/queued/getqueued":
                return ok([{"id": 7, "name": "b"}])
            return httpx.Response(404)

        async with make_client(handler) as client:
            items = await client.list_items("torrent")

        assert items == [{"id": 1, "name": "a"}, {"id": 7, "name": "b", "queued": True}]
        assert {r.headers["Authorization"] for r in seen} == {"Bearer tok-a"}
        queued = next(r for r in seen if r.url.path.endswith("getqueued"))
        assert queued.url.params["type"] == "torrent"
        current = next(r for r in seen if r.url.path.endswith("mylist"))
        assert current.url.params["bypass_cache"] == "true"

    @pytest.mark.asyncio
    async def test_current_items_only(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return ok(None)

        async with make_client(handler) as client:
            items = await client.list_items("usenet", include_queued=False)

        assert items == []
        assert paths == ["/v1/api/usenet/mylist"]

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        async with make_client(lambda request: ok([])) as client:
            with pytest.raises(ValueError):
                await client.list_current_items("magnet")


class TestControl:
    @pytest.mark.asyncio
    async def test_control_payloads(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.url.path, json.loads(request.content)))
            return ok({})

        async with make_client(handler) as client:
            await client.control_item("webdl", 3, "delete")
            await client.control_queued_item(9, "force_start")
            await client.delete_item("torrent", {"id": 5, "queued": True})
            await client.delete_item("torrent", {"id": 6})

        assert bodies == [
            ("/v1/api/webdl/controlwebdownload", {"webdl_id": 3, "operation": "delete"}),
            ("/v1/api/queued/controlqueued", {"queued_id": 9, "operation": "force_start", "type": "torrent"}),
            ("/v1/api/queued/controlqueued", {"queued_id": 5, "operation": "delete", "type": "torrent"}),
            ("/v1/api/torrents/controltorrent", {"torrent_id": 6, "operation": "delete"}),
        ]


class TestErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "body", "error"),
        [
            (401, {"error": "BAD_TOKEN"}, RemoteAuthError),
            (403, {"error": "AUTH_ERROR"}, RemoteAuthError),
            (403, {"error": "PLAN_RESTRICTED_FEATURE"}, RemoteApiError),
            (429, {"detail": "slow down"}, TransientRemoteError),
            (503, None, TransientRemoteError),
            (500, {"detail": "oops"}, RemoteApiError),
        ],
    )
    async def test_status_mapping(self, status, body, error):
        def handler(request: httpx.Request) -> httpx.Response:
            if body is None:
                return httpx.Response(status, text="gateway down")
            return httpx.Response(status, json=body)

        async with make_client(handler) as client:
            with pytest.raises(error) as exc_info:
                await client.list_current_items()

        assert type(exc_info.value) is error
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "detail": "torrent not found"})

        async with make_client(handler) as client:
            with pytest.raises(RemoteApiError, match="torrent not found"):
                await client.control_item("torrent", 1, "stop_seeding")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        async with make_client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(RemoteApiError):
                await client.list_current_items()

    @pytest.mark.asyncio
    async def test_transport_failures_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientRemoteError) as exc_info:
                await client.list_current_items()

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeouts_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientRemoteError, match="timed out"):
                await client.list_current_items()

    def test_classify_includes_detail(self):
        error = classify_status(500, {"detail": "internal"}, "/api/torrents/mylist")
        assert str(error) == "/api/torrents/mylist returned HTTP 500: internal"
        assert error.endpoint == "/api/torrents/mylist"
