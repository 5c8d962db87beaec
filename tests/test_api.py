"""Unit tests for the DECONFIG API client."""

import asyncio
import base64
import json
from unittest.mock import patch

import httpx
import pytest

from pydeconfig.api import DeconfigClient
from pydeconfig.exceptions import (
    DeconfigAuthenticationError,
    DeconfigConfigError,
    DeconfigConflictError,
    DeconfigNotFoundError,
    DeconfigPermissionError,
    DeconfigProtocolError,
    DeconfigRateLimitError,
    DeconfigRemoteError,
    DeconfigTransportError,
)
from pydeconfig.models import ChangeType
from pydeconfig.sync.watch import WatchEngine

API_URL = "https://api.example.test"


def make_client(handler, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    return DeconfigClient(
        workspace="acme/site",
        api_key="test_key",
        api_url=API_URL,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def tool_result(structured, status_code=200):
    return httpx.Response(status_code, json={"structuredContent": structured})


class TestDeconfigClient:
    """Tests for DeconfigClient initialization."""

    def test_init(self):
        client = DeconfigClient(workspace="/acme/site/", api_key="k", api_url=API_URL)
        assert client.workspace == "acme/site"
        assert client.base_url == f"{API_URL}/acme/site"

    def test_missing_workspace_raises(self):
        with patch("pydeconfig.api.config") as mock_config:
            mock_config.workspace = None
            mock_config.api_url = API_URL
            with pytest.raises(DeconfigConfigError, match="Workspace"):
                DeconfigClient(api_key="k")

    @pytest.mark.asyncio
    async def test_authorization_header(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return tool_result({"files": {}, "count": 0})

        async with make_client(handler) as client:
            await client.list_files("main")

        assert seen["auth"] == "Bearer test_key"

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_request(self):
        def no_credentials():
            raise DeconfigAuthenticationError("No credentials found")

        def handler(request):  # pragma: no cover
            raise AssertionError("request should not be sent")

        client = make_client(handler, headers_provider=no_credentials)
        with pytest.raises(DeconfigAuthenticationError):
            await client.list_files("main")


class TestToolCalls:
    """Tests for the four file tools."""

    @pytest.mark.asyncio
    async def test_list_files(self):
        requests = []

        def handler(request):
            requests.append(request)
            return tool_result(
                {
                    "files": {
                        "/a.txt": {
                            "address": "abc",
                            "metadata": {"owner": "me"},
                            "sizeInBytes": 3,
                            "mtime": 10,
                            "ctime": 5,
                        }
                    },
                    "count": 1,
                }
            )

        async with make_client(handler) as client:
            result = await client.list_files("main", prefix="/docs")

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{API_URL}/acme/site/tools/call/LIST_FILES"
        assert json.loads(request.content) == {"branch": "main", "prefix": "/docs"}
        assert result.count == 1
        record = result.files["/a.txt"]
        assert record.address == "abc"
        assert record.size == 3
        assert record.metadata == {"owner": "me"}

    @pytest.mark.asyncio
    async def test_list_files_omits_missing_prefix(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return tool_result({"files": {}, "count": 0})

        async with make_client(handler) as client:
            await client.list_files("main")

        assert bodies == [{"branch": "main"}]

    @pytest.mark.asyncio
    async def test_read_file_decodes_base64(self):
        def handler(request):
            return tool_result({"content": base64.b64encode(b"\x00hello").decode()})

        async with make_client(handler) as client:
            assert await client.read_file("main", "/a.bin") == b"\x00hello"

    @pytest.mark.asyncio
    async def test_read_file_bad_base64(self):
        def handler(request):
            return tool_result({"content": "not base64!"})

        async with make_client(handler) as client:
            with pytest.raises(DeconfigProtocolError):
                await client.read_file("main", "/a.bin")

    @pytest.mark.asyncio
    async def test_write_file_encodes_base64(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return tool_result({"conflict": False})

        async with make_client(handler) as client:
            ack = await client.write_file("main", "/a.txt", b"hi", {"k": "v"})

        assert ack.conflict is False
        assert bodies[0] == {
            "branch": "main",
            "path": "/a.txt",
            "content": "aGk=",
            "metadata": {"k": "v"},
        }

    @pytest.mark.asyncio
    async def test_write_conflict(self):
        def handler(request):
            return tool_result({"conflict": True})

        async with make_client(handler) as client:
            with pytest.raises(DeconfigConflictError):
                await client.write_file("main", "/a.txt", b"hi")

    @pytest.mark.asyncio
    async def test_delete_file(self):
        def handler(request):
            assert request.url.path.endswith("/tools/call/DELETE_FILE")
            return tool_result({"deleted": True})

        async with make_client(handler) as client:
            assert await client.delete_file("main", "/a.txt") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("File not found: /a.txt", DeconfigNotFoundError),
            ("Session not found", DeconfigAuthenticationError),
            ("Unauthorized", DeconfigAuthenticationError),
            ("Disk is full", DeconfigRemoteError),
        ],
    )
    async def test_tool_error_is_classified(self, text, expected):
        def handler(request):
            return httpx.Response(
                200, json={"isError": True, "content": [{"type": "text", "text": text}]}
            )

        async with make_client(handler) as client:
            with pytest.raises(expected, match=text.split(":")[0]):
                await client.read_file("main", "/a.txt")

    @pytest.mark.asyncio
    async def test_missing_files_map_is_protocol_error(self):
        def handler(request):
            return tool_result({"count": 0})

        async with make_client(handler) as client:
            with pytest.raises(DeconfigProtocolError):
                await client.list_files("main")


class TestAPIRequest:
    """Tests for status handling and retries."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected",
        [
            (401, DeconfigAuthenticationError),
            (403, DeconfigPermissionError),
            (404, DeconfigNotFoundError),
            (400, DeconfigRemoteError),
        ],
    )
    async def test_status_errors_are_not_retried(self, status, expected):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status, json={"message": "nope"})

        async with make_client(handler) as client:
            with pytest.raises(expected):
                await client.list_files("main")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retries_with_retry_after(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            tool_result({"files": {}, "count": 0}),
        ]

        def handler(request):
            return responses.pop(0)

        async with make_client(handler) as client:
            result = await client.list_files("main")

        assert result.count == 0
        assert responses == []

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "0"})

        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(DeconfigRateLimitError):
                await client.list_files("main")

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = [httpx.Response(502), tool_result({"deleted": False})]

        def handler(request):
            return responses.pop(0)

        async with make_client(handler) as client:
            assert await client.delete_file("main", "/a.txt") is False

    @pytest.mark.asyncio
    async def test_network_error_becomes_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler, max_retries=1) as client:
            with pytest.raises(DeconfigTransportError, match="Network error"):
                await client.list_files("main")

    @pytest.mark.asyncio
    async def test_html_response_is_auth_error(self):
        def handler(request):
            return httpx.Response(
                200, headers={"Content-Type": "text/html"}, content=b"<html></html>"
            )

        async with make_client(handler) as client:
            with pytest.raises(DeconfigAuthenticationError):
                await client.list_files("main")

    def test_retry_delay_backoff(self):
        client = make_client(lambda r: httpx.Response(200), retry_delay=1.0)
        for attempt in range(3):
            delay = client._calculate_retry_delay(attempt)
            base = 2**attempt
            assert base * 0.75 <= delay <= base * 1.25


def sse_response(*payloads, extra=b""):
    body = b"".join(f"data: {json.dumps(p)}\n\n".encode() for p in payloads) + extra
    return httpx.Response(
        200, headers={"Content-Type": "text/event-stream"}, content=body
    )


async def collect(client, **kwargs):
    events = []
    with pytest.raises(DeconfigTransportError, match="closed by server"):
        async for event in client.subscribe("main", **kwargs):
            events.append(event)
    return events


class TestSubscribe:
    """Tests for the server-sent event watch stream."""

    @pytest.mark.asyncio
    async def test_query_parameters(self):
        seen = []

        def handler(request):
            seen.append(request)
            return sse_response()

        async with make_client(handler) as client:
            await collect(client)
            await collect(client, path_filter="/docs", from_ctime=42)

        first, second = seen
        assert first.url.path == "/acme/site/deconfig/watch"
        assert first.headers["Accept"] == "text/event-stream"
        assert dict(first.url.params) == {"branchName": "main", "fromCtime": "1"}
        assert dict(second.url.params) == {
            "branchName": "main",
            "fromCtime": "42",
            "pathFilter": "/docs",
        }

    @pytest.mark.asyncio
    async def test_events_are_parsed(self):
        def handler(request):
            return sse_response(
                {"type": "added", "path": "/a.txt", "ctime": 1, "patchId": 7},
                {
                    "type": "deleted",
                    "path": "/a.txt",
                    "metadata": {"ctime": 2},
                    "patchId": 8,
                },
                extra=b": keepalive\n\nevent: change\nid: 3\n"
                b'data: {"type": "modified", "path": "/b.txt", "timestamp": 3}\n\n',
            )

        async with make_client(handler) as client:
            events = await collect(client)

        assert [(e.type, e.path, e.ctime) for e in events] == [
            (ChangeType.ADD, "/a.txt", 1),
            (ChangeType.DELETE, "/a.txt", 2),
            (ChangeType.MODIFY, "/b.txt", 3),
        ]
        assert events[0].patch_id == 7

    @pytest.mark.asyncio
    async def test_multiline_data_is_joined(self):
        def handler(request):
            body = b'data: {"type": "added",\ndata: "path": "/x", "ctime": 5}\n\n'
            return httpx.Response(
                200, headers={"Content-Type": "text/event-stream"}, content=body
            )

        async with make_client(handler) as client:
            events = await collect(client)

        assert [(e.path, e.ctime) for e in events] == [("/x", 5)]

    @pytest.mark.asyncio
    async def test_malformed_event_is_protocol_error(self):
        def handler(request):
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=b"data: {not json}\n\n",
            )

        async with make_client(handler) as client:
            with pytest.raises(DeconfigProtocolError):
                async for _ in client.subscribe("main"):
                    pass

    @pytest.mark.asyncio
    async def test_http_error_on_subscribe(self):
        def handler(request):
            return httpx.Response(401, json={"message": "bad key"})

        async with make_client(handler) as client:
            with pytest.raises(DeconfigAuthenticationError, match="bad key"):
                async for _ in client.subscribe("main"):
                    pass

    @pytest.mark.asyncio
    async def test_network_error_on_subscribe(self):
        def handler(request):
            raise httpx.ReadError("reset", request=request)

        async with make_client(handler) as client:
            with pytest.raises(DeconfigTransportError, match="Watch stream failed"):
                async for _ in client.subscribe("main"):
                    pass

    @pytest.mark.asyncio
    async def test_patch_files_reach_watch_engine(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return sse_response(
                {"type": "added", "path": "/a.txt", "timestamp": 1000, "patchId": 7},
                {"type": "added", "path": "/b.txt", "timestamp": 1000, "patchId": 7},
            )

        cancel = asyncio.Event()
        events = []

        def on_event(event):
            events.append(event)
            if len(events) == 2:
                cancel.set()

        async with make_client(handler) as client:
            engine = WatchEngine(client, reconnect_delay=0)
            await engine.watch("main", on_event, cancel_event=cancel)

        assert [(e.path, e.ctime, e.patch_id) for e in events] == [
            ("/a.txt", 1000, 7),
            ("/b.txt", 1000, 7),
        ]
        assert len(seen) == 1
