"""
Upstream Client Tests - 上游 SSE 流解析测试（httpx.MockTransport）
"""

import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from toolify_proxy.errors import UpstreamError
from toolify_proxy.types import FlatMessage, FlatRequest
from toolify_proxy.upstream import UpstreamClient, extract_delta_content, parse_sse_line

URL = "http://upstream.test/v1/chat/completions"


def sse_body(*contents, done=True):
    lines = []
    for content in contents:
        chunk = {"choices": [{"index": 0, "delta": {"content": content}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def make_request():
    return FlatRequest(
        model="m",
        messages=[FlatMessage(role="user", content="hi")],
        max_tokens=16,
        temperature=0.2,
    )


async def collect(client, request):
    return [chunk async for chunk in client.stream_chat(request)]


class TestSseHelpers:
    """测试 SSE 行解析"""

    def test_parse_data_line(self):
        assert parse_sse_line('data: {"a": 1}') == {"a": 1}

    def test_done_marker(self):
        assert parse_sse_line("data: [DONE]") == {"done": True}

    @pytest.mark.parametrize("line", ["", ": keepalive", "event: ping", "data: {broken", "data: 3"])
    def test_ignored_lines(self, line):
        assert parse_sse_line(line) is None

    def test_extract_delta_content(self):
        assert extract_delta_content({"choices": [{"delta": {"content": "x"}}]}) == "x"
        assert extract_delta_content({"choices": [{"delta": {"role": "assistant"}}]}) == ""
        assert extract_delta_content({"choices": []}) == ""


class TestUpstreamClient:
    """测试上游客户端"""

    @pytest.mark.asyncio
    async def test_streams_deltas_and_sends_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse_body("Hel", "lo", "") + b"data: ignored-after-done\n\n")

        client = UpstreamClient(URL, api_key="sk-up", transport=httpx.MockTransport(handler))
        try:
            assert await collect(client, make_request()) == ["Hel", "lo"]
        finally:
            await client.aclose()

        assert seen["auth"] == "Bearer sk-up"
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "m"
        assert "top_p" not in seen["body"]

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, content=sse_body("x"))

        client = UpstreamClient(URL, transport=httpx.MockTransport(handler))
        try:
            await collect(client, make_request())
        finally:
            await client.aclose()
        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, content=b'{"error": "slow down"}')

        client = UpstreamClient(URL, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await collect(client, make_request())
        finally:
            await client.aclose()
        assert exc_info.value.status_code == 429
        assert exc_info.value.error_type == "rate_limit_error"
        assert "slow down" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_maps_to_502(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, content=b"boom")

        client = UpstreamClient(URL, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await collect(client, make_request())
        finally:
            await client.aclose()
        assert exc_info.value.status_code == 502
        assert exc_info.value.upstream_status == 500

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = UpstreamClient(URL, transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await collect(client, make_request())
        finally:
            await client.aclose()
        assert exc_info.value.status_code == 502
