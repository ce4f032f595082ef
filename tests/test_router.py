"""
Router Tests - /v1/messages 端到端测试

上游用 httpx.MockTransport 替换，配置通过 dependency_overrides 注入。
"""

import json
import os
import re
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config import ProxyConfig
from toolify_proxy.rate_limiter import SlidingWindowRateLimiter
from toolify_proxy.router import get_proxy_config
from toolify_proxy.upstream import UpstreamClient
from web import create_app

URL = "http://upstream.test/v1/chat/completions"
TRIGGER_RE = re.compile(r"<Function_[A-Za-z0-9]{4}_Start>")

WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Get weather",
    "input_schema": {
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    },
}


def sse_body(*contents):
    lines = [
        f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in contents
    ]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class FakeUpstream:
    """记录收到的请求，按 reply(payload) 生成 SSE 响应"""

    def __init__(self, reply=None, status=200):
        self.requests = []
        self.reply = reply or (lambda payload: ["Hello", " there"])
        self.status = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        if self.status != 200:
            return httpx.Response(self.status, content=b"upstream exploded")
        return httpx.Response(200, content=sse_body(*self.reply(payload)))


def make_client(upstream, config=None, max_requests=0):
    config = config or ProxyConfig(upstream_base_url=URL, aggregation_interval_ms=0)
    app = create_app()
    app.dependency_overrides[get_proxy_config] = lambda: config
    app.state.upstream_client = UpstreamClient(URL, transport=httpx.MockTransport(upstream.handler))
    app.state.rate_limiter = SlidingWindowRateLimiter(max_requests)
    return TestClient(app)


def body(**overrides):
    data = {
        "model": "claude-sonnet-4-5",
        "max_tokens": 256,
        "messages": [{"role": "user", "content": "What's the weather in Paris?"}],
    }
    data.update(overrides)
    return data


def tool_reply(payload):
    system = payload["messages"][0]["content"]
    trigger = TRIGGER_RE.search(system).group(0)
    return [
        "Let me check.",
        trigger,
        '\n<invoke name="get_weather">',
        '<parameter name="city">Paris</parameter></invoke>',
    ]


class TestMessagesEndpoint:
    """测试 POST /v1/messages"""

    def test_non_stream_text(self):
        upstream = FakeUpstream()
        response = make_client(upstream).post("/v1/messages", json=body())
        assert response.status_code == 200
        data = response.json()
        assert data["content"] == [{"type": "text", "text": "Hello there"}]
        assert data["stop_reason"] == "end_turn"
        assert data["model"] == "claude-sonnet-4-5"

        sent = upstream.requests[0]
        assert sent["stream"] is True
        assert sent["max_tokens"] == 256
        assert sent["messages"][-1]["content"].startswith("What's the weather in Paris?")

    def test_non_stream_tool_call(self):
        upstream = FakeUpstream(reply=tool_reply)
        response = make_client(upstream).post("/v1/messages", json=body(tools=[WEATHER_TOOL]))
        assert response.status_code == 200
        data = response.json()
        assert [b["type"] for b in data["content"]] == ["text", "tool_use"]
        assert data["content"][0]["text"] == "Let me check."
        assert data["content"][1]["name"] == "get_weather"
        assert data["content"][1]["input"] == {"city": "Paris"}
        assert data["stop_reason"] == "tool_use"

        system = upstream.requests[0]["messages"][0]
        assert system["role"] == "system"
        assert "<name>get_weather</name>" in system["content"]

    def test_stream_tool_call(self):
        upstream = FakeUpstream(reply=tool_reply)
        response = make_client(upstream).post(
            "/v1/messages", json=body(tools=[WEATHER_TOOL], stream=True)
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = re.findall(r"^event: (\w+)$", response.text, re.MULTILINE)
        assert events[0] == "message_start"
        assert events[-1] == "message_stop"
        assert '"stop_reason":"tool_use"' in response.text
        assert '"partial_json":"{\\"city\\":\\"Paris\\"}"' in response.text

    def test_no_trigger_without_tools(self):
        upstream = FakeUpstream()
        make_client(upstream).post("/v1/messages", json=body(system="be nice"))
        system = upstream.requests[0]["messages"][0]["content"]
        assert system == "be nice"
        assert not TRIGGER_RE.search(json.dumps(upstream.requests[0]))

    def test_thinking_request_sampling(self):
        upstream = FakeUpstream(reply=lambda p: ["<thinking>hmm</thinking>", "Sunny"])
        response = make_client(upstream).post(
            "/v1/messages",
            json=body(thinking={"type": "enabled", "budget_tokens": 1024}, top_p=0.5, tools=[WEATHER_TOOL]),
        )
        data = response.json()
        assert data["content"][0] == {"type": "thinking", "thinking": "hmm", "signature": ""}
        assert data["content"][1] == {"type": "text", "text": "Sunny"}
        sent = upstream.requests[0]
        assert sent["temperature"] == 1
        assert "top_p" not in sent

    def test_model_mapping_applied(self):
        upstream = FakeUpstream()
        config = ProxyConfig(model_mapping={"claude-sonnet-4-5": "glm-4.6"}, aggregation_interval_ms=0)
        make_client(upstream, config=config).post("/v1/messages", json=body())
        assert upstream.requests[0]["model"] == "glm-4.6"


class TestMessagesErrors:
    """测试错误响应"""

    def test_missing_max_tokens(self):
        upstream = FakeUpstream()
        data = body()
        del data["max_tokens"]
        response = make_client(upstream).post("/v1/messages", json=data)
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        assert upstream.requests == []

    @pytest.mark.parametrize("value", ["100", True])
    def test_non_numeric_max_tokens(self, value):
        upstream = FakeUpstream()
        response = make_client(upstream).post("/v1/messages", json=body(max_tokens=value))
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        assert upstream.requests == []

    def test_unknown_block_type(self):
        upstream = FakeUpstream()
        data = body(messages=[{"role": "user", "content": [{"type": "hologram", "data": "?"}]}])
        response = make_client(upstream).post("/v1/messages", json=data)
        assert response.status_code == 400
        assert response.json()["type"] == "error"

    def test_invalid_json(self):
        response = make_client(FakeUpstream()).post(
            "/v1/messages", content=b"{nope", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    def test_upstream_failure(self):
        upstream = FakeUpstream(status=500)
        response = make_client(upstream).post("/v1/messages", json=body(stream=True))
        assert response.status_code == 502
        assert response.json()["error"]["type"] == "api_error"

    def test_rate_limited(self):
        client = make_client(FakeUpstream(), max_requests=1)
        assert client.post("/v1/messages", json=body()).status_code == 200
        response = client.post("/v1/messages", json=body())
        assert response.status_code == 429
        assert response.json()["error"]["type"] == "rate_limit_error"
        assert 1 <= int(response.headers["retry-after"]) <= 60


class TestAuthentication:
    """测试客户端鉴权"""

    @pytest.fixture
    def client(self):
        config = ProxyConfig(client_api_key="secret", aggregation_interval_ms=0)
        return make_client(FakeUpstream(), config=config)

    def test_missing_key(self, client):
        response = client.post("/v1/messages", json=body())
        assert response.status_code == 401
        assert response.json()["error"]["type"] == "authentication_error"

    def test_x_api_key(self, client):
        response = client.post("/v1/messages", json=body(), headers={"x-api-key": "secret"})
        assert response.status_code == 200

    def test_bearer(self, client):
        response = client.post(
            "/v1/messages", json=body(), headers={"Authorization": "Bearer secret"}
        )
        assert response.status_code == 200

    def test_wrong_key(self, client):
        response = client.post("/v1/messages", json=body(), headers={"x-api-key": "nope"})
        assert response.status_code == 401


class TestAuxiliaryEndpoints:
    """测试 count_tokens 与 keepalive"""

    def test_count_tokens(self):
        upstream = FakeUpstream()
        config = ProxyConfig(token_multiplier=2.0)
        response = make_client(upstream, config=config).post(
            "/v1/messages/count_tokens", json=body()
        )
        assert response.status_code == 200
        assert response.json()["input_tokens"] > 1
        assert upstream.requests == []

    def test_keepalive(self):
        assert make_client(FakeUpstream()).head("/keepalive").status_code == 200
