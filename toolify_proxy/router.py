"""
结构化 Messages API 端点

POST /v1/messages 的处理流程：
鉴权 -> 限流 -> 校验请求体 -> 修复历史消息 -> 编码为扁平请求
-> （有工具时）注入工具提示词 -> 上游流式请求 -> 解析器 -> SSE / JSON
"""

from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from config import ProxyConfig, get_config
from log import log, set_request_id

from .anthropic_streaming import (
    collect_message,
    estimate_request_tokens,
    flat_stream_to_anthropic_sse,
    generate_message_id,
)
from .converters import encode_request, repair_messages
from .errors import AuthenticationError, InvalidRequestError, RateLimitError
from .parser import ToolifyParser
from .rate_limiter import SlidingWindowRateLimiter
from .tool_prompt import build_tool_prompt, generate_trigger_signal, inject_tool_prompt
from .types import FlatRequest, StructuredRequest
from .upstream import UpstreamClient

router = APIRouter()


# ==================== 依赖 ====================

def get_proxy_config() -> ProxyConfig:
    return get_config()


def get_upstream_client(request: Request) -> UpstreamClient:
    return request.app.state.upstream_client


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def _extract_client_key(request: Request) -> Optional[str]:
    api_key = request.headers.get("x-api-key")
    if api_key:
        return api_key
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


async def authenticate(request: Request, config: ProxyConfig = Depends(get_proxy_config)) -> None:
    """未配置 client_api_key 时不校验"""
    if not config.client_api_key:
        return
    if _extract_client_key(request) != config.client_api_key:
        log.warning("Rejected request with invalid API key", tag="AUTH")
        raise AuthenticationError("Invalid API key")


async def _read_structured_request(request: Request) -> StructuredRequest:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequestError(f"Invalid JSON: {e}") from e
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return StructuredRequest.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid request: {e.errors(include_url=False)}") from e


def _prepare_flat_request(
    structured: StructuredRequest, config: ProxyConfig
) -> Tuple[StructuredRequest, FlatRequest, Optional[str]]:
    """修复历史 -> 编码 -> 有工具时生成触发信号并注入工具提示词"""
    messages = repair_messages(structured.messages, structured.thinking_enabled)
    if messages is not structured.messages:
        structured = structured.model_copy(update={"messages": messages})

    trigger_signal = generate_trigger_signal() if structured.tools else None
    flat_request = encode_request(structured, config, trigger_signal)
    if trigger_signal:
        flat_request = inject_tool_prompt(
            flat_request, build_tool_prompt(structured.tools, trigger_signal)
        )
    return structured, flat_request, trigger_signal


async def _prime(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    先取出上游的第一个数据块再开始响应

    这样上游在返回任何内容之前就失败时，能以正常的 HTTP 错误状态码返回给客户端。
    """
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = None

    async def chained() -> AsyncIterator[str]:
        if first is None:
            return
        yield first
        async for chunk in chunks:
            yield chunk

    return chained()


# ==================== 端点 ====================

@router.post("/v1/messages")
async def create_message(
    request: Request,
    _auth: None = Depends(authenticate),
    config: ProxyConfig = Depends(get_proxy_config),
    upstream: UpstreamClient = Depends(get_upstream_client),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
):
    """结构化 Messages API 兼容端点"""
    set_request_id(uuid.uuid4().hex[:8])

    if not await limiter.try_acquire():
        raise RateLimitError(
            f"Rate limit exceeded: {config.max_requests_per_minute} requests per minute",
            retry_after=limiter.retry_after(),
        )

    structured = await _read_structured_request(request)
    thinking_enabled = structured.thinking_enabled
    structured, flat_request, trigger_signal = _prepare_flat_request(structured, config)

    input_tokens = estimate_request_tokens(flat_request, config.token_multiplier)
    log.info(
        f"Messages request: model={structured.model} -> {flat_request.model}",
        tag="ROUTER",
        stream=structured.stream,
        tools=len(structured.tools or []),
        thinking=thinking_enabled,
    )

    parser = ToolifyParser(trigger_signal)
    chunks = await _prime(upstream.stream_chat(flat_request))
    message_id = generate_message_id()

    if structured.stream:
        return StreamingResponse(
            flat_stream_to_anthropic_sse(
                chunks,
                parser,
                model=structured.model,
                input_tokens=input_tokens,
                token_multiplier=config.token_multiplier,
                aggregation_interval_ms=config.aggregation_interval_ms,
                message_id=message_id,
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    result = await collect_message(
        chunks,
        parser,
        model=structured.model,
        input_tokens=input_tokens,
        token_multiplier=config.token_multiplier,
        message_id=message_id,
    )
    return JSONResponse(content=result)


@router.post("/v1/messages/count_tokens")
async def count_tokens(
    request: Request,
    _auth: None = Depends(authenticate),
    config: ProxyConfig = Depends(get_proxy_config),
) -> Any:
    """
    token 计数端点，不访问上游

    按实际会发往上游的扁平请求估算（含思考提示符等附加内容），
    因此请求体需要和 /v1/messages 一样合法。
    """
    structured = await _read_structured_request(request)
    _, flat_request, _ = _prepare_flat_request(structured, config)
    return {"input_tokens": estimate_request_tokens(flat_request, config.token_multiplier)}


__all__ = [
    "router",
    "authenticate",
    "get_proxy_config",
    "get_upstream_client",
    "get_rate_limiter",
]
