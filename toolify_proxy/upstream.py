"""
上游客户端

把 FlatRequest POST 到上游 Chat Completions 端点，解析 SSE 流并逐块产出文本增量。
不做重试：失败直接抛出 UpstreamError，由调用方决定如何处理。
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from log import log

from .errors import UpstreamError
from .types import FlatRequest

_DONE_MARKER = "[DONE]"


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """
    解析单行 SSE 数据

    Returns:
        解析后的 JSON 对象；[DONE] 返回 {"done": True}；非数据行或无法解析时返回 None
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None

    data = line[5:].strip()
    if data == _DONE_MARKER:
        return {"done": True}

    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        log.debug("Skipping undecodable SSE line", tag="UPSTREAM", line=line[:200])
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_delta_content(chunk: Dict[str, Any]) -> str:
    """从 chat.completion.chunk 中取出 choices[0].delta.content"""
    choices = chunk.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or choices[0].get("message") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


class UpstreamClient:
    """
    上游 HTTP 客户端

    共享一个 httpx.AsyncClient；测试时可通过 transport 注入 httpx.MockTransport。
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: Any, transport: Optional[httpx.AsyncBaseTransport] = None) -> "UpstreamClient":
        return cls(
            base_url=config.upstream_base_url,
            api_key=config.upstream_api_key,
            timeout=config.request_timeout,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream_chat(self, request: FlatRequest) -> AsyncIterator[str]:
        """
        发起流式请求并产出文本增量

        Raises:
            UpstreamError: 连接失败或上游返回非 2xx
        """
        payload = request.to_payload()
        log.info(
            f"Forwarding request to upstream: model={request.model}",
            tag="UPSTREAM",
            messages=len(request.messages),
        )

        try:
            async with self._client.stream(
                "POST", self.base_url, json=payload, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    log.error(
                        f"Upstream returned HTTP {response.status_code}",
                        tag="UPSTREAM",
                        body=body[:500],
                    )
                    raise UpstreamError(
                        status_code=response.status_code,
                        message=f"Upstream error {response.status_code}: {body[:500]}",
                    )

                async for line in response.aiter_lines():
                    parsed = parse_sse_line(line)
                    if parsed is None:
                        continue
                    if parsed.get("done"):
                        break
                    content = extract_delta_content(parsed)
                    if content:
                        yield content
        except httpx.HTTPError as e:
            log.error(f"Upstream request failed: {e}", tag="UPSTREAM")
            raise UpstreamError(status_code=502, message=f"Upstream request failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["UpstreamClient", "parse_sse_line", "extract_delta_content"]
