"""
Toolify Proxy

把结构化 Messages API 请求（content block、思考块、工具调用）转换为
只接受纯文本消息的 Chat Completions 上游请求，并把上游的文本流解析回结构化事件。

- converters/: 结构化 -> 扁平编码、历史消息修复
- parser.py: 上游文本流 -> text / thinking / tool_call / end 事件
- anthropic_streaming.py: 事件 -> SSE / 完整消息
- router.py: HTTP 端点
"""

from .converters import encode_request, repair_message, repair_messages, serialize_block
from .errors import (
    AuthenticationError,
    InvalidRequestError,
    ParserFinishedError,
    ProxyError,
    RateLimitError,
    UpstreamError,
)
from .parser import ToolifyParser, parse_invoke_xml

__all__ = [
    "encode_request",
    "repair_message",
    "repair_messages",
    "serialize_block",
    "ToolifyParser",
    "parse_invoke_xml",
    "ProxyError",
    "InvalidRequestError",
    "AuthenticationError",
    "RateLimitError",
    "UpstreamError",
    "ParserFinishedError",
]
