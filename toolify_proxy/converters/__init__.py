"""
Converters - 结构化 <-> 扁平 请求转换

- block_serializer.py: 单个 content block -> 文本片段
- request_encoder.py: 结构化请求 -> 扁平上游请求
- message_repair.py: 历史消息结构修复（思考块前置、空文本过滤）
"""

from .block_serializer import serialize_block, serialize_content, scrub_protocol_tags
from .message_repair import (
    ensure_thinking_first,
    filter_empty_text_blocks,
    has_thinking_content,
    parse_thinking_from_text,
    reconstruct_message,
    repair_message,
    repair_messages,
)
from .request_encoder import encode_request, flatten_system_prompt, resolve_model

__all__ = [
    "serialize_block",
    "serialize_content",
    "scrub_protocol_tags",
    "encode_request",
    "flatten_system_prompt",
    "resolve_model",
    "parse_thinking_from_text",
    "ensure_thinking_first",
    "filter_empty_text_blocks",
    "has_thinking_content",
    "repair_message",
    "repair_messages",
    "reconstruct_message",
]
