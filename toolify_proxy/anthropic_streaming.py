"""
解析器事件 -> 结构化 Messages API 响应

流式请求输出 message_start / content_block_* / message_delta / message_stop 事件，
非流式请求由 collect_message() 组装完整消息。usage 按 4 字符 ≈ 1 token 估算并乘以配置倍率。
"""

from __future__ import annotations

import json
import math
import time
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from log import log

from .errors import ProxyError
from .parser import ToolifyParser
from .types import (
    EndEvent,
    FlatRequest,
    ParserEvent,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
)

CHARS_PER_TOKEN = 4


def _sse_event(event: str, data: Dict[str, Any]) -> bytes:
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


def generate_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def estimate_tokens_from_chars(chars: int) -> int:
    """粗略估算：1 token ≈ 4 字符"""
    return chars // CHARS_PER_TOKEN


def scale_tokens(count: int, multiplier: float) -> int:
    return int(math.ceil(count * multiplier))


def estimate_request_tokens(request: FlatRequest, multiplier: float = 1.0) -> int:
    """估算扁平请求的输入 token 数（按倍率缩放，至少为 1）"""
    total_chars = sum(len(m.content) for m in request.messages)
    return max(1, scale_tokens(estimate_tokens_from_chars(total_chars), multiplier))


def _tool_input_json(arguments: Dict[str, Any]) -> str:
    return json.dumps(arguments, ensure_ascii=False, allow_nan=False, separators=(",", ":"))


class _StreamingState:
    def __init__(self, message_id: str, model: str):
        self.message_id = message_id
        self.model = model

        self._current_block_type: Optional[str] = None
        self._current_block_index: int = -1

        self.has_tool_use: bool = False
        self.output_chars: int = 0

    def _next_index(self) -> int:
        self._current_block_index += 1
        return self._current_block_index

    def close_block_if_open(self) -> Optional[bytes]:
        if self._current_block_type is None:
            return None
        event = _sse_event(
            "content_block_stop",
            {"type": "content_block_stop", "index": self._current_block_index},
        )
        self._current_block_type = None
        return event

    def _open_block(self, block_type: str, content_block: Dict[str, Any]) -> List[bytes]:
        events = []
        stop_evt = self.close_block_if_open()
        if stop_evt:
            events.append(stop_evt)
        idx = self._next_index()
        self._current_block_type = block_type
        events.append(
            _sse_event(
                "content_block_start",
                {"type": "content_block_start", "index": idx, "content_block": content_block},
            )
        )
        return events

    def _delta(self, delta: Dict[str, Any]) -> bytes:
        return _sse_event(
            "content_block_delta",
            {"type": "content_block_delta", "index": self._current_block_index, "delta": delta},
        )

    def emit_text(self, text: str) -> List[bytes]:
        events: List[bytes] = []
        if self._current_block_type != "text":
            events.extend(self._open_block("text", {"type": "text", "text": ""}))
        self.output_chars += len(text)
        events.append(self._delta({"type": "text_delta", "text": text}))
        return events

    def emit_thinking(self, thinking: str) -> List[bytes]:
        # 每个思考事件是一个完整的思考块，不与前一个块合并
        events = self._open_block("thinking", {"type": "thinking", "thinking": ""})
        self.output_chars += len(thinking)
        events.append(self._delta({"type": "thinking_delta", "thinking": thinking}))
        events.append(self.close_block_if_open())
        return events

    def emit_tool_use(self, name: str, arguments: Dict[str, Any]) -> List[bytes]:
        self.has_tool_use = True
        tool_id = generate_tool_use_id()
        events = self._open_block(
            "tool_use",
            {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        )
        input_json = _tool_input_json(arguments)
        self.output_chars += len(name) + len(input_json)
        events.append(self._delta({"type": "input_json_delta", "partial_json": input_json}))
        events.append(self.close_block_if_open())
        log.info(f"Tool call surfaced: {name}", tag="STREAMING", tool_use_id=tool_id)
        return events

    @property
    def stop_reason(self) -> str:
        return "tool_use" if self.has_tool_use else "end_turn"


async def flat_stream_to_anthropic_sse(
    chunks: AsyncIterator[str],
    parser: ToolifyParser,
    *,
    model: str,
    input_tokens: int,
    token_multiplier: float = 1.0,
    aggregation_interval_ms: int = 0,
    message_id: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[bytes]:
    """
    将上游文本流经解析器转换为结构化 API 的 SSE 事件流

    - 相邻文本按 aggregation_interval_ms 合并后再输出，遇到非文本事件或结束时立即刷新
    - 上游中途失败时先 finish() 解析器输出已缓冲的内容，再发送 error 事件
    """
    message_id = message_id or generate_message_id()
    state = _StreamingState(message_id, model)
    interval = max(0, aggregation_interval_ms) / 1000.0

    pending_text: List[str] = []
    last_flush = clock()

    def flush_text() -> List[bytes]:
        nonlocal last_flush
        last_flush = clock()
        if not pending_text:
            return []
        text = "".join(pending_text)
        pending_text.clear()
        return state.emit_text(text)

    def render(events: Iterable[ParserEvent]) -> List[bytes]:
        output: List[bytes] = []
        for event in events:
            if isinstance(event, TextEvent):
                pending_text.append(event.content)
                if clock() - last_flush >= interval:
                    output.extend(flush_text())
            elif isinstance(event, ThinkingEvent):
                output.extend(flush_text())
                output.extend(state.emit_thinking(event.content))
            elif isinstance(event, ToolCallEvent):
                output.extend(flush_text())
                output.extend(state.emit_tool_use(event.call.name, event.call.arguments))
            elif isinstance(event, EndEvent):
                output.extend(flush_text())
                stop_evt = state.close_block_if_open()
                if stop_evt:
                    output.append(stop_evt)
            else:
                raise TypeError(f"Unknown parser event: {event!r}")
        return output

    yield _sse_event(
        "message_start",
        {
            "type": "message_start",
            "message": {
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "model": model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": input_tokens, "output_tokens": 0},
            },
        },
    )
    yield _sse_event("ping", {"type": "ping"})

    try:
        async for chunk in chunks:
            parser.feed(chunk)
            for evt in render(parser.consume_events()):
                yield evt
    except ProxyError as e:
        log.error(f"Upstream stream aborted: {e.message}", tag="STREAMING")
        parser.finish()
        for evt in render(parser.consume_events()):
            yield evt
        yield _sse_event("error", e.to_response_body())
        return

    parser.finish()
    for evt in render(parser.consume_events()):
        yield evt

    output_tokens = scale_tokens(estimate_tokens_from_chars(state.output_chars), token_multiplier)
    yield _sse_event(
        "message_delta",
        {
            "type": "message_delta",
            "delta": {"stop_reason": state.stop_reason, "stop_sequence": None},
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    )
    yield _sse_event("message_stop", {"type": "message_stop"})
    log.success(
        "Stream completed",
        tag="STREAMING",
        stop_reason=state.stop_reason,
        output_tokens=output_tokens,
    )


def events_to_content_blocks(events: Iterable[ParserEvent]) -> List[Dict[str, Any]]:
    """将解析器事件组装为结构化响应的 content 列表（相邻文本合并为一个 text 块）"""
    blocks: List[Dict[str, Any]] = []
    for event in events:
        if isinstance(event, TextEvent):
            if blocks and blocks[-1]["type"] == "text":
                blocks[-1]["text"] += event.content
            else:
                blocks.append({"type": "text", "text": event.content})
        elif isinstance(event, ThinkingEvent):
            blocks.append({"type": "thinking", "thinking": event.content, "signature": ""})
        elif isinstance(event, ToolCallEvent):
            blocks.append(
                {
                    "type": "tool_use",
                    "id": generate_tool_use_id(),
                    "name": event.call.name,
                    "input": dict(event.call.arguments),
                }
            )
        elif isinstance(event, EndEvent):
            continue
        else:
            raise TypeError(f"Unknown parser event: {event!r}")
    return blocks


async def collect_message(
    chunks: AsyncIterator[str],
    parser: ToolifyParser,
    *,
    model: str,
    input_tokens: int,
    token_multiplier: float = 1.0,
    message_id: Optional[str] = None,
) -> Dict[str, Any]:
    """非流式响应：消费完整个上游流后返回完整的结构化消息"""
    events: List[ParserEvent] = []
    try:
        async for chunk in chunks:
            parser.feed(chunk)
            events.extend(parser.consume_events())
    finally:
        parser.finish()
        events.extend(parser.consume_events())

    content = events_to_content_blocks(events)
    has_tool_use = any(block["type"] == "tool_use" for block in content)

    output_chars = 0
    for block in content:
        if block["type"] == "text":
            output_chars += len(block["text"])
        elif block["type"] == "thinking":
            output_chars += len(block["thinking"])
        else:
            output_chars += len(block["name"]) + len(_tool_input_json(block["input"]))

    return {
        "id": message_id or generate_message_id(),
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": content,
        "stop_reason": "tool_use" if has_tool_use else "end_turn",
        "stop_sequence": None,
        "usage": {
            "input_tokens": input_tokens,
            "output_tokens": scale_tokens(estimate_tokens_from_chars(output_chars), token_multiplier),
        },
    }


__all__ = [
    "flat_stream_to_anthropic_sse",
    "collect_message",
    "events_to_content_blocks",
    "estimate_request_tokens",
    "estimate_tokens_from_chars",
    "scale_tokens",
    "generate_message_id",
    "generate_tool_use_id",
]
