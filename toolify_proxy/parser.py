"""
Streaming Response Parser - 上游字符流 -> 结构化事件

每个上游响应流一个解析器实例，逐字符喂入，按需取出事件：

    parser = ToolifyParser(trigger_signal)
    for chunk in upstream:
        parser.feed(chunk)
        for event in parser.consume_events():
            ...
    parser.finish()
    events = parser.consume_events()   # 以 EndEvent 结尾

状态：
- PLAIN:     普通文本，缓冲直到遇到 <thinking> 或触发信号
- THINKING:  缓冲思考内容直到 </thinking>
- CAPTURING: 触发信号之后，缓冲直到拿到完整的 <invoke>...</invoke>

未配置触发信号时为纯透传模式：每个字符立即作为一个 text 事件输出。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from log import log

from .constants import INVOKE_CLOSE_TAG, INVOKE_OPEN_PREFIX, THINKING_END_TAG, THINKING_START_TAG
from .errors import ParserFinishedError
from .types import EndEvent, ParsedCall, ParserEvent, TextEvent, ThinkingEvent, ToolCallEvent

_INVOKE_NAME_RE = re.compile(r'<invoke[^>]*name="([^"]+)"[^>]*>', re.IGNORECASE)
_PARAMETER_RE = re.compile(
    r'<parameter[^>]*name="([^"]+)"[^>]*>([\s\S]*?)</parameter>', re.IGNORECASE
)

# 进入思考模式时，开标签的最后一个字符会落入思考缓冲区，发出前去掉它及其后的空白
_THINKING_ARTIFACT_RE = re.compile(r"^\s*>\s*")

_BUFFER_LOG_INTERVAL = 100


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def _decode_value(raw: str) -> Any:
    # NaN / Infinity 不是合法 JSON，保留为字符串；嵌套过深同样按字符串处理
    trimmed = raw.strip()
    if not trimmed:
        return ""
    try:
        return json.loads(trimmed, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return trimmed


def parse_invoke_xml(xml: str) -> Optional[ParsedCall]:
    """
    解析一个 <invoke> 标签体

    name 属性取第一个匹配（大小写不敏感）；每个 <parameter> 的文本 strip 后
    尝试按 JSON 解码（数字、布尔、对象、数组），失败则保留原字符串。

    Returns:
        ParsedCall，没有 name 属性时返回 None
    """
    name_match = _INVOKE_NAME_RE.search(xml)
    if not name_match:
        return None

    arguments: Dict[str, Any] = {}
    for param_match in _PARAMETER_RE.finditer(xml):
        arguments[param_match.group(1)] = _decode_value(param_match.group(2) or "")

    return ParsedCall(name=name_match.group(1), arguments=arguments)


def _strip_thinking_artifact(content: str) -> str:
    return _THINKING_ARTIFACT_RE.sub("", content, count=1)


def _skip_closed_invokes(content: str) -> str:
    """
    跳过紧邻的、已闭合的 <invoke>...</invoke> 标签

    Returns:
        第一个非标签内容开始的剩余文本（可能为空，或只剩空白）
    """
    remaining = content
    while True:
        trimmed = remaining.lstrip()
        if not trimmed:
            return ""
        if trimmed.lower().startswith(INVOKE_OPEN_PREFIX):
            end_idx = trimmed.lower().find(INVOKE_CLOSE_TAG)
            if end_idx != -1:
                skipped = trimmed[:end_idx + len(INVOKE_CLOSE_TAG)]
                log.debug("Filtering out subsequent tool call", tag="PARSER", skipped=skipped)
                remaining = trimmed[end_idx + len(INVOKE_CLOSE_TAG):]
                continue
        return remaining


class ParserMode(str, Enum):
    PLAIN = "plain"
    THINKING = "thinking"
    CAPTURING = "capturing"


@dataclass
class ParserState:
    """单个响应流的全部可变状态"""
    mode: ParserMode = ParserMode.PLAIN
    buffer: str = ""
    thinking_buffer: str = ""
    capture_buffer: str = ""
    # 刚发出工具调用，紧随其后的同批 <invoke> 标签需要丢弃
    discarding_batch: bool = False
    finished: bool = False


class ToolifyParser:
    """上游文本流的增量解析器（状态机）"""

    def __init__(self, trigger_signal: Optional[str] = None):
        self.trigger_signal = trigger_signal or None
        self.state = ParserState()
        self._events: List[ParserEvent] = []

    # ==================== 对外接口 ====================

    def feed(self, text: str) -> None:
        """按顺序逐字符喂入一个数据块"""
        for char in text:
            self.feed_char(char)

    def feed_char(self, char: str) -> None:
        state = self.state
        if state.finished:
            raise ParserFinishedError("parser already finished")

        if state.mode is ParserMode.THINKING:
            self._feed_thinking(char)
        elif state.mode is ParserMode.CAPTURING:
            state.capture_buffer += char
            self._try_emit_invokes(force=False)
        else:
            self._feed_plain(char)

    def consume_events(self) -> List[ParserEvent]:
        """取出并清空当前已排队的事件"""
        events, self._events = self._events, []
        return events

    def finish(self) -> None:
        """
        流结束：强制输出所有缓冲内容，最后追加 EndEvent

        每个流只应调用一次，重复调用不会再产生事件。
        """
        state = self.state
        if state.finished:
            log.warning("finish() called more than once, ignoring", tag="PARSER")
            return

        if state.mode is ParserMode.THINKING:
            content = _strip_thinking_artifact(state.thinking_buffer)
            if content:
                self._emit(ThinkingEvent(content))
        elif state.mode is ParserMode.CAPTURING:
            self._try_emit_invokes(force=True)

        if state.buffer:
            if state.discarding_batch and not state.buffer.strip():
                pass
            else:
                self._emit(TextEvent(state.buffer))

        self._emit(EndEvent())
        self.state = ParserState(finished=True)

    # ==================== PLAIN ====================

    def _feed_plain(self, char: str) -> None:
        if not self.trigger_signal:
            self._emit(TextEvent(char))
            return

        state = self.state
        state.buffer += char

        if state.discarding_batch:
            self._discard_batched_invokes()
            if state.discarding_batch:
                return

        if state.buffer.endswith(THINKING_START_TAG):
            text_portion = state.buffer[:-len(THINKING_START_TAG)]
            if text_portion:
                self._emit(TextEvent(text_portion))
            log.debug("Entering thinking mode", tag="PARSER")
            state.buffer = ""
            state.mode = ParserMode.THINKING
            # 开标签的最后一个字符同时落入思考缓冲区（边界检测多消费的那个字符）
            state.thinking_buffer = char
            return

        if state.buffer.endswith(self.trigger_signal):
            text_portion = state.buffer[:-len(self.trigger_signal)]
            log.debug("Trigger signal detected", tag="PARSER", buffer_before=text_portion[-200:])
            if text_portion:
                self._emit(TextEvent(text_portion))
            state.buffer = ""
            state.capture_buffer = ""
            state.mode = ParserMode.CAPTURING
            return

        if len(state.buffer) % _BUFFER_LOG_INTERVAL == 0 and log.is_enabled_for("debug"):
            log.debug(
                "Parser buffer accumulating without trigger",
                tag="PARSER",
                buffer_length=len(state.buffer),
                expected_trigger=self.trigger_signal,
            )

    def _discard_batched_invokes(self) -> None:
        """
        工具调用之后，丢弃紧邻的同批 <invoke> 标签

        遇到第一个非空白、非标签内容时结束丢弃，剩余内容按普通文本继续处理。
        """
        state = self.state
        while True:
            trimmed = state.buffer.lstrip()
            if not trimmed:
                return
            lower = trimmed.lower()
            if lower.startswith(INVOKE_OPEN_PREFIX):
                end_idx = lower.find(INVOKE_CLOSE_TAG)
                if end_idx == -1:
                    return
                log.debug(
                    "Filtering out subsequent tool call",
                    tag="PARSER",
                    skipped=trimmed[:end_idx + len(INVOKE_CLOSE_TAG)],
                )
                state.buffer = trimmed[end_idx + len(INVOKE_CLOSE_TAG):]
                continue
            if INVOKE_OPEN_PREFIX.startswith(lower):
                return
            state.discarding_batch = False
            return

    # ==================== THINKING ====================

    def _feed_thinking(self, char: str) -> None:
        state = self.state
        state.thinking_buffer += char
        if not state.thinking_buffer.endswith(THINKING_END_TAG):
            return

        content = _strip_thinking_artifact(state.thinking_buffer[:-len(THINKING_END_TAG)])
        log.debug("Exiting thinking mode", tag="PARSER", thinking_length=len(content))
        if content:
            self._emit(ThinkingEvent(content))
        state.thinking_buffer = ""
        state.mode = ParserMode.PLAIN

    # ==================== CAPTURING ====================

    def _try_emit_invokes(self, force: bool) -> None:
        state = self.state
        buffer = state.capture_buffer
        lower = buffer.lower()

        start_idx = lower.find(INVOKE_OPEN_PREFIX)
        if start_idx == -1:
            if not force:
                return
            log.debug("No invoke tag found, emitting as text", tag="PARSER", capture=buffer[:200])
            if buffer:
                self._emit(TextEvent(buffer))
            self._leave_capture()
            return

        end_idx = lower.find(INVOKE_CLOSE_TAG, start_idx)
        if end_idx == -1:
            if not force:
                return
            log.warning("Incomplete invoke tag at end of stream, emitting as text", tag="PARSER")
            self._emit(TextEvent(buffer))
            self._leave_capture()
            return

        end_pos = end_idx + len(INVOKE_CLOSE_TAG)
        invoke_xml = buffer[start_idx:end_pos]
        after_invoke = buffer[end_pos:]
        after_trimmed = after_invoke.lstrip()

        if after_trimmed and not after_trimmed.lower().startswith(INVOKE_OPEN_PREFIX) and not force:
            log.debug(
                "Non-whitespace content after </invoke>, falling back to text",
                tag="PARSER",
                after=after_trimmed[:100],
            )
            self._emit(TextEvent(buffer))
            self._leave_capture()
            return

        parsed = parse_invoke_xml(invoke_xml)
        if parsed is None:
            log.warning("Failed to parse invoke XML", tag="PARSER", invoke=invoke_xml[:500])
            self._emit(TextEvent(buffer))
            self._leave_capture()
            return

        # 触发信号和 <invoke> 之间通常只有换行，纯空白不作为文本输出
        before = buffer[:start_idx]
        if before.strip():
            self._emit(TextEvent(before))

        log.debug(
            "Parsed tool call",
            tag="PARSER",
            tool=parsed.name,
            argument_keys=list(parsed.arguments.keys()),
        )
        self._emit(ToolCallEvent(parsed))

        remaining = _skip_closed_invokes(after_invoke)
        if remaining.strip():
            self._emit(TextEvent(remaining))

        self._leave_capture()
        self.state.discarding_batch = True

    def _leave_capture(self) -> None:
        state = self.state
        state.capture_buffer = ""
        state.mode = ParserMode.PLAIN

    def _emit(self, event: ParserEvent) -> None:
        self._events.append(event)


__all__ = [
    "ToolifyParser",
    "ParserMode",
    "ParserState",
    "parse_invoke_xml",
]
