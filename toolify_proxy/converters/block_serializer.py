"""
Block Serializer - 结构化 content block -> 扁平文本片段

上游只接受字符串，这里把每种 block 渲染为嵌入文本的伪协议：

- text:              去掉其中夹带的 <invoke>/<tool_result> 片段后 strip，空白则丢弃
- thinking:          <thinking>原文</thinking>
- redacted_thinking: <thinking>[redacted]</thinking>
- tool_result:       <tool_result id="...">结果</tool_result>
- tool_use:          [触发信号]\n<invoke name="..."><parameter name="...">值</parameter></invoke>
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional, Union

from ..constants import REDACTED_THINKING_MARKER, THINKING_END_TAG, THINKING_START_TAG
from ..types import (
    ContentBlock,
    RedactedThinkingBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

# 合法的工具调用/结果只会由 tool_use/tool_result block 生成，
# 文本中出现的裸标签视为回显或注入，统一剔除
_INVOKE_SPAN_RE = re.compile(r"<invoke\b[^>]*>[\s\S]*?</invoke>", re.IGNORECASE)
_TOOL_RESULT_SPAN_RE = re.compile(r"<tool_result\b[^>]*>[\s\S]*?</tool_result>", re.IGNORECASE)


def _to_structured_text(value: Any) -> str:
    """非字符串值序列化为 JSON 文本"""
    return json.dumps(value, ensure_ascii=False)


def scrub_protocol_tags(text: str) -> str:
    """剔除文本中的 <invoke>...</invoke> 与 <tool_result>...</tool_result> 片段"""
    text = _INVOKE_SPAN_RE.sub("", text)
    return _TOOL_RESULT_SPAN_RE.sub("", text)


def render_invoke(name: str, arguments: dict, trigger_signal: Optional[str] = None) -> str:
    """渲染一次工具调用，带触发信号前缀时解析器才能在自由文本里找到调用边界"""
    params = "\n".join(
        f'<parameter name="{key}">'
        f'{value if isinstance(value, str) else _to_structured_text(value)}'
        f"</parameter>"
        for key, value in (arguments or {}).items()
    )
    trigger = f"{trigger_signal}\n" if trigger_signal else ""
    return f'{trigger}<invoke name="{name}">\n{params}\n</invoke>'


def serialize_block(block: ContentBlock, trigger_signal: Optional[str] = None) -> str:
    """
    将单个 content block 转换为文本片段

    Args:
        block: 结构化 content block
        trigger_signal: 工具调用前缀的触发信号（可选）

    Returns:
        文本片段；文本块为空白时返回空字符串

    Raises:
        TypeError: 传入的不是已知的 block 类型
    """
    if isinstance(block, TextBlock):
        return scrub_protocol_tags(block.text).strip()

    if isinstance(block, ThinkingBlock):
        return f"{THINKING_START_TAG}{block.thinking}{THINKING_END_TAG}"

    if isinstance(block, RedactedThinkingBlock):
        return f"{THINKING_START_TAG}{REDACTED_THINKING_MARKER}{THINKING_END_TAG}"

    if isinstance(block, ToolResultBlock):
        content = block.content
        if isinstance(content, str):
            content_str = content
        else:
            content_str = _to_structured_text(content if content is not None else "")
        return f'<tool_result id="{block.tool_use_id}">{content_str}</tool_result>'

    if isinstance(block, ToolUseBlock):
        return render_invoke(block.name, block.input, trigger_signal)

    raise TypeError(f"Unsupported content block: {type(block).__name__}")


def join_fragments(fragments: Iterable[str]) -> str:
    """用换行拼接片段，空白片段直接丢弃"""
    return "\n".join(fragment for fragment in fragments if fragment and fragment.strip())


def serialize_content(
    content: Union[str, List[ContentBlock]],
    trigger_signal: Optional[str] = None,
) -> str:
    """
    将一条消息的 content 转换为单个字符串

    字符串 content 同样会剔除夹带的协议标签。
    """
    if isinstance(content, str):
        return scrub_protocol_tags(content).strip()
    return join_fragments(serialize_block(block, trigger_signal) for block in content)


__all__ = [
    "serialize_block",
    "serialize_content",
    "scrub_protocol_tags",
    "render_invoke",
    "join_fragments",
]
