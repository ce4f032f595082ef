"""
Message Repair - 重新提交历史消息前修复结构约束

结构化 API 的两条约束：
1. 思考模式下，包含思考类 block 的 assistant 消息，第一个 block 必须是思考类
2. 任何 text block 都不能为空或纯空白；整条 content 不能为空

所有函数都不修改入参；不需要修复的消息原样返回（同一个对象），
避免调用方持有的历史被无谓地替换。
"""

from __future__ import annotations

import re
from typing import List, Sequence, Union

from log import log

from ..constants import PLACEHOLDER_TEXT, THINKING_END_TAG, THINKING_START_TAG
from ..types import (
    ContentBlock,
    FlatMessage,
    Message,
    TextBlock,
    ThinkingBlock,
    is_reasoning_block,
    is_text_block,
)

_THINKING_SPAN_RE = re.compile(
    re.escape(THINKING_START_TAG) + r"([\s\S]*?)" + re.escape(THINKING_END_TAG)
)


def parse_thinking_from_text(content: str) -> List[ContentBlock]:
    """
    将文本中的 <thinking>...</thinking> 片段还原为 thinking block

    片段之间/前后的文本成为 text block（空白则丢弃）；
    还原出的 thinking block 没有签名，signature 为空字符串。
    """
    blocks: List[ContentBlock] = []
    last_index = 0

    for match in _THINKING_SPAN_RE.finditer(content):
        before = content[last_index:match.start()]
        if before.strip():
            blocks.append(TextBlock(text=before))
        blocks.append(ThinkingBlock(thinking=match.group(1), signature=""))
        last_index = match.end()

    remaining = content[last_index:]
    if remaining.strip():
        blocks.append(TextBlock(text=remaining))

    return blocks


def ensure_thinking_first(blocks: Sequence[ContentBlock]) -> List[ContentBlock]:
    """
    稳定分区：思考类 block 全部移到最前面，两组内部保持原有顺序

    第一个 block 已经是思考类时不做任何调整。
    """
    blocks = list(blocks)
    if not blocks or is_reasoning_block(blocks[0]):
        return blocks

    reasoning = [b for b in blocks if is_reasoning_block(b)]
    others = [b for b in blocks if not is_reasoning_block(b)]
    return reasoning + others


def _is_blank_text(block: ContentBlock) -> bool:
    return is_text_block(block) and not block.text.strip()


def filter_empty_text_blocks(blocks: Sequence[ContentBlock]) -> List[ContentBlock]:
    """
    移除空白 text block，从不移除非 text block

    过滤后为空时返回只含一个占位 text block 的列表。
    """
    filtered = [b for b in blocks if not _is_blank_text(b)]
    if not filtered:
        return [TextBlock(text=PLACEHOLDER_TEXT)]
    return filtered


def has_thinking_content(content: Union[str, Sequence[ContentBlock]]) -> bool:
    """检查 content 中是否包含思考内容"""
    if isinstance(content, str):
        return THINKING_START_TAG in content
    return any(is_reasoning_block(b) for b in content)


def _same_blocks(a: Sequence[ContentBlock], b: Sequence[ContentBlock]) -> bool:
    return len(a) == len(b) and all(x is y for x, y in zip(a, b))


def repair_message(message: Message, thinking_enabled: bool) -> Message:
    """
    修复单条消息

    - block 列表：过滤空白 text，必要时补占位；思考模式 + assistant + 含思考类 block 时
      把思考类 block 提到最前
    - 字符串：空白补占位；思考模式 + assistant + 含 <thinking> 时解析为 block 列表并重排
    """
    content = message.content
    reorder = thinking_enabled and message.role == "assistant"

    if isinstance(content, list):
        blocks = filter_empty_text_blocks(content)
        if reorder and any(is_reasoning_block(b) for b in blocks):
            blocks = ensure_thinking_first(blocks)
        if _same_blocks(blocks, content):
            return message
        log.debug(
            "Repaired block content",
            tag="REPAIR",
            role=message.role,
            before=len(content),
            after=len(blocks),
        )
        return message.model_copy(update={"content": blocks})

    if not content.strip():
        return message.model_copy(update={"content": PLACEHOLDER_TEXT})

    if reorder and THINKING_START_TAG in content:
        parsed = parse_thinking_from_text(content)
        if not any(is_reasoning_block(b) for b in parsed):
            # 只有开标签没有闭合，保持字符串原样
            return message
        filtered = [b for b in parsed if not _is_blank_text(b)]
        blocks = ensure_thinking_first(filtered or parsed)
        log.debug("Parsed thinking spans from string content", tag="REPAIR", blocks=len(blocks))
        return message.model_copy(update={"content": blocks})

    return message


def repair_messages(messages: List[Message], thinking_enabled: bool) -> List[Message]:
    """
    修复整段历史

    没有任何消息需要修复时返回原列表对象本身。
    """
    repaired = [repair_message(m, thinking_enabled) for m in messages]
    if all(new is old for new, old in zip(repaired, messages)):
        return messages
    return repaired


def reconstruct_message(message: FlatMessage, thinking_enabled: bool) -> Message:
    """
    由扁平消息重建结构化消息

    思考模式下，含 <thinking> 的 assistant 消息还原为以思考块开头的 block 列表。
    """
    role = "assistant" if message.role == "assistant" else "user"

    if role == "assistant" and thinking_enabled and THINKING_START_TAG in message.content:
        blocks = parse_thinking_from_text(message.content)
        if blocks:
            return Message(role=role, content=ensure_thinking_first(blocks))

    content = message.content if message.content.strip() else PLACEHOLDER_TEXT
    return Message(role=role, content=content)


__all__ = [
    "parse_thinking_from_text",
    "ensure_thinking_first",
    "filter_empty_text_blocks",
    "has_thinking_content",
    "repair_message",
    "repair_messages",
    "reconstruct_message",
]
