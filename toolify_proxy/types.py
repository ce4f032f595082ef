"""
Protocol Types
==============

结构化（Anthropic Messages 风格）与扁平（OpenAI Chat Completions 风格）两侧的数据结构。

- 请求/响应线上结构使用 pydantic 定义，ContentBlock 为按 type 区分的封闭联合类型，
  未知的 block 类型在校验阶段直接失败，不会被悄悄丢弃
- 解析器事件（ParserEvent）是内部结构，使用不可变 dataclass
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# ============== Content Blocks ==============

class TextBlock(BaseModel):
    """纯文本块，只有包含非空白字符时才合法"""
    type: Literal["text"] = "text"
    text: str = ""


class ThinkingBlock(BaseModel):
    """
    思考块

    signature 由上游原始来源签发；从扁平文本中重新解析出来的思考块没有签名，
    signature 为空字符串（无法事后恢复）。
    """
    type: Literal["thinking"] = "thinking"
    thinking: str = ""
    signature: str = ""


class RedactedThinkingBlock(BaseModel):
    """内容被隐藏的思考块，只渲染一个 redacted 标记"""
    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str = ""


class ToolUseBlock(BaseModel):
    """工具调用"""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """工具执行结果，content 可以是字符串或结构化内容"""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = None
    is_error: Optional[bool] = None


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, RedactedThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]

REASONING_BLOCK_TYPES = (ThinkingBlock, RedactedThinkingBlock)


def is_reasoning_block(block: Any) -> bool:
    """thinking / redacted_thinking 都算思考类 block"""
    return isinstance(block, REASONING_BLOCK_TYPES)


def is_text_block(block: Any) -> bool:
    return isinstance(block, TextBlock)


# ============== 结构化请求 ==============

class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentBlock]]


class ThinkingConfig(BaseModel):
    type: str = "disabled"
    budget_tokens: Optional[int] = None


class StructuredRequest(BaseModel):
    """
    结构化 API 请求体

    max_tokens 在这里不做类型转换（"100"、true 都保留原值），由编码器在任何其它处理之前校验，
    这样缺失/非法时能给出统一的 invalid request 错误。
    """
    model: str
    messages: List[Message]
    system: Optional[Union[str, List[Union[str, Dict[str, Any]]]]] = None
    max_tokens: Any = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    thinking: Optional[ThinkingConfig] = None
    stream: bool = False
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def thinking_enabled(self) -> bool:
        return self.thinking is not None and self.thinking.type == "enabled"


# ============== 扁平请求 ==============

class FlatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class FlatRequest(BaseModel):
    """发往上游的请求，stream 始终为 True"""
    model: str
    messages: List[FlatMessage]
    stream: bool = True
    max_tokens: Union[int, float]
    temperature: Optional[float] = None
    top_p: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        """序列化为上游 JSON，未设置的采样参数不出现在请求里"""
        return self.model_dump(exclude_none=True)


# ============== 解析器事件 ==============

@dataclass(frozen=True)
class ParsedCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextEvent:
    content: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ThinkingEvent:
    content: str
    type: str = field(default="thinking", init=False)


@dataclass(frozen=True)
class ToolCallEvent:
    call: ParsedCall
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class EndEvent:
    type: str = field(default="end", init=False)


ParserEvent = Union[TextEvent, ThinkingEvent, ToolCallEvent, EndEvent]


__all__ = [
    "TextBlock",
    "ThinkingBlock",
    "RedactedThinkingBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "ContentBlock",
    "REASONING_BLOCK_TYPES",
    "is_reasoning_block",
    "is_text_block",
    "Message",
    "ThinkingConfig",
    "StructuredRequest",
    "FlatMessage",
    "FlatRequest",
    "ParsedCall",
    "TextEvent",
    "ThinkingEvent",
    "ToolCallEvent",
    "EndEvent",
    "ParserEvent",
]
