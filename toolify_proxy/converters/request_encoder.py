"""
Request Encoder - 结构化请求 -> 扁平上游请求

处理流程：
1. 校验 max_tokens（缺失或非有限数字直接拒绝，先于任何其它处理）
2. system 提示词拍平后作为第一条 system 消息
3. 每条消息经 block_serializer 拍平；思考模式下 user 消息追加思考提示符
4. 最后一条消息末尾追加角色延续标记
5. 模型名解析：上游覆盖 > 映射表 > 原样
6. 采样参数协调：思考模式强制 temperature，且不下发 top_p
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Union

from log import log

from ..constants import (
    DEFAULT_TEMPERATURE,
    PLACEHOLDER_TEXT,
    ROLE_CONTINUATION_MARKER,
    THINKING_HINT,
    THINKING_TEMPERATURE,
)
from ..errors import InvalidRequestError
from ..types import FlatMessage, FlatRequest, StructuredRequest
from .block_serializer import serialize_content


def _validate_max_tokens(value: Any) -> Union[int, float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequestError("max_tokens is required and must be a number")
    if not math.isfinite(value):
        raise InvalidRequestError("max_tokens must be a finite number")
    return value


def flatten_system_prompt(system: Union[str, List[Any], None]) -> str:
    """system 可以是字符串或 block 列表，列表中只取每项的文本部分"""
    if system is None:
        return ""
    if isinstance(system, str):
        return system

    parts = []
    for entry in system:
        if isinstance(entry, str):
            parts.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("text"), str):
            parts.append(entry["text"])
        else:
            parts.append("")
    return "\n".join(parts)


def map_role(role: str) -> str:
    return "assistant" if role == "assistant" else "user"


def resolve_model(requested: str, model_override: Optional[str], model_mapping: Dict[str, str]) -> str:
    """模型名解析优先级：上游覆盖 > 映射表 > 请求原样"""
    if model_override:
        return model_override
    mapped = (model_mapping or {}).get(requested)
    if mapped:
        return mapped
    return requested


def reconcile_sampling(request: StructuredRequest) -> Dict[str, float]:
    """
    协调采样参数

    上游不接受同时指定 temperature 和 top_p：
    - 思考模式：temperature 强制为固定值，不设置 top_p
    - 否则优先透传 temperature，其次 top_p，都没有时使用默认低温
    """
    if request.thinking_enabled:
        return {"temperature": THINKING_TEMPERATURE}
    if request.temperature is not None:
        return {"temperature": request.temperature}
    if request.top_p is not None:
        return {"top_p": request.top_p}
    return {"temperature": DEFAULT_TEMPERATURE}


def encode_request(
    request: StructuredRequest,
    config: Any,
    trigger_signal: Optional[str] = None,
) -> FlatRequest:
    """
    将结构化请求编码为扁平上游请求

    Args:
        request: 结构化请求
        config: 提供 upstream_model_override / model_mapping 的配置对象
        trigger_signal: 工具调用触发信号（可选）

    Returns:
        FlatRequest（stream 恒为 True）

    Raises:
        InvalidRequestError: max_tokens 缺失或不是有限数字
    """
    max_tokens = _validate_max_tokens(request.max_tokens)

    messages: List[FlatMessage] = []

    if request.system:
        messages.append(FlatMessage(role="system", content=flatten_system_prompt(request.system)))

    thinking_enabled = request.thinking_enabled
    for message in request.messages:
        content = serialize_content(message.content, trigger_signal)
        if not content.strip():
            content = PLACEHOLDER_TEXT
        if thinking_enabled and message.role == "user":
            content = content + THINKING_HINT
        messages.append(FlatMessage(role=map_role(message.role), content=content))

    if messages:
        last = messages[-1]
        messages[-1] = FlatMessage(role=last.role, content=last.content + ROLE_CONTINUATION_MARKER)

    model = resolve_model(
        request.model,
        getattr(config, "upstream_model_override", None),
        getattr(config, "model_mapping", None) or {},
    )
    sampling = reconcile_sampling(request)

    log.debug(
        "Encoded request for upstream",
        tag="ENCODER",
        requested_model=request.model,
        model=model,
        messages=len(messages),
        thinking=thinking_enabled,
        sampling=sampling,
    )

    return FlatRequest(
        model=model,
        messages=messages,
        stream=True,
        max_tokens=max_tokens,
        **sampling,
    )


__all__ = [
    "encode_request",
    "flatten_system_prompt",
    "map_role",
    "resolve_model",
    "reconcile_sampling",
]
