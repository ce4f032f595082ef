"""
工具提示词注入

上游不支持原生工具调用，通过 system 提示词告诉模型：
1. 有哪些工具、各自的参数
2. 需要调用时，先单独输出一行触发信号，然后紧跟一个 <invoke> 块

触发信号每个请求随机生成，避免与正常文本冲突。
"""

from __future__ import annotations

import json
import secrets
import string
from typing import Any, Dict, List, Optional

from .types import FlatMessage, FlatRequest

_SIGNAL_ALPHABET = string.ascii_letters + string.digits

TOOL_PROMPT_TEMPLATE = """You have access to the following tools:

{tools_list}

When you need to call a tool, you MUST follow this exact format:

1. Start a new line containing exactly:
{trigger_signal}
2. Immediately follow it with ONE <invoke> block, for example:
{trigger_signal}
<invoke name="tool_name">
<parameter name="param_name">value</parameter>
</invoke>

Rules:
- Call at most one tool per response and stop writing after </invoke>.
- Use parameter names exactly as defined.
- Non-string parameter values must be valid JSON (numbers, booleans, arrays, objects).
- Tool results are returned to you wrapped in <tool_result id="...">...</tool_result> tags.
- Never output the trigger line unless you are calling a tool."""


def generate_trigger_signal() -> str:
    """生成随机触发信号，形如 <Function_Ab3x_Start>"""
    random_str = "".join(secrets.choice(_SIGNAL_ALPHABET) for _ in range(4))
    return f"<Function_{random_str}_Start>"


def _render_tool(index: int, tool: Dict[str, Any]) -> str:
    name = tool.get("name", "")
    description = tool.get("description") or "None"
    schema = tool.get("input_schema") or {}
    properties: Dict[str, Any] = schema.get("properties") or {}
    required: List[str] = schema.get("required") or []

    lines = [f'<tool id="{index}">', f"  <name>{name}</name>", f"  <description>{description}</description>"]
    if properties:
        lines.append("  <parameters>")
        for param_name, info in properties.items():
            info = info or {}
            lines.append(f'    <parameter name="{param_name}">')
            lines.append(f"      <type>{info.get('type', 'any')}</type>")
            lines.append(f"      <required>{str(param_name in required).lower()}</required>")
            if info.get("description"):
                lines.append(f"      <description>{info['description']}</description>")
            if info.get("enum") is not None:
                lines.append(f"      <enum>{json.dumps(info['enum'], ensure_ascii=False)}</enum>")
            lines.append("    </parameter>")
        lines.append("  </parameters>")
    else:
        lines.append("  <parameters>None</parameters>")
    lines.append("</tool>")
    return "\n".join(lines)


def build_tool_prompt(tools: List[Dict[str, Any]], trigger_signal: str) -> str:
    """根据客户端的工具定义生成注入 system 的提示词"""
    rendered = "\n".join(_render_tool(i + 1, tool) for i, tool in enumerate(tools))
    tools_list = f"<function_list>\n{rendered}\n</function_list>"
    return TOOL_PROMPT_TEMPLATE.format(tools_list=tools_list, trigger_signal=trigger_signal)


def inject_tool_prompt(request: FlatRequest, prompt: Optional[str]) -> FlatRequest:
    """
    将工具提示词放到 system 消息最前面（没有 system 消息时新建一条）

    返回新的 FlatRequest，不修改入参。
    """
    if not prompt:
        return request

    messages = list(request.messages)
    if messages and messages[0].role == "system":
        messages[0] = FlatMessage(role="system", content=f"{prompt}\n\n{messages[0].content}")
    else:
        messages.insert(0, FlatMessage(role="system", content=prompt))
    return request.model_copy(update={"messages": messages})


__all__ = [
    "generate_trigger_signal",
    "build_tool_prompt",
    "inject_tool_prompt",
    "TOOL_PROMPT_TEMPLATE",
]
