"""
Block Serializer Tests - content block 拍平测试
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from toolify_proxy.converters.block_serializer import (
    join_fragments,
    render_invoke,
    scrub_protocol_tags,
    serialize_block,
    serialize_content,
)
from toolify_proxy.converters.message_repair import parse_thinking_from_text
from toolify_proxy.types import (
    RedactedThinkingBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)


class TestSerializeBlock:
    """测试单个 block 的渲染"""

    def test_text_is_stripped(self):
        assert serialize_block(TextBlock(text="  hello \n")) == "hello"

    def test_text_scrubs_protocol_spans(self):
        block = TextBlock(
            text='before <invoke name="x"><parameter name="a">1</parameter></invoke> '
            'mid <tool_result id="t1">secret</tool_result> after'
        )
        result = serialize_block(block)
        assert "<invoke" not in result
        assert "<tool_result" not in result
        assert result.startswith("before")
        assert result.endswith("after")

    def test_blank_text_dropped(self):
        assert serialize_block(TextBlock(text="   ")) == ""
        assert serialize_block(TextBlock(text='<invoke name="x"></invoke>')) == ""

    def test_thinking_verbatim(self):
        block = ThinkingBlock(thinking="  raw\nthought ", signature="sig")
        assert serialize_block(block) == "<thinking>  raw\nthought </thinking>"

    def test_redacted_thinking_hides_data(self):
        result = serialize_block(RedactedThinkingBlock(data="opaque-bytes"))
        assert result == "<thinking>[redacted]</thinking>"
        assert "opaque" not in result

    def test_tool_result_string(self):
        block = ToolResultBlock(tool_use_id="toolu_1", content="42")
        assert serialize_block(block) == '<tool_result id="toolu_1">42</tool_result>'

    def test_tool_result_structured(self):
        block = ToolResultBlock(tool_use_id="toolu_1", content=[{"type": "text", "text": "ok"}])
        assert serialize_block(block) == (
            '<tool_result id="toolu_1">[{"type": "text", "text": "ok"}]</tool_result>'
        )

    def test_tool_use_with_trigger(self):
        block = ToolUseBlock(id="toolu_1", name="search", input={"q": "天气", "n": 3})
        assert serialize_block(block, "<Function_ab12_Start>") == (
            "<Function_ab12_Start>\n"
            '<invoke name="search">\n'
            '<parameter name="q">天气</parameter>\n'
            '<parameter name="n">3</parameter>\n'
            "</invoke>"
        )

    def test_tool_use_without_trigger(self):
        result = render_invoke("t", {"flag": True})
        assert result == '<invoke name="t">\n<parameter name="flag">true</parameter>\n</invoke>'

    def test_unknown_block_rejected(self):
        with pytest.raises(TypeError):
            serialize_block({"type": "image"})


class TestSerializeContent:
    """测试整条消息的拍平"""

    def test_string_content(self):
        assert serialize_content("  hi  ") == "hi"

    def test_blocks_joined_without_blank_lines(self):
        blocks = [
            TextBlock(text="one"),
            TextBlock(text="  "),
            ThinkingBlock(thinking="t"),
            TextBlock(text="two"),
        ]
        assert serialize_content(blocks) == "one\n<thinking>t</thinking>\ntwo"

    def test_join_fragments_drops_blank(self):
        assert join_fragments(["a", "", " ", "b"]) == "a\nb"

    def test_scrub_is_case_insensitive(self):
        assert scrub_protocol_tags("x<INVOKE name='a'></INVOKE>y") == "xy"

    def test_thinking_round_trip_loses_signature(self):
        """thinking 渲染后再解析，得到同样内容、空签名的 thinking block"""
        text = serialize_block(ThinkingBlock(thinking="X", signature="abc"))
        blocks = parse_thinking_from_text(text)
        assert ThinkingBlock(thinking="X", signature="") in blocks
