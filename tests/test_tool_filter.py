from __future__ import annotations

from opencode_gateway.tool_filter import ToolCallFilter, strip_tool_calls


def test_block_spanning_chunks_is_suppressed():
    f = ToolCallFilter()
    out = [f.feed(chunk) for chunk in ["foo ", "<function_calls>", "bar", "</function_calls>", " baz"]]
    assert out == ["foo ", "", "", "", " baz"]
    assert f.inside is False


def test_block_inside_a_single_chunk():
    f = ToolCallFilter()
    assert f.feed("a<tool_call>{\"name\": \"bash\"}</tool_call>b") == "ab"


def test_unclosed_block_keeps_suppressing():
    f = ToolCallFilter()
    assert f.feed("ok <function_calls><invoke>") == "ok "
    assert f.feed("still inside") == ""
    assert f.inside is True


def test_strip_tool_calls():
    assert strip_tool_calls("foo <function_calls>bar</function_calls> baz") == "foo  baz"
    assert strip_tool_calls("x<tool_call>y") == "x"
    assert strip_tool_calls("plain") == "plain"
    assert strip_tool_calls("") == ""
