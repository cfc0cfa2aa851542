"""Tests for per-tool wrapper functions and the ToolTable lookup."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from tool_wrappers import ToolTable, make_tool_function, map_arguments, python_name

WORKER = os.path.join(os.path.dirname(__file__), "stdio_worker.py")


class RecordingSession:
    """Stands in for Session: records invoke() calls."""

    def __init__(self, tools=None):
        self.calls = []
        self.tools = tools or []

    async def invoke(self, name, arguments=None):
        self.calls.append((name, arguments))
        return {"tool": name, "arguments": arguments}

    async def list_tools(self):
        return self.tools


TOOLS = [
    {
        "name": "navigate_page",
        "description": "Open a URL",
        "inputSchema": {"type": "object", "properties": {"url": {}, "timeout": {}}},
    },
    {"name": "list_pages", "description": "List open pages", "inputSchema": {"type": "object"}},
    {"name": "take-screenshot"},
]


# ============================================================
# Argument mapping
# ============================================================


class TestMapArguments:
    def test_single_dict_is_the_argument_object(self):
        assert map_arguments("t", ("url", "timeout"), ({"url": "x", "timeout": 1},), {}) == {
            "url": "x", "timeout": 1
        }

    def test_single_dict_without_declared_params(self):
        assert map_arguments("t", (), ({"anything": 1},), {}) == {"anything": 1}

    def test_dict_value_for_single_parameter(self):
        assert map_arguments("fill_form", ("elements",), ({"a": 1},), {}) == {"elements": {"a": 1}}

    def test_positionals_follow_param_names(self):
        assert map_arguments("t", ("selector", "value"), ("#q", "hello"), {}) == {
            "selector": "#q", "value": "hello"
        }

    def test_keywords(self):
        assert map_arguments("t", (), (), {"a": 1}) == {"a": 1}

    def test_positional_and_keyword_mix(self):
        assert map_arguments("t", ("url", "timeout"), ("x",), {"timeout": 5}) == {"url": "x", "timeout": 5}

    def test_no_arguments(self):
        assert map_arguments("t", ("url",), (), {}) == {}

    def test_too_many_positionals(self):
        with pytest.raises(TypeError, match="takes 1 positional"):
            map_arguments("t", ("url",), ("a", "b"), {})

    def test_duplicate_argument(self):
        with pytest.raises(TypeError, match="multiple values"):
            map_arguments("t", ("url",), ("a",), {"url": "b"})


class TestPythonName:
    def test_names(self):
        assert python_name("take-screenshot") == "take_screenshot"
        assert python_name("list_pages") == "list_pages"
        assert python_name("2fa.verify") == "_2fa_verify"
        assert python_name("class") == "_class"


# ============================================================
# Wrapper functions
# ============================================================


class TestMakeToolFunction:
    @pytest.mark.asyncio
    async def test_delegates_to_explicit_session(self):
        session = RecordingSession()
        navigate = make_tool_function(session, "navigate_page", ["url"])
        result = await navigate("https://example.com")
        assert session.calls == [("navigate_page", {"url": "https://example.com"})]
        assert result == {"tool": "navigate_page", "arguments": {"url": "https://example.com"}}

    def test_function_metadata(self):
        fn = make_tool_function(RecordingSession(), "take-screenshot")
        assert fn.__name__ == "take_screenshot"
        assert fn.tool_name == "take-screenshot"
        assert fn.param_names == ()

    @pytest.mark.asyncio
    async def test_two_sessions_stay_separate(self):
        first, second = RecordingSession(), RecordingSession()
        await make_tool_function(first, "a")()
        await make_tool_function(second, "b")()
        assert first.calls == [("a", {})]
        assert second.calls == [("b", {})]


# ============================================================
# ToolTable
# ============================================================


class TestToolTable:
    def test_lookup(self):
        table = ToolTable(RecordingSession(), TOOLS)
        assert table.names() == ["navigate_page", "list_pages", "take-screenshot"]
        assert "list_pages" in table
        assert "missing" not in table
        assert len(table) == 3
        assert list(table) == table.names()
        assert table.describe("navigate_page") == "Open a URL"
        assert table["navigate_page"].param_names == ("url", "timeout")

    def test_unknown_tool(self):
        table = ToolTable(RecordingSession(), TOOLS)
        with pytest.raises(KeyError, match="Unknown tool: nope"):
            table["nope"]
        with pytest.raises(KeyError):
            table.describe("nope")

    def test_plain_names_and_junk_entries(self):
        table = ToolTable(RecordingSession(), ["a", {"description": "no name"}, {"name": ""}, "b"])
        assert table.names() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_call(self):
        session = RecordingSession()
        table = ToolTable(session, TOOLS)
        await table.call("navigate_page", "https://example.com", timeout=10)
        assert session.calls == [("navigate_page", {"url": "https://example.com", "timeout": 10})]

    @pytest.mark.asyncio
    async def test_from_session(self):
        session = RecordingSession(tools=TOOLS)
        table = await ToolTable.from_session(session)
        assert table.names() == ["navigate_page", "list_pages", "take-screenshot"]

    @pytest.mark.asyncio
    async def test_against_real_worker(self):
        from mcp_transport import start_session

        session = await start_session(sys.executable, [WORKER], timeout=5)
        try:
            table = await ToolTable.from_session(session)
            assert "echo" in table
            assert await table.call("echo", "hi", 2) == {"text": "hi", "count": 2}
            assert await table["raw"]({"value": {"": "unwrapped"}}) == "unwrapped"
        finally:
            await session.stop()
