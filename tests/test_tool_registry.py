"""Tests for the tool registry, the Tool base class and prompt-mode tool text."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from llm_relay.cancellation import CancelToken
from llm_relay.errors import RequestCancelled
from llm_relay.tools import Tool, ToolRegistry, build_tool_system_prompt, format_tool_result
from llm_relay.tools.registry import _smart_truncate
from llm_relay.types import ToolDescriptor, ToolParameter, ToolResponse


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EchoTool(Tool):
    """Simple mock tool for testing."""

    name = "echo"
    description = "Echoes the input message."
    parameters = [
        ToolParameter(name="message", type="string", description="Message to echo"),
    ]

    async def execute(self, **kwargs: Any) -> ToolResponse:
        return ToolResponse.from_text(f"Echo: {kwargs.get('message', '')}")


class FailTool(Tool):
    """Tool that always raises."""

    name = "fail"
    description = "Always fails."
    parameters: list[ToolParameter] = []

    async def execute(self, **kwargs: Any) -> ToolResponse:
        raise RuntimeError("intentional failure")


class BigOutputTool(Tool):
    name = "big_output"
    description = "Produces a lot of output."
    max_output = 100
    parameters: list[ToolParameter] = []

    async def execute(self, **kwargs: Any) -> ToolResponse:
        return ToolResponse(content=[
            {"type": "text", "text": "x" * 500},
            {"type": "image", "data": "QUJD"},
        ])


class StrictTool(Tool):
    name = "strict"
    description = "Takes exactly one argument."
    parameters = [ToolParameter(name="city", type="string", description="City")]

    async def execute(self, city: str) -> ToolResponse:
        return ToolResponse.from_text(city)


class SlowTool(Tool):
    name = "slow"
    description = "Sleeps."
    parameters: list[ToolParameter] = []

    async def execute(self, **kwargs: Any) -> ToolResponse:
        await asyncio.sleep(10)
        return ToolResponse.from_text("late")


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestSmartTruncate:
    def test_no_truncation_when_short(self):
        assert _smart_truncate("hello", 100) == "hello"

    def test_truncation_preserves_head_and_tail(self):
        text = "A" * 100 + "B" * 100
        result = _smart_truncate(text, 100)
        assert result.startswith("A" * 25)
        assert result.endswith("B" * 75)
        assert "[100 chars truncated]" in result


class TestToolBase:
    def test_input_schema(self):
        class OptTool(Tool):
            name = "opt"
            description = "Has optional param"
            parameters = [
                ToolParameter(name="x", type="string", description="required"),
                ToolParameter(name="y", type="integer", description="optional",
                              required=False, default=5),
                ToolParameter(name="mode", type="string", description="choice",
                              required=False, enum=["a", "b"]),
            ]

            async def execute(self, **kwargs: Any) -> ToolResponse:
                return ToolResponse.from_text("")

        schema = OptTool().input_schema()
        assert schema["required"] == ["x"]
        assert schema["properties"]["y"]["default"] == 5
        assert schema["properties"]["mode"]["enum"] == ["a", "b"]

    def test_to_descriptor(self):
        descriptor = EchoTool().to_descriptor()
        assert descriptor.name == "echo"
        assert descriptor.server_id == "local"
        assert "message" in descriptor.input_schema["properties"]


class TestToolRegistry:
    def test_register_and_lookup(self):
        reg = ToolRegistry()
        tool = EchoTool()
        reg.register(tool)
        assert reg.get("echo") is tool
        assert reg.get("nonexistent") is None
        assert reg.tool_names() == ["echo"]
        assert reg.list_tools() == [tool]
        assert [d.name for d in reg.descriptors()] == ["echo"]

    async def test_execute_success(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        result = await reg.execute("echo", {"message": "hello"})
        assert not result.is_error
        assert result.text == "Echo: hello"

    async def test_call_as_invoker(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        result = await reg(ToolDescriptor(name="echo"), {"message": "hi"}, CancelToken())
        assert result.text == "Echo: hi"

    async def test_execute_unknown_tool(self):
        reg = ToolRegistry()
        reg.register(EchoTool())
        result = await reg.execute("unknown", {})
        assert result.is_error
        assert "Unknown tool: unknown" in result.text
        assert "echo" in result.text

    async def test_execute_catches_exception(self):
        reg = ToolRegistry()
        reg.register(FailTool())
        result = await reg.execute("fail", {})
        assert result.is_error
        assert "intentional failure" in result.text

    async def test_bad_arguments_become_error(self):
        reg = ToolRegistry()
        reg.register(StrictTool())
        result = await reg.execute("strict", {"unexpected": 1})
        assert result.is_error
        assert "TypeError" in result.text

    async def test_execute_truncates_text_parts(self):
        reg = ToolRegistry()
        reg.register(BigOutputTool())
        result = await reg.execute("big_output", {})
        assert len(result.content[0]["text"]) < 500
        assert "truncated" in result.content[0]["text"]
        assert result.content[1] == {"type": "image", "data": "QUJD"}

    async def test_cancellation_propagates(self):
        reg = ToolRegistry()
        reg.register(SlowTool())
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "stop")

        with pytest.raises(RequestCancelled):
            await reg.execute("slow", {}, token)

    def test_discover_entry_points(self):
        ep_class = MagicMock()
        ep_class.name = "echo"
        ep_class.load.return_value = EchoTool
        ep_broken = MagicMock()
        ep_broken.name = "broken"
        ep_broken.load.side_effect = ImportError("missing dependency")
        ep_other = MagicMock()
        ep_other.name = "other"
        ep_other.load.return_value = 42

        reg = ToolRegistry()
        with patch("llm_relay.tools.registry.entry_points",
                   return_value=[ep_class, ep_broken, ep_other]) as eps:
            reg.discover()

        eps.assert_called_once_with(group="llm_relay.tools")
        assert reg.tool_names() == ["echo"]


class TestPromptText:
    def test_system_prompt_lists_tools(self):
        prompt = build_tool_system_prompt("You are helpful.", [EchoTool().to_descriptor()])
        assert prompt.startswith("You are helpful.\n\n")
        assert "<name>echo</name>" in prompt
        assert "<tool_use>" in prompt
        assert '"message"' in prompt

    def test_no_tools_leaves_prompt(self):
        assert build_tool_system_prompt("Base.", []) == "Base."

    def test_format_result(self):
        block = format_tool_result("echo", ToolResponse.from_text("Echo: hi"))
        assert block == (
            "<tool_use_result>\n"
            "  <name>echo</name>\n"
            "  <result>Echo: hi</result>\n"
            "</tool_use_result>"
        )

    def test_format_error(self):
        block = format_tool_result("fail", ToolResponse.from_text("boom", is_error=True))
        assert "<error>boom</error>" in block
