"""Tool system for llm-relay."""

from llm_relay.tools.base import Tool, ToolInvoker
from llm_relay.tools.prompt import build_tool_system_prompt, format_tool_result
from llm_relay.tools.registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolInvoker",
    "ToolRegistry",
    "build_tool_system_prompt",
    "format_tool_result",
]
