"""Local tool registry; doubles as a :class:`ToolInvoker`."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any

from llm_relay.cancellation import CancelToken
from llm_relay.errors import RequestCancelled
from llm_relay.tools.base import Tool
from llm_relay.types import ToolDescriptor, ToolResponse

_logger = logging.getLogger(__name__)

_ENTRY_POINT_GROUP = "llm_relay.tools"


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep the head and tail of *text*, eliding the middle."""
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class ToolRegistry:
    """Registry of local tools with isolated async execution.

    Calling the registry executes a tool and always returns a
    :class:`ToolResponse`; unknown tools and exceptions become error
    responses instead of propagating.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def descriptors(self) -> list[ToolDescriptor]:
        """Descriptors for every registered tool, in registration order."""
        return [t.to_descriptor() for t in self._tools.values()]

    async def __call__(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        cancel_token: CancelToken | None = None,
    ) -> ToolResponse:
        return await self.execute(tool.name, arguments, cancel_token)

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        cancel_token: CancelToken | None = None,
    ) -> ToolResponse:
        """Execute a tool by name with the given arguments.

        Applies per-tool output truncation.  Cancellation propagates as
        :class:`RequestCancelled`; every other failure is returned as an
        error response.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResponse.from_text(
                f"Unknown tool: {tool_name}. Available: {', '.join(self._tools)}",
                is_error=True,
            )
        try:
            if cancel_token is not None:
                result = await cancel_token.run(tool.execute(**arguments))
            else:
                result = await tool.execute(**arguments)
        except RequestCancelled:
            raise
        except Exception as e:
            _logger.warning("Tool %s raised: %s", tool_name, e)
            return ToolResponse.from_text(
                f"Tool '{tool_name}' execution failed: {type(e).__name__}: {e}",
                is_error=True,
            )

        max_out = getattr(tool, "max_output", 5000)
        if max_out > 0:
            result.content = [
                {**part, "text": _smart_truncate(part["text"], max_out)}
                if part.get("type") == "text" and isinstance(part.get("text"), str)
                else part
                for part in result.content
            ]
        return result

    def discover(self) -> None:
        """Load tools from the ``llm_relay.tools`` entry-point group.

        Each entry point resolves to a Tool subclass (instantiated with no
        arguments), a Tool instance, or a factory returning one.
        """
        for ep in entry_points(group=_ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                if isinstance(obj, type) and issubclass(obj, Tool):
                    tool = obj()
                elif isinstance(obj, Tool):
                    tool = obj
                elif callable(obj):
                    tool = obj()
                else:
                    _logger.warning(
                        "Entry point %s did not return a Tool: %s", ep.name, type(obj)
                    )
                    continue
                self.register(tool)
                _logger.info("Discovered plugin tool: %s", tool.name)
            except Exception:
                _logger.exception("Failed to load tool plugin: %s", ep.name)
