"""Tool abstractions: the ``Tool`` ABC and the invoker protocol."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol

from llm_relay.cancellation import CancelToken
from llm_relay.types import ToolDescriptor, ToolParameter, ToolResponse


class ToolInvoker(Protocol):
    """Opaque tool execution capability.

    ``(descriptor, arguments, cancel_token) -> ToolResponse``.  It may be a
    local function table, a subprocess, or a remote MCP server; the relay
    only relies on this signature.  Implementations should honour
    *cancel_token* where they can.
    """

    async def __call__(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        cancel_token: CancelToken | None = None,
    ) -> ToolResponse:
        ...


class Tool(ABC):
    """Base class for locally implemented tools.

    Subclasses set ``name``, ``description`` and ``parameters`` as class
    attributes and implement the async ``execute()`` method.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    max_output: int = 5000  # Per-tool output limit (chars). Override in subclasses.

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResponse:
        """Execute the tool asynchronously."""

    def input_schema(self) -> dict[str, Any]:
        """JSON schema for the tool's arguments."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = p.enum
            if p.default is not None:
                prop["default"] = p.default
            properties[p.name] = prop
            if p.required:
                required.append(p.name)
        return {"type": "object", "properties": properties, "required": required}

    def to_descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema(),
            server_id="local",
        )
