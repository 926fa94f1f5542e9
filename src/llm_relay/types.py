"""Shared data types for llm-relay."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

class ToolCallStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.DONE, ToolCallStatus.ERROR)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass(frozen=True)
class ToolDescriptor:
    """Provider-neutral description of a callable tool.

    ``input_schema`` is a JSON schema object.  ``server_id`` identifies the
    collaborator that owns the tool (an MCP server, a local registry, ...).
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    id: str = ""
    server_id: str = ""

    @property
    def key(self) -> str:
        return self.id or self.name


@dataclass
class ToolResponse:
    """Result of one tool invocation: ``{content: [{type, text?}], is_error}``."""

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str, is_error: bool = False) -> ToolResponse:
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    @property
    def text(self) -> str:
        return "\n".join(
            str(part.get("text", ""))
            for part in self.content
            if part.get("type") == "text"
        )


@dataclass
class ToolCallRecord:
    """A tool call observed in a model response.

    Mutated as the corresponding events arrive; ``response`` is filled in
    once the call has been executed.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    response: ToolResponse | None = None
    tool: ToolDescriptor | None = None


def new_call_id(prefix: str = "call") -> str:
    """Id for a tool call the provider did not name; unique per process."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Usage / web search / images
# ---------------------------------------------------------------------------

@dataclass
class Usage:
    """Token counters; ``total_tokens`` is derived when a provider omits it."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt: int | None, completion: int | None, total: int | None = None) -> Usage:
        prompt = int(prompt or 0)
        completion = int(completion or 0)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(total) if total else prompt + completion,
        )

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def as_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class WebSearchItem:
    url: str
    title: str = ""
    snippet: str = ""


@dataclass(frozen=True)
class WebSearchResults:
    """Citations reported by a provider, tagged with the provider family."""

    source: str
    items: tuple[WebSearchItem, ...] = ()


@dataclass(frozen=True)
class ImagePayload:
    """Generated images, either URLs or ``data:`` URIs."""

    type: str  # "url" | "base64"
    images: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Accumulated result
# ---------------------------------------------------------------------------

@dataclass
class AccumulatedResult:
    """Cumulative state for one top-level request across all tool rounds."""

    text: str = ""
    thinking: str = ""
    tool_responses: list[ToolCallRecord] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    web_search: list[WebSearchResults] = field(default_factory=list)
    images: list[ImagePayload] = field(default_factory=list)
    error: BaseException | None = None

    def record_error(self, error: BaseException) -> None:
        """Keep only the first captured error."""
        if self.error is None:
            self.error = error


@dataclass
class CompletionsResult(AccumulatedResult):
    """What :meth:`AiProvider.completions` returns to the caller."""

    @classmethod
    def from_accumulated(cls, acc: AccumulatedResult) -> CompletionsResult:
        return cls(
            text=acc.text,
            thinking=acc.thinking,
            tool_responses=list(acc.tool_responses),
            usage=acc.usage,
            web_search=list(acc.web_search),
            images=list(acc.images),
            error=acc.error,
        )

    def get_text(self) -> str:
        return self.text


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Lifecycle events published on the EventBus."""

    REQUEST_STARTED = "relay.request.started"
    REQUEST_DONE = "relay.request.done"
    REQUEST_ERROR = "relay.request.error"
    REQUEST_CANCELLED = "relay.request.cancelled"

    ROUND_STARTED = "relay.round.started"
    DEPTH_LIMIT = "relay.round.depth_limit"

    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"


@dataclass
class RelayEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)