"""Chunk protocol: the shared vocabulary of streaming events.

Every provider adapter and every middleware speaks only in terms of the
chunk classes defined here.  Chunks are frozen dataclasses; each class
fixes its ``type`` tag and carries only the fields relevant to that kind.

Ordering contract for a chunk stream:

* chunks of the same kind are applied in emission order;
* for text and thinking, a ``start`` precedes any ``delta``/``complete``,
  and a ``complete`` is emitted if and only if a ``start`` was.

Consumers should switch on :attr:`BaseChunk.type` and ignore kinds they
do not understand.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from llm_relay.errors import ErrorKind, InvalidChunk
from llm_relay.types import (
    ImagePayload,
    ToolCallRecord,
    ToolCallStatus,
    Usage,
    WebSearchResults,
)

_logger = logging.getLogger(__name__)

# Bumped whenever a kind is added or a field changes meaning.
PROTOCOL_VERSION = 1


class ChunkType(str, enum.Enum):
    LLM_RESPONSE_CREATED = "llm_response_created"
    LLM_RESPONSE_COMPLETE = "llm_response_complete"

    TEXT_START = "text.start"
    TEXT_DELTA = "text.delta"
    TEXT_COMPLETE = "text.complete"

    THINKING_START = "thinking.start"
    THINKING_DELTA = "thinking.delta"
    THINKING_COMPLETE = "thinking.complete"

    MCP_TOOL_PENDING = "mcp_tool_pending"
    MCP_TOOL_IN_PROGRESS = "mcp_tool_in_progress"
    MCP_TOOL_COMPLETE = "mcp_tool_complete"

    IMAGE_CREATED = "image.created"
    IMAGE_DELTA = "image.delta"
    IMAGE_COMPLETE = "image.complete"

    LLM_WEB_SEARCH_IN_PROGRESS = "llm_websearch_in_progress"
    LLM_WEB_SEARCH_COMPLETE = "llm_websearch_complete"

    ERROR = "error"


# ---------------------------------------------------------------------------
# Chunk classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BaseChunk:
    type: ClassVar[ChunkType]


@dataclass(frozen=True)
class ResponseCreated(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.LLM_RESPONSE_CREATED


@dataclass(frozen=True)
class ResponseComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.LLM_RESPONSE_COMPLETE
    usage: Usage | None = None


@dataclass(frozen=True)
class TextStart(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.TEXT_START


@dataclass(frozen=True)
class TextDelta(BaseChunk):
    """A text fragment.

    For most providers ``text`` is the incremental fragment.  Streams marked
    cumulative (Gemini) carry the whole text so far in every delta.
    """

    type: ClassVar[ChunkType] = ChunkType.TEXT_DELTA
    text: str = ""


@dataclass(frozen=True)
class TextComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.TEXT_COMPLETE
    text: str = ""


@dataclass(frozen=True)
class ThinkingStart(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.THINKING_START


@dataclass(frozen=True)
class ThinkingDelta(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.THINKING_DELTA
    text: str = ""
    thinking_millsec: int | None = None


@dataclass(frozen=True)
class ThinkingComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.THINKING_COMPLETE
    text: str = ""
    thinking_millsec: int | None = None


@dataclass(frozen=True)
class ToolPending(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.MCP_TOOL_PENDING
    tools: tuple[ToolCallRecord, ...] = ()


@dataclass(frozen=True)
class ToolInProgress(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.MCP_TOOL_IN_PROGRESS
    tools: tuple[ToolCallRecord, ...] = ()


@dataclass(frozen=True)
class ToolComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.MCP_TOOL_COMPLETE
    tools: tuple[ToolCallRecord, ...] = ()


@dataclass(frozen=True)
class ImageCreated(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.IMAGE_CREATED


@dataclass(frozen=True)
class ImageDelta(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.IMAGE_DELTA
    image: ImagePayload | None = None


@dataclass(frozen=True)
class ImageComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.IMAGE_COMPLETE
    image: ImagePayload | None = None


@dataclass(frozen=True)
class WebSearchInProgress(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.LLM_WEB_SEARCH_IN_PROGRESS


@dataclass(frozen=True)
class WebSearchComplete(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.LLM_WEB_SEARCH_COMPLETE
    results: WebSearchResults | None = None


@dataclass(frozen=True)
class ErrorChunk(BaseChunk):
    type: ClassVar[ChunkType] = ChunkType.ERROR
    message: str = ""
    kind: ErrorKind = ErrorKind.UNKNOWN
    status: int | None = None


Chunk = Union[
    ResponseCreated, ResponseComplete,
    TextStart, TextDelta, TextComplete,
    ThinkingStart, ThinkingDelta, ThinkingComplete,
    ToolPending, ToolInProgress, ToolComplete,
    ImageCreated, ImageDelta, ImageComplete,
    WebSearchInProgress, WebSearchComplete,
    ErrorChunk,
]

CHUNK_CLASSES: dict[ChunkType, type[BaseChunk]] = {
    cls.type: cls
    for cls in (
        ResponseCreated, ResponseComplete,
        TextStart, TextDelta, TextComplete,
        ThinkingStart, ThinkingDelta, ThinkingComplete,
        ToolPending, ToolInProgress, ToolComplete,
        ImageCreated, ImageDelta, ImageComplete,
        WebSearchInProgress, WebSearchComplete,
        ErrorChunk,
    )
}


def snapshot_tools(records: list[ToolCallRecord] | tuple[ToolCallRecord, ...]) -> tuple[ToolCallRecord, ...]:
    """Copy mutable records so a tool chunk never changes after emission."""
    return tuple(
        dataclasses.replace(r, arguments=dict(r.arguments)) for r in records
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check(cond: bool, chunk: BaseChunk, detail: str) -> None:
    if not cond:
        raise InvalidChunk(f"{chunk.type.value}: {detail}")


def _check_tools(chunk: BaseChunk, tools: Any) -> None:
    _check(isinstance(tools, tuple), chunk, "tools must be a tuple")
    for record in tools:
        _check(isinstance(record, ToolCallRecord), chunk, "tools must hold ToolCallRecord")
        _check(isinstance(record.name, str) and bool(record.name), chunk, "tool name missing")
        _check(isinstance(record.arguments, dict), chunk, "tool arguments must be a dict")
        _check(isinstance(record.status, ToolCallStatus), chunk, "bad tool status")


def validate_chunk(value: Any) -> BaseChunk:
    """Return *value* if it is a well-formed chunk, else raise ``InvalidChunk``."""
    if not isinstance(value, BaseChunk) or getattr(value, "type", None) not in CHUNK_CLASSES:
        raise InvalidChunk(f"not a chunk: {type(value).__name__}")
    _check(type(value) is CHUNK_CLASSES[value.type], value, "class does not match kind")

    if isinstance(value, (TextDelta, TextComplete, ThinkingDelta, ThinkingComplete)):
        _check(isinstance(value.text, str), value, "text must be a string")
    if isinstance(value, (ThinkingDelta, ThinkingComplete)):
        _check(
            value.thinking_millsec is None or isinstance(value.thinking_millsec, int),
            value, "thinking_millsec must be an int",
        )
    elif isinstance(value, ResponseComplete):
        _check(value.usage is None or isinstance(value.usage, Usage), value, "bad usage")
    elif isinstance(value, (ToolPending, ToolInProgress, ToolComplete)):
        _check_tools(value, value.tools)
    elif isinstance(value, (ImageDelta, ImageComplete)):
        _check(value.image is None or isinstance(value.image, ImagePayload), value, "bad image")
    elif isinstance(value, WebSearchComplete):
        _check(
            value.results is None or isinstance(value.results, WebSearchResults),
            value, "bad web search results",
        )
    elif isinstance(value, ErrorChunk):
        _check(isinstance(value.message, str), value, "message must be a string")
        _check(isinstance(value.kind, ErrorKind), value, "kind must be an ErrorKind")
    return value


def coerce_chunk(value: Any) -> BaseChunk | None:
    """Gate applied before forwarding a value downstream.

    A legal chunk is returned as is.  A chunk whose fields do not match its
    kind becomes an :class:`ErrorChunk`.  Anything else is dropped (``None``)
    with a warning.
    """
    try:
        return validate_chunk(value)
    except InvalidChunk as exc:
        if isinstance(value, BaseChunk):
            _logger.warning("Malformed chunk converted to error: %s", exc)
            return ErrorChunk(message=f"malformed chunk: {exc}")
        _logger.warning("Dropping non-chunk value: %r", value)
        return None


def chunk_to_dict(chunk: BaseChunk) -> dict[str, Any]:
    """Plain-dict view of a chunk (``type`` plus its fields)."""
    data: dict[str, Any] = {"type": chunk.type.value}
    for f in dataclasses.fields(chunk):
        data[f.name] = _plain(getattr(chunk, f.name))
    return data


def _plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _plain(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value
