"""Tests for the chunk protocol."""

from __future__ import annotations

import dataclasses

import pytest

from llm_relay.chunks import (
    CHUNK_CLASSES,
    PROTOCOL_VERSION,
    ChunkType,
    ErrorChunk,
    ResponseComplete,
    TextDelta,
    ThinkingComplete,
    ToolPending,
    WebSearchComplete,
    chunk_to_dict,
    coerce_chunk,
    snapshot_tools,
    validate_chunk,
)
from llm_relay.errors import ErrorKind, InvalidChunk
from llm_relay.types import (
    ToolCallRecord,
    ToolCallStatus,
    Usage,
    WebSearchItem,
    WebSearchResults,
)


class TestChunkClasses:
    def test_every_kind_has_a_class(self):
        assert set(CHUNK_CLASSES) == set(ChunkType)
        for kind, cls in CHUNK_CLASSES.items():
            assert cls.type is kind

    def test_type_values(self):
        assert TextDelta.type.value == "text.delta"
        assert ToolPending.type.value == "mcp_tool_pending"
        assert ResponseComplete.type.value == "llm_response_complete"
        assert ErrorChunk.type.value == "error"

    def test_chunks_are_frozen(self):
        chunk = TextDelta(text="hi")
        with pytest.raises(dataclasses.FrozenInstanceError):
            chunk.text = "changed"  # type: ignore[misc]

    def test_protocol_version(self):
        assert PROTOCOL_VERSION >= 1


class TestValidation:
    def test_valid_chunk_passes(self):
        chunk = ResponseComplete(usage=Usage.of(1, 2))
        assert validate_chunk(chunk) is chunk

    def test_non_chunk_rejected(self):
        with pytest.raises(InvalidChunk):
            validate_chunk({"type": "text.delta", "text": "hi"})

    def test_bad_text_field(self):
        with pytest.raises(InvalidChunk):
            validate_chunk(TextDelta(text=42))  # type: ignore[arg-type]

    def test_bad_thinking_millsec(self):
        with pytest.raises(InvalidChunk):
            validate_chunk(ThinkingComplete(text="x", thinking_millsec="slow"))  # type: ignore[arg-type]

    def test_tool_chunk_needs_records(self):
        with pytest.raises(InvalidChunk):
            validate_chunk(ToolPending(tools=({"name": "x"},)))  # type: ignore[arg-type]

    def test_tool_chunk_needs_name(self):
        record = ToolCallRecord(id="1", name="")
        with pytest.raises(InvalidChunk):
            validate_chunk(ToolPending(tools=(record,)))

    def test_error_chunk_kind(self):
        with pytest.raises(InvalidChunk):
            validate_chunk(ErrorChunk(message="x", kind="boom"))  # type: ignore[arg-type]


class TestCoerce:
    def test_legal_chunk_unchanged(self):
        chunk = TextDelta(text="ok")
        assert coerce_chunk(chunk) is chunk

    def test_malformed_chunk_becomes_error(self):
        result = coerce_chunk(TextDelta(text=None))  # type: ignore[arg-type]
        assert isinstance(result, ErrorChunk)
        assert "malformed" in result.message
        assert result.kind is ErrorKind.UNKNOWN

    def test_non_chunk_dropped(self):
        assert coerce_chunk("not a chunk") is None
        assert coerce_chunk(None) is None


class TestHelpers:
    def test_snapshot_tools_is_independent(self):
        record = ToolCallRecord(id="c1", name="search", arguments={"q": "a"})
        snap = snapshot_tools([record])
        record.arguments["q"] = "b"
        record.status = ToolCallStatus.DONE

        assert isinstance(snap, tuple)
        assert snap[0].arguments == {"q": "a"}
        assert snap[0].status is ToolCallStatus.PENDING

    def test_chunk_to_dict(self):
        chunk = WebSearchComplete(results=WebSearchResults(
            source="openai", items=(WebSearchItem(url="https://a.example", title="A"),),
        ))
        data = chunk_to_dict(chunk)

        assert data["type"] == "llm_websearch_complete"
        assert data["results"]["source"] == "openai"
        assert data["results"]["items"][0]["url"] == "https://a.example"

    def test_chunk_to_dict_enum_values(self):
        data = chunk_to_dict(ErrorChunk(message="x", kind=ErrorKind.TIMEOUT, status=504))
        assert data == {"type": "error", "message": "x", "kind": "timeout", "status": 504}
