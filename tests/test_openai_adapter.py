"""Tests for the OpenAI-style stream adapter."""

from __future__ import annotations

from llm_relay.chunks import (
    BaseChunk,
    ChunkType,
    ErrorChunk,
    ImageComplete,
    ResponseComplete,
    TextComplete,
    TextDelta,
    ThinkingDelta,
    ToolPending,
    WebSearchComplete,
)
from llm_relay.errors import ErrorKind
from llm_relay.llm.adapters import OpenAIChunkAdapter, ToolCallBuffer, parse_tool_arguments_json


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _run(frames: list[dict]) -> list[BaseChunk]:
    adapter = OpenAIChunkAdapter()
    out: list[BaseChunk] = []
    for frame in frames:
        out += adapter.safe_feed(frame)
    out += adapter.finish()
    return out


def _types(chunks: list[BaseChunk]) -> list[str]:
    return [c.type.value for c in chunks]


def _delta(**delta) -> dict:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": None}]}


def _finish(reason: str = "stop", usage: dict | None = None) -> dict:
    frame: dict = {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}
    if usage is not None:
        frame["usage"] = usage
    return frame


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestTextStream:
    def test_usage_scenario(self):
        chunks = _run([
            _delta(content="Hi"),
            _finish(usage={"prompt_tokens": 5, "completion_tokens": 2}),
        ])

        assert _types(chunks) == [
            "llm_response_created",
            "text.start",
            "text.delta",
            "text.complete",
            "llm_response_complete",
        ]
        assert chunks[2] == TextDelta(text="Hi")
        complete = chunks[-1]
        assert isinstance(complete, ResponseComplete)
        assert complete.usage is not None
        assert (complete.usage.prompt_tokens, complete.usage.completion_tokens,
                complete.usage.total_tokens) == (5, 2, 7)

    def test_trailing_usage_frame(self):
        chunks = _run([
            _delta(role="assistant", content=""),
            _delta(content="Hel"),
            _delta(content="lo"),
            _finish(),
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}},
        ])

        deltas = [c.text for c in chunks if isinstance(c, TextDelta)]
        assert deltas == ["Hel", "lo"]
        completes = [c for c in chunks if isinstance(c, ResponseComplete)]
        assert len(completes) == 1
        assert completes[0].usage.total_tokens == 7
        text_complete = next(c for c in chunks if isinstance(c, TextComplete))
        assert text_complete.text == "Hello"

    def test_balanced_without_finish_reason(self):
        chunks = _run([_delta(content="cut off")])
        assert _types(chunks).count("text.start") == 1
        assert _types(chunks).count("text.complete") == 1
        assert chunks[-1].type is ChunkType.LLM_RESPONSE_COMPLETE

    def test_finish_is_idempotent(self):
        adapter = OpenAIChunkAdapter()
        adapter.feed(_delta(content="x"))
        first = adapter.finish()
        assert adapter.finish() == []
        assert first[-1].type is ChunkType.LLM_RESPONSE_COMPLETE


class TestReasoning:
    def test_reasoning_content_before_text(self):
        chunks = _run([
            _delta(reasoning_content="let me think"),
            _delta(content="answer"),
            _finish(),
        ])
        assert _types(chunks)[:6] == [
            "llm_response_created",
            "thinking.start",
            "thinking.delta",
            "thinking.complete",
            "text.start",
            "text.delta",
        ]
        thinking = next(c for c in chunks if isinstance(c, ThinkingDelta))
        assert thinking.text == "let me think"
        assert isinstance(thinking.thinking_millsec, int)

    def test_alternate_reasoning_fields(self):
        for delta in ({"reasoning": "r"}, {"thinking": {"content": "r"}}):
            chunks = _run([_delta(**delta), _finish()])
            assert "thinking.delta" in _types(chunks)


class TestToolCalls:
    def test_fragments_assembled(self):
        chunks = _run([
            _delta(tool_calls=[{"index": 0, "id": "call_1", "type": "function",
                                "function": {"name": "get_weather", "arguments": ""}}]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": '{"city": '}}]),
            _delta(tool_calls=[{"index": 0, "function": {"arguments": '"Paris"}'}}]),
            _delta(tool_calls=[{"index": 1, "id": "call_2",
                                "function": {"name": "get_time", "arguments": "{}"}}]),
            _finish("tool_calls"),
        ])

        pending = [c for c in chunks if isinstance(c, ToolPending)]
        assert len(pending) == 1
        records = pending[0].tools
        assert [r.name for r in records] == ["get_weather", "get_time"]
        assert records[0].id == "call_1"
        assert records[0].arguments == {"city": "Paris"}
        assert records[1].arguments == {}

    def test_non_streaming_response(self):
        adapter = OpenAIChunkAdapter()
        chunks = adapter.adapt_response({
            "choices": [{
                "message": {
                    "role": "assistant",
                    "content": "Checking.",
                    "tool_calls": [{"id": "c1", "function": {"name": "search",
                                                             "arguments": '{"q": "x"}'}}],
                },
                "finish_reason": "tool_calls",
            }],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        })

        assert _types(chunks) == [
            "llm_response_created",
            "text.start",
            "text.delta",
            "text.complete",
            "mcp_tool_pending",
            "llm_response_complete",
        ]
        assert chunks[4].tools[0].arguments == {"q": "x"}
        assert chunks[-1].usage.total_tokens == 2


class TestExtras:
    def test_error_frame(self):
        chunks = OpenAIChunkAdapter().feed({"error": {"message": "slow down", "code": 429}})
        error = chunks[-1]
        assert isinstance(error, ErrorChunk)
        assert error.kind is ErrorKind.RATE_LIMITED
        assert error.status == 429

    def test_citations(self):
        chunks = _run([
            {"citations": ["https://a.example", "https://a.example", "https://b.example"],
             **_delta(content="see sources")},
            _finish(),
        ])
        assert _types(chunks).count("llm_websearch_in_progress") == 1
        result = next(c for c in chunks if isinstance(c, WebSearchComplete))
        assert [i.url for i in result.results.items] == ["https://a.example", "https://b.example"]
        assert result.results.source == "openai"

    def test_images(self):
        chunks = _run([
            _delta(images=[{"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}}]),
            _finish(),
        ])
        image = next(c for c in chunks if isinstance(c, ImageComplete))
        assert image.image.images == ("data:image/png;base64,AAA",)

    def test_malformed_frame_skipped(self):
        adapter = OpenAIChunkAdapter()
        assert adapter.safe_feed({"choices": [None]}) == []
        assert adapter.safe_feed({"choices": "garbage"}) == []
        # The stream keeps working afterwards
        chunks = adapter.safe_feed(_delta(content="ok"))
        assert TextDelta(text="ok") in chunks


class TestToolCallBuffer:
    def test_missing_name_dropped(self):
        buf = ToolCallBuffer()
        buf.feed(0, arguments='{"a": 1}')
        assert buf.flush() == []

    def test_generated_ids_unique_across_buffers(self):
        ids = []
        for _ in range(2):
            buf = ToolCallBuffer(id_prefix="toolu")
            buf.feed(None, name="x")
            ids.append(buf.flush()[0].id)
        assert all(i.startswith("toolu_") for i in ids)
        assert ids[0] != ids[1]

    def test_parse_arguments(self):
        assert parse_tool_arguments_json("") == {}
        assert parse_tool_arguments_json('{"a": 1}') == {"a": 1}
        assert parse_tool_arguments_json("[1]") == {"raw": "[1]"}
        assert parse_tool_arguments_json("{bad") == {"raw": "{bad"}
