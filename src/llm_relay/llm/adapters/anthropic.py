"""Adapter for the Anthropic Messages API event stream.

Event mapping::

    message_start         -> ResponseCreated (input token usage recorded)
    content_block_start   -> TextStart / ThinkingStart / tool_use buffering
    content_block_delta   -> TextDelta / ThinkingDelta / partial_json append
    content_block_stop    -> TextComplete / ThinkingComplete / ToolPending
    message_delta         -> output token usage, stop_reason
    message_stop          -> ResponseComplete
    error                 -> ErrorChunk
"""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.chunks import BaseChunk, ErrorChunk
from llm_relay.errors import ErrorKind
from llm_relay.types import Usage

from .base import ChunkAdapter, ToolCallBuffer

_logger = logging.getLogger(__name__)

_ERROR_KINDS = {
    "rate_limit_error": ErrorKind.RATE_LIMITED,
    "authentication_error": ErrorKind.AUTH_FAILED,
    "permission_error": ErrorKind.AUTH_FAILED,
    "timeout_error": ErrorKind.TIMEOUT,
}


class AnthropicChunkAdapter(ChunkAdapter):
    provider = "anthropic"

    def __init__(self) -> None:
        super().__init__()
        self._tools = ToolCallBuffer(id_prefix="toolu")
        self._block_types: dict[int, str] = {}
        self._input_tokens = 0
        self._output_tokens = 0
        self.stop_reason = ""
        # Whole-object tool inputs from non-streaming bodies
        self._whole_inputs: dict[int, dict[str, Any]] = {}

    def feed(self, frame: dict[str, Any]) -> list[BaseChunk]:
        kind = frame.get("type")
        handler = getattr(self, f"_on_{kind}", None) if isinstance(kind, str) else None
        if handler is None:
            if kind not in ("ping", None):
                _logger.debug("Ignoring Anthropic event %s", kind)
            return []
        return handler(frame)

    def adapt_response(self, body: dict[str, Any]) -> list[BaseChunk]:
        if body.get("type") == "error":
            return self._on_error(body)
        out = self._on_message_start({"message": body})
        for index, block in enumerate(body.get("content") or []):
            out += self._on_content_block_start({"index": index, "content_block": block})
            if block.get("type") == "tool_use":
                self._whole_inputs[index] = block.get("input") or {}
            out += self._on_content_block_stop({"index": index})
        out += self._on_message_delta({
            "delta": {"stop_reason": body.get("stop_reason")},
            "usage": body.get("usage") or {},
        })
        return out + self.finish()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_message_start(self, frame: dict[str, Any]) -> list[BaseChunk]:
        usage = (frame.get("message") or {}).get("usage") or {}
        self._input_tokens = int(usage.get("input_tokens") or 0)
        self._output_tokens = int(usage.get("output_tokens") or 0)
        self._refresh_usage()
        return self._ensure_created()

    def _on_content_block_start(self, frame: dict[str, Any]) -> list[BaseChunk]:
        out = self._ensure_created()
        index = int(frame.get("index", 0))
        block = frame.get("content_block") or {}
        block_type = block.get("type", "")
        self._block_types[index] = block_type

        if block_type == "text":
            out += self._open_text()
            out += self._text_delta(block.get("text") or "")
            for citation in block.get("citations") or []:
                out += self._add_citation(citation.get("url"), citation.get("title"))
        elif block_type == "thinking":
            out += self._open_thinking()
            out += self._thinking_delta(block.get("thinking") or "")
        elif block_type == "tool_use":
            out += self._close_blocks()
            self._tools.feed(index, call_id=block.get("id"), name=block.get("name"))
        elif block_type == "server_tool_use":
            if block.get("name") == "web_search":
                out += self._announce_search()
        elif block_type == "web_search_tool_result":
            content = block.get("content")
            if isinstance(content, list):
                for item in content:
                    if item.get("type") == "web_search_result":
                        out += self._add_citation(item.get("url"), item.get("title"))
        return out

    def _on_content_block_delta(self, frame: dict[str, Any]) -> list[BaseChunk]:
        index = int(frame.get("index", 0))
        delta = frame.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            return self._text_delta(delta.get("text") or "")
        if delta_type == "thinking_delta":
            return self._thinking_delta(delta.get("thinking") or "")
        if delta_type == "input_json_delta":
            self._tools.feed(index, arguments=delta.get("partial_json") or "")
            return []
        if delta_type == "citations_delta":
            citation = delta.get("citation") or {}
            return self._add_citation(citation.get("url"), citation.get("title"), citation.get("cited_text"))
        return []

    def _on_content_block_stop(self, frame: dict[str, Any]) -> list[BaseChunk]:
        index = int(frame.get("index", 0))
        block_type = self._block_types.pop(index, "")
        if block_type == "text":
            return self._close_text()
        if block_type == "thinking":
            return self._close_thinking()
        if block_type == "tool_use":
            record = self._tools.pop(index)
            if record is None:
                return []
            whole_input = self._whole_inputs.pop(index, None)
            if whole_input:
                record.arguments = dict(whole_input)
            return self._tool_pending([record])
        return []

    def _on_message_delta(self, frame: dict[str, Any]) -> list[BaseChunk]:
        usage = frame.get("usage") or {}
        if usage.get("input_tokens"):
            self._input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens") is not None:
            self._output_tokens = int(usage.get("output_tokens") or 0)
        self._refresh_usage()
        stop = (frame.get("delta") or {}).get("stop_reason")
        if stop:
            self.stop_reason = stop
        return []

    def _on_message_stop(self, frame: dict[str, Any]) -> list[BaseChunk]:
        out = self._close_blocks()
        out += self._tool_pending(self._tools.flush())
        return out + self.finish()

    def _on_error(self, frame: dict[str, Any]) -> list[BaseChunk]:
        error = frame.get("error") or {}
        return [ErrorChunk(
            message=error.get("message") or "Anthropic stream error",
            kind=_ERROR_KINDS.get(error.get("type", ""), ErrorKind.UNKNOWN),
        )]

    def _refresh_usage(self) -> None:
        self._usage = Usage.of(self._input_tokens, self._output_tokens)
