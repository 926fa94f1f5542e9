"""Adapter for Google Gemini ``streamGenerateContent`` frames.

Gemini consumers replace displayed content wholesale on every chunk, so
text and thinking deltas from this adapter carry the *cumulative* string
so far ("Hel", then "Hello") instead of the increment ("Hel", then "lo").
Downstream accumulation checks :attr:`ChunkAdapter.cumulative` to tell
the two apart.
"""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.chunks import (
    BaseChunk,
    ErrorChunk,
    ImageComplete,
    ImageCreated,
)
from llm_relay.types import ImagePayload, ToolCallRecord, Usage, new_call_id

from .base import ChunkAdapter

_logger = logging.getLogger(__name__)


def gemini_usage(raw: dict[str, Any] | None) -> Usage | None:
    if not raw:
        return None
    return Usage.of(
        raw.get("promptTokenCount"),
        raw.get("candidatesTokenCount"),
        raw.get("totalTokenCount"),
    )


class GeminiChunkAdapter(ChunkAdapter):
    provider = "gemini"
    cumulative = True

    def feed(self, frame: dict[str, Any]) -> list[BaseChunk]:
        out = self._ensure_created()

        if frame.get("error"):
            error = frame["error"]
            out.append(ErrorChunk(
                message=error.get("message") or "Gemini error",
                status=error.get("code") if isinstance(error.get("code"), int) else None,
            ))
            return out

        usage = gemini_usage(frame.get("usageMetadata"))
        if usage is not None:
            # Gemini reports running totals, so the latest frame wins
            self._usage = usage

        feedback = frame.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            out.append(ErrorChunk(message=f"Prompt blocked: {feedback['blockReason']}"))

        candidates = frame.get("candidates") or []
        if not candidates:
            return out
        candidate = candidates[0]

        calls: list[ToolCallRecord] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought") and isinstance(part.get("text"), str):
                out += self._thinking_delta(part["text"])
            elif isinstance(part.get("text"), str):
                out += self._text_delta(part["text"])
            elif part.get("functionCall"):
                calls.append(self._call_record(part["functionCall"]))
            elif part.get("inlineData"):
                out += self._inline_image(part["inlineData"])

        grounding = candidate.get("groundingMetadata") or {}
        for chunk in grounding.get("groundingChunks") or []:
            web = chunk.get("web") or {}
            out += self._add_citation(web.get("uri"), web.get("title"))

        if calls:
            out += self._close_blocks()
            out += self._tool_pending(calls)

        if candidate.get("finishReason"):
            out += self.finish()
        return out

    def adapt_response(self, body: dict[str, Any]) -> list[BaseChunk]:
        return self.feed(body) + self.finish()

    def _call_record(self, call: dict[str, Any]) -> ToolCallRecord:
        args = call.get("args")
        return ToolCallRecord(
            id=call.get("id") or new_call_id("gemini_call"),
            name=call.get("name", ""),
            arguments=dict(args) if isinstance(args, dict) else {},
        )

    def _inline_image(self, data: dict[str, Any]) -> list[BaseChunk]:
        mime = data.get("mimeType", "image/png")
        if not mime.startswith("image/") or not data.get("data"):
            return []
        uri = f"data:{mime};base64,{data['data']}"
        out = self._close_blocks()
        out.append(ImageCreated())
        out.append(ImageComplete(image=ImagePayload(type="base64", images=(uri,))))
        return out
