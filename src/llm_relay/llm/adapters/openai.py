"""Adapter for OpenAI-style chat completion streams.

Also covers the OpenAI-compatible dialects spoken by OpenRouter, DeepSeek,
vLLM, LM Studio and Ollama's ``/v1`` endpoint: reasoning may arrive as
``reasoning_content``, ``reasoning`` or ``thinking.content``; OpenRouter
adds ``images``; Perplexity-style backends add ``citations``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from llm_relay.chunks import (
    BaseChunk,
    ErrorChunk,
    ImageComplete,
    ImageCreated,
)
from llm_relay.errors import ErrorKind
from llm_relay.types import ImagePayload, Usage

from .base import ChunkAdapter, ToolCallBuffer

_logger = logging.getLogger(__name__)


def openai_usage(raw: dict[str, Any] | None) -> Usage | None:
    if not raw:
        return None
    return Usage.of(
        raw.get("prompt_tokens"),
        raw.get("completion_tokens"),
        raw.get("total_tokens"),
    )


def _reasoning_of(delta: dict[str, Any]) -> str:
    for key in ("reasoning_content", "reasoning"):
        value = delta.get(key)
        if isinstance(value, str) and value:
            return value
    thinking = delta.get("thinking")
    if isinstance(thinking, dict):
        return thinking.get("content") or ""
    return ""


def _image_urls(images: Any) -> list[str]:
    urls = []
    for image in images or []:
        if not isinstance(image, dict):
            continue
        url = (image.get("image_url") or {}).get("url") or image.get("url")
        if url:
            urls.append(url)
    return urls


class OpenAIChunkAdapter(ChunkAdapter):
    provider = "openai"

    def __init__(self) -> None:
        super().__init__()
        self._tools = ToolCallBuffer()
        self._finished = False

    def feed(self, frame: dict[str, Any]) -> list[BaseChunk]:
        out = self._ensure_created()

        error = frame.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            out.append(ErrorChunk(
                message=message or "provider error",
                kind=ErrorKind.RATE_LIMITED if code == 429 else ErrorKind.UNKNOWN,
                status=code if isinstance(code, int) else None,
            ))
            return out

        usage = openai_usage(frame.get("usage"))
        if usage is not None:
            self._usage = usage

        out += self._collect_citations(frame)

        choices = frame.get("choices") or []
        if not choices:
            # Trailing usage-only frame sent after finish_reason
            if self._finished and usage is not None:
                out += self._complete()
            return out

        choice = choices[0]
        delta = choice.get("delta") or {}

        out += self._thinking_delta(_reasoning_of(delta))

        content = delta.get("content")
        if isinstance(content, str):
            out += self._text_delta(content)

        urls = _image_urls(delta.get("images"))
        if urls:
            out += self._close_blocks()
            out.append(ImageCreated())
            out.append(ImageComplete(image=ImagePayload(type="url", images=tuple(urls))))

        for annotation in delta.get("annotations") or []:
            cite = annotation.get("url_citation") if isinstance(annotation, dict) else None
            if cite:
                out += self._add_citation(cite.get("url"), cite.get("title"), cite.get("content"))

        for tc in delta.get("tool_calls") or []:
            func = tc.get("function") or {}
            self._tools.feed(
                tc.get("index"),
                call_id=tc.get("id"),
                name=func.get("name"),
                arguments=func.get("arguments"),
            )

        if choice.get("finish_reason"):
            out += self._finish_choice()
            if usage is not None:
                out += self._complete()
        return out

    def finish(self) -> list[BaseChunk]:
        out = []
        if not self._finished:
            out += self._finish_choice()
        return out + super().finish()

    def adapt_response(self, body: dict[str, Any]) -> list[BaseChunk]:
        if body.get("error"):
            return self.feed(body)
        out = self._ensure_created()
        self._usage = openai_usage(body.get("usage"))
        out += self._collect_citations(body)

        choices = body.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}

        out += self._thinking_delta(_reasoning_of(message))
        content = message.get("content")
        if isinstance(content, str):
            out += self._text_delta(content)

        urls = _image_urls(message.get("images"))
        if urls:
            out += self._close_blocks()
            out.append(ImageCreated())
            out.append(ImageComplete(image=ImagePayload(type="url", images=tuple(urls))))

        for i, tc in enumerate(message.get("tool_calls") or []):
            func = tc.get("function") or {}
            arguments = func.get("arguments")
            if isinstance(arguments, dict):
                arguments = None if not arguments else json.dumps(arguments)
            self._tools.feed(i, call_id=tc.get("id"), name=func.get("name"), arguments=arguments)

        out += self._finish_choice()
        return out + super().finish()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish_choice(self) -> list[BaseChunk]:
        self._finished = True
        out = self._close_blocks()
        out += self._tool_pending(self._tools.flush())
        out += self._report_search()
        return out

    def _collect_citations(self, frame: dict[str, Any]) -> list[BaseChunk]:
        out: list[BaseChunk] = []
        for url in frame.get("citations") or []:
            if isinstance(url, str):
                out += self._add_citation(url)
        for key in ("search_results", "web_search"):
            for item in frame.get(key) or []:
                if isinstance(item, dict):
                    out += self._add_citation(
                        item.get("url"), item.get("title"),
                        item.get("snippet") or item.get("content"),
                    )
        return out
