"""Optional interceptors, inserted into the chain by feature."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

from llm_relay.chunks import (
    BaseChunk,
    ImageComplete,
    ImageCreated,
    ResponseComplete,
    ResponseCreated,
    TextComplete,
    TextDelta,
    TextStart,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStart,
    WebSearchComplete,
)
from llm_relay.config import RetrySpec
from llm_relay.errors import is_retryable
from llm_relay.llm.tag_scanner import ScanEvent, ThinkTagScanner
from llm_relay.middleware.base import (
    CompletionsRequest,
    DeltaTracker,
    MiddlewareContext,
    NextFn,
    emit,
)
from llm_relay.types import AccumulatedResult

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@dataclass
class RetryMiddleware:
    """Retry a failed dispatch with exponential backoff.

    Only retryable failures (network, timeout, 429, 5xx) are retried, and
    only when the failed attempt has not forwarded any chunk yet, so the
    caller never sees a response twice.  Cancellation is never retried and
    interrupts the backoff sleep.

    Parameters
    ----------
    max_retries:
        Retries after the first attempt.
    initial_delay, multiplier, max_delay:
        Delay before retry *n* is ``initial_delay * multiplier**n``, capped
        at ``max_delay``.
    jitter:
        Random spread applied to each delay, as a fraction (0.1 = +/-10%).
    """

    name = "retry"
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_spec(cls, spec: RetrySpec) -> RetryMiddleware:
        return cls(
            max_retries=spec.max_retries,
            initial_delay=spec.initial_delay,
            max_delay=spec.max_delay,
            multiplier=spec.multiplier,
            jitter=spec.jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based)."""
        delay = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        downstream = request.on_chunk
        attempt = 0
        while True:
            forwarded = False

            async def on_chunk(chunk: BaseChunk) -> None:
                nonlocal forwarded
                forwarded = True
                if downstream is not None:
                    await downstream(chunk)

            try:
                return await next_fn(ctx, request.with_callback(on_chunk))
            except Exception as exc:
                if forwarded or attempt >= self.max_retries or not is_retryable(exc):
                    raise
                delay = self.delay_for(attempt)
                attempt += 1
                _logger.warning(
                    "Provider call failed (%s), retry %d/%d in %.1fs",
                    exc, attempt, self.max_retries, delay,
                )
                await ctx.cancel_token.run(asyncio.sleep(delay))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

@dataclass
class LoggingMiddleware:
    """Log request start, outcome, duration, text length and token usage."""

    name = "logging"
    level: int = logging.INFO

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        start = time.monotonic()
        _logger.log(
            self.level,
            "Request %s -> %s/%s (messages=%d, tools=%d, mode=%s)",
            ctx.message_id or "-", ctx.provider.api_type, request.model,
            len(request.messages), len(request.tools), ctx.tool_mode,
        )
        try:
            result = await next_fn(ctx, request)
        except Exception as exc:
            _logger.log(
                self.level,
                "Request %s failed after %.0fms: %s",
                ctx.message_id or "-", (time.monotonic() - start) * 1000, exc,
            )
            raise
        _logger.log(
            self.level,
            "Request %s done in %.0fms: %d chars, %d tool calls, %d tokens%s",
            ctx.message_id or "-", (time.monotonic() - start) * 1000,
            len(result.text), len(result.tool_responses), result.usage.total_tokens,
            " (aborted)" if ctx.aborted else "",
        )
        return result


# ---------------------------------------------------------------------------
# Thinking tags
# ---------------------------------------------------------------------------

@dataclass
class ThinkingTagExtractionMiddleware:
    """Turn ``<think>``-style blocks inside text into thinking chunks.

    For models that reason inline instead of through a dedicated field.
    Tags recognized: ``<think>``, ``<thinking>``, ``<reasoning>``,
    ``<thought>``.
    """

    name = "thinking_tag_extraction"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        downstream = request.on_chunk
        text_out = DeltaTracker(ctx.cumulative_deltas)
        text_in = DeltaTracker(ctx.cumulative_deltas)
        think_out = DeltaTracker(ctx.cumulative_deltas)
        scanner: ThinkTagScanner | None = None
        started_at = 0.0

        async def send(chunk: BaseChunk) -> None:
            if downstream is not None:
                await downstream(chunk)

        def elapsed() -> int:
            return int((time.monotonic() - started_at) * 1000)

        async def drain(events: list[ScanEvent]) -> None:
            nonlocal started_at
            for kind, data in events:
                if kind == "text" and data:
                    await send(TextDelta(text=text_out.outgoing(data)))
                elif kind == "thinking_start":
                    think_out.reset()
                    started_at = time.monotonic()
                    await send(ThinkingStart())
                elif kind == "thinking" and data:
                    await send(ThinkingDelta(text=think_out.outgoing(data), thinking_millsec=elapsed()))
                elif kind == "thinking_end":
                    await send(ThinkingComplete(text=think_out.sent, thinking_millsec=elapsed()))

        def begin() -> ThinkTagScanner:
            for tracker in (text_out, text_in, think_out):
                tracker.cumulative = ctx.cumulative_deltas
                tracker.reset()
            return ThinkTagScanner()

        async def close() -> None:
            nonlocal scanner
            if scanner is None:
                return
            await drain(list(scanner.finish()))
            scanner = None
            await send(TextComplete(text=text_out.sent))

        async def on_chunk(chunk: BaseChunk) -> None:
            nonlocal scanner
            if isinstance(chunk, TextStart):
                scanner = begin()
                await send(chunk)
            elif isinstance(chunk, TextDelta):
                if scanner is None:
                    scanner = begin()
                    await send(TextStart())
                await drain(list(scanner.feed(text_in.increment(chunk.text))))
            elif isinstance(chunk, TextComplete):
                if scanner is None:
                    scanner = begin()
                    await send(TextStart())
                    await drain(list(scanner.feed(chunk.text)))
                await close()
            elif isinstance(chunk, ResponseComplete):
                await close()
                await send(chunk)
            else:
                await send(chunk)

        return await next_fn(ctx, request.with_callback(on_chunk))


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------

@dataclass
class WebSearchMiddleware:
    """Collect web-search citations onto ``accumulated.web_search``."""

    name = "web_search"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        downstream = request.on_chunk

        async def on_chunk(chunk: BaseChunk) -> None:
            if isinstance(chunk, WebSearchComplete) and chunk.results is not None:
                ctx.accumulated.web_search.append(chunk.results)
                _logger.debug(
                    "Collected %d %s citations", len(chunk.results.items), chunk.results.source,
                )
            if downstream is not None:
                await downstream(chunk)

        return await next_fn(ctx, request.with_callback(on_chunk))


# ---------------------------------------------------------------------------
# Image generation
# ---------------------------------------------------------------------------

def _last_user_text(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                str(part.get("text", "")) for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
    return ""


@dataclass
class ImageGenerationMiddleware:
    """Short-circuit image-model requests to the image generation endpoint.

    Requests for other models pass through untouched.
    """

    name = "image_generation"
    options: dict[str, Any] | None = None

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        provider = ctx.provider
        if not (provider.supports_image_generation and provider.is_image_model(request.model)):
            return await next_fn(ctx, request)

        prompt = _last_user_text(request.messages)
        _logger.info("Generating images with %s", request.model)
        await emit(request, ResponseCreated())
        await emit(request, ImageCreated())
        image = await ctx.cancel_token.run(
            provider.generate_images(request.model, prompt, **(self.options or {})),
        )
        await emit(request, ImageComplete(image=image))
        await emit(request, ResponseComplete())
        return ctx.accumulated
