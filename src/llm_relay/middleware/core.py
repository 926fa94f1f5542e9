"""The default interceptors every completion request passes through.

Order, outermost first::

    final_result_consumer -> error_handler -> cancellation
        -> transform_params -> stream_adapter -> text_chunk -> think_chunk
        -> (tool extraction, tool recursion; see ``middleware.tools``)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from llm_relay.chunks import (
    BaseChunk,
    ErrorChunk,
    ImageComplete,
    ResponseComplete,
    TextComplete,
    TextDelta,
    TextStart,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStart,
    coerce_chunk,
)
from llm_relay.errors import (
    ErrorKind,
    RequestCancelled,
    RequestTimeout,
    classify_error,
    describe_error,
)
from llm_relay.middleware.base import (
    ChunkCallback,
    CompletionsRequest,
    MiddlewareContext,
    NextFn,
    emit,
)
from llm_relay.types import AccumulatedResult, CompletionsResult

_logger = logging.getLogger(__name__)


async def _send(callback: ChunkCallback | None, chunk: BaseChunk) -> None:
    if callback is not None:
        await callback(chunk)


def _status_of(exc: BaseException) -> int | None:
    """HTTP status carried by *exc*, if any."""
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


# ---------------------------------------------------------------------------
# Outer layer: result, errors, cancellation
# ---------------------------------------------------------------------------

@dataclass
class FinalResultConsumer:
    """Outermost layer: folds usage and images into the accumulated result,
    isolates the caller's chunk callback and returns a
    :class:`CompletionsResult`.

    Exceptions raised by the caller's callback are logged and never abort
    the request.
    """

    name = "final_result_consumer"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        caller = request.on_chunk
        acc = ctx.accumulated

        async def on_chunk(chunk: BaseChunk) -> None:
            if isinstance(chunk, ResponseComplete):
                acc.usage.add(chunk.usage)
            elif isinstance(chunk, ImageComplete) and chunk.image is not None:
                acc.images.append(chunk.image)
            if caller is None:
                return
            try:
                await caller(chunk)
            except Exception:
                _logger.exception("Chunk callback failed on %s", chunk.type.value)

        result = await next_fn(ctx, request.with_callback(on_chunk))
        ctx.completed = True
        return CompletionsResult.from_accumulated(result)


@dataclass
class ErrorHandlerMiddleware:
    """Classify failures, report them as an :class:`ErrorChunk` and record
    the first one on the accumulated result.

    Re-raises unless ``request.suppress_errors`` is set.  Cancellation is
    not a failure: it ends the request quietly with whatever was produced.
    """

    name = "error_handler"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        try:
            return await next_fn(ctx, request)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.CANCELLED:
                _logger.info("Request %s cancelled: %s", ctx.message_id or "-", exc)
                ctx.aborted = True
                return ctx.accumulated

            _logger.warning(
                "Request %s failed (%s): %s", ctx.message_id or "-", kind.value, exc,
            )
            ctx.accumulated.record_error(exc)
            await emit(request, ErrorChunk(
                message=describe_error(kind, exc), kind=kind, status=_status_of(exc),
            ))
            if request.suppress_errors:
                return ctx.accumulated
            raise


@dataclass
class CancellationMiddleware:
    """Race the rest of the chain against ``ctx.cancel_token``.

    An already-cancelled token returns the accumulated result untouched
    without calling downstream, so no network request is made.  A token
    that fires mid-request stops the stream and returns what was
    accumulated so far; if it fired because of the request timeout,
    :class:`RequestTimeout` is raised instead.
    """

    name = "cancellation"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        token = ctx.cancel_token
        if token.cancelled:
            _logger.info(
                "Request %s already cancelled (%s), not dispatching",
                ctx.message_id or "-", token.reason,
            )
            ctx.aborted = True
            return ctx.accumulated

        try:
            return await token.run(next_fn(ctx, request))
        except RequestCancelled as exc:
            ctx.aborted = True
            if token.timed_out:
                raise RequestTimeout(token.reason) from exc
            _logger.debug("Request %s stopped: %s", ctx.message_id or "-", exc)
            return ctx.accumulated


# ---------------------------------------------------------------------------
# Request preparation
# ---------------------------------------------------------------------------

@dataclass
class TransformParamsMiddleware:
    """Build the provider payload once; tool rounds extend it in place."""

    name = "transform_params"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        if ctx.payload is None:
            ctx.payload = ctx.provider.build_payload(request, ctx.tool_mode)
            _logger.debug(
                "Built %s payload for %s (tool_mode=%s, tools=%d)",
                ctx.provider.api_type, request.model, ctx.tool_mode, len(request.tools),
            )
        return await next_fn(ctx, request)


@dataclass
class StreamAdapterMiddleware:
    """Prepare the terminal dispatch for the provider stream.

    Installs :func:`~llm_relay.chunks.coerce_chunk` as ``ctx.chunk_gate``,
    which the dispatch applies to every adapter chunk before emitting it,
    so malformed chunks become error chunks and non-chunks are dropped
    before any interceptor sees them.  Also records whether the provider
    streams cumulative deltas, for the accumulators further in.
    """

    name = "stream_adapter"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        ctx.cumulative_deltas = ctx.provider.adapter_cls.cumulative
        ctx.chunk_gate = coerce_chunk
        return await next_fn(ctx, request)


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

class _BlockAccumulator:
    """Shared logic for text and thinking accumulation.

    Keeps ``start``/``complete`` balanced for the caller: a delta or
    complete without a preceding start gets one synthesized, and a block
    still open when the response completes, or when the chain stops early,
    is closed with the text received so far.  Cumulative
    deltas replace the block's text instead of extending it.
    """

    name = ""
    attr = ""
    start_cls: type[BaseChunk]
    delta_cls: type[BaseChunk]
    complete_cls: type[BaseChunk]

    def _complete(self, text: str, last: BaseChunk | None) -> BaseChunk:
        return self.complete_cls(text=text)

    def _set_text(self, ctx: MiddlewareContext, base: int, previous: str, text: str) -> None:
        current = getattr(ctx.accumulated, self.attr)
        setattr(ctx.accumulated, self.attr, current[:base] + text)

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        downstream = request.on_chunk
        is_open = False
        base = 0
        block = ""
        last: BaseChunk | None = None

        def open_block() -> None:
            nonlocal is_open, base, block
            is_open = True
            base = len(getattr(ctx.accumulated, self.attr))
            block = ""

        async def on_chunk(chunk: BaseChunk) -> None:
            nonlocal is_open, block, last
            if isinstance(chunk, self.start_cls):
                if is_open:
                    # A second start while open restarts the block
                    _logger.debug("%s: start while block open", self.name)
                open_block()
            elif isinstance(chunk, self.delta_cls):
                if not is_open:
                    open_block()
                    await _send(downstream, self.start_cls())
                text = chunk.text if ctx.cumulative_deltas else block + chunk.text
                self._set_text(ctx, base, block, text)
                block = text
                last = chunk
            elif isinstance(chunk, self.complete_cls):
                if not is_open:
                    open_block()
                    await _send(downstream, self.start_cls())
                self._set_text(ctx, base, block, chunk.text)
                block = chunk.text
                is_open = False
            elif isinstance(chunk, ResponseComplete) and is_open:
                is_open = False
                await _send(downstream, self._complete(block, last))
            await _send(downstream, chunk)

        try:
            return await next_fn(ctx, request.with_callback(on_chunk))
        finally:
            # The chain can end mid-block on cancellation or failure
            if is_open:
                is_open = False
                await _send(downstream, self._complete(block, last))


@dataclass
class TextChunkMiddleware(_BlockAccumulator):
    """Accumulate visible text into ``accumulated.text`` and ``ctx.round.text``."""

    name = "text_chunk"
    attr = "text"
    start_cls = TextStart
    delta_cls = TextDelta
    complete_cls = TextComplete

    def _set_text(self, ctx: MiddlewareContext, base: int, previous: str, text: str) -> None:
        super()._set_text(ctx, base, previous, text)
        current = ctx.round.text
        if previous and current.endswith(previous):
            current = current[:-len(previous)]
        ctx.round.text = current + text


@dataclass
class ThinkChunkMiddleware(_BlockAccumulator):
    """Accumulate reasoning into ``accumulated.thinking``."""

    name = "think_chunk"
    attr = "thinking"
    start_cls = ThinkingStart
    delta_cls = ThinkingDelta
    complete_cls = ThinkingComplete

    def _complete(self, text: str, last: BaseChunk | None) -> BaseChunk:
        millsec = getattr(last, "thinking_millsec", None)
        return ThinkingComplete(text=text, thinking_millsec=millsec)
