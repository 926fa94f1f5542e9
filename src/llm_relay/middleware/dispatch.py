"""Terminal dispatch: one provider call, streamed through its adapter."""

from __future__ import annotations

import logging
from contextlib import aclosing

from llm_relay.chunks import BaseChunk, ErrorChunk
from llm_relay.errors import ProviderStreamError, RequestCancelled
from llm_relay.middleware.base import CompletionsRequest, MiddlewareContext, emit
from llm_relay.types import AccumulatedResult

_logger = logging.getLogger(__name__)


async def provider_dispatch(ctx: MiddlewareContext, request: CompletionsRequest) -> AccumulatedResult:
    """Send ``ctx.payload`` to the provider and emit the resulting chunks.

    Streaming requests are read frame by frame and consumption stops as
    soon as the cancel token fires.  A provider-reported error inside the
    stream is raised as :class:`ProviderStreamError` so the error handler
    sees it like any transport failure.  Other chunks pass through
    ``ctx.chunk_gate``, when one is installed, before they are emitted.
    """
    token = ctx.cancel_token
    token.raise_if_cancelled()
    if ctx.payload is None:
        ctx.payload = ctx.provider.build_payload(request, ctx.tool_mode)

    adapter = ctx.new_adapter()
    if request.stream:
        frames = ctx.provider.stream_frames(request.model, ctx.payload, token)
        async with aclosing(frames):
            async for frame in frames:
                if token.cancelled:
                    break
                await _forward(ctx, request, adapter.safe_feed(frame))
    else:
        body = await token.run(ctx.provider.fetch_response(request.model, ctx.payload))
        await _forward(ctx, request, adapter.adapt_response(body))

    if token.cancelled:
        _logger.debug("Dispatch stopped by cancellation: %s", token.reason)
        raise RequestCancelled(token.reason)
    await _forward(ctx, request, adapter.finish())
    return ctx.accumulated


async def _forward(
    ctx: MiddlewareContext,
    request: CompletionsRequest,
    chunks: list[BaseChunk],
) -> None:
    gate = ctx.chunk_gate
    for chunk in chunks:
        if isinstance(chunk, ErrorChunk):
            raise ProviderStreamError(chunk.message, chunk.kind, chunk.status)
        if gate is not None:
            chunk = gate(chunk)
            if chunk is None:
                continue
        await emit(request, chunk)
