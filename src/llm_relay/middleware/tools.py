"""Tool-call extraction and the tool-call recursion loop.

Two mutually exclusive extraction modes, chosen per request:

* **native** - the provider reports structured tool calls, which the
  adapters emit as ``ToolPending`` chunks; :class:`NativeToolCallMiddleware`
  collects them.
* **prompt** - tools are described in the system prompt and the model
  answers with tags; :class:`ToolUseExtractionMiddleware` strips the tags
  from the visible text and turns them into ``ToolPending`` chunks.

:class:`ToolRecursionMiddleware` then executes the collected calls,
writes the results back into the conversation and dispatches again until
the model stops calling tools or the depth limit is reached.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Iterable

from llm_relay.chunks import (
    BaseChunk,
    ResponseComplete,
    TextComplete,
    TextDelta,
    TextStart,
    ToolComplete,
    ToolInProgress,
    ToolPending,
    snapshot_tools,
)
from llm_relay.errors import RequestCancelled
from llm_relay.llm.tag_scanner import ScanEvent, ToolTagScanner
from llm_relay.middleware.base import (
    CompletionsRequest,
    DeltaTracker,
    MiddlewareContext,
    NextFn,
    RoundState,
    emit,
)
from llm_relay.types import (
    AccumulatedResult,
    EventType,
    ToolCallRecord,
    ToolCallStatus,
    ToolResponse,
)

_logger = logging.getLogger(__name__)


def _track(ctx: MiddlewareContext, record: ToolCallRecord) -> ToolCallRecord:
    """Start tracking a call observed in the current round."""
    tracked = dataclasses.replace(record, arguments=dict(record.arguments))
    ctx.round.tool_calls.append(tracked)
    ctx.tool_records[tracked.id] = tracked
    return tracked


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@dataclass
class NativeToolCallMiddleware:
    """Collect provider-reported tool calls into the current round.

    Calls naming a tool the request does not offer are logged and dropped
    here, so every ``ToolPending`` the caller sees names an offered tool.
    """

    name = "native_tool_call"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        if ctx.tool_mode != "native":
            return await next_fn(ctx, request)
        downstream = request.on_chunk

        async def on_chunk(chunk: BaseChunk) -> None:
            if isinstance(chunk, ToolPending):
                known = []
                for record in chunk.tools:
                    if ctx.provider.resolve_tool(record.name, request.tools) is None:
                        _logger.warning("Model called unknown tool %r, ignoring", record.name)
                        continue
                    known.append(_track(ctx, record))
                if not known:
                    return
                chunk = ToolPending(tools=snapshot_tools(known))
            if downstream is not None:
                await downstream(chunk)

        return await next_fn(ctx, request.with_callback(on_chunk))


@dataclass
class ToolUseExtractionMiddleware:
    """Extract prompt-injected tool calls from streamed text.

    Text deltas run through a :class:`ToolTagScanner`.  Prose is forwarded
    with the tags removed, recognized calls become ``ToolPending`` chunks,
    and calls naming unknown tools are dropped.  The raw text, tags
    included, is kept on ``ctx.round.raw_text`` so the assistant turn can
    be replayed verbatim.
    """

    name = "tool_use_extraction"

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        if ctx.tool_mode != "prompt" or not request.tools:
            return await next_fn(ctx, request)

        downstream = request.on_chunk
        names = [t.name for t in request.tools]
        tracker = DeltaTracker(ctx.cumulative_deltas)
        scanner: ToolTagScanner | None = None
        raw = ""

        async def send(chunk: BaseChunk) -> None:
            if downstream is not None:
                await downstream(chunk)

        async def drain(events: Iterable[ScanEvent]) -> None:
            for kind, data in events:
                if kind == "text" and data:
                    await send(TextDelta(text=tracker.outgoing(data)))
                elif kind == "tool":
                    tracked = _track(ctx, data)
                    _logger.debug("Extracted tagged call %s(%s)", tracked.name, tracked.id)
                    await send(ToolPending(tools=snapshot_tools([tracked])))

        def begin() -> ToolTagScanner:
            nonlocal raw
            tracker.cumulative = ctx.cumulative_deltas
            tracker.reset()
            raw = ""
            return ToolTagScanner(names)

        def take(text: str) -> str:
            """Record incoming text and return the new fragment."""
            nonlocal raw
            fragment = tracker.increment(text)
            raw += fragment
            ctx.round.raw_text += fragment
            return fragment

        async def close() -> None:
            nonlocal scanner
            if scanner is None:
                return
            await drain(scanner.finish())
            scanner = None
            await send(TextComplete(text=tracker.sent))

        async def on_chunk(chunk: BaseChunk) -> None:
            nonlocal scanner, raw
            if isinstance(chunk, TextStart):
                scanner = begin()
                await send(chunk)
            elif isinstance(chunk, TextDelta):
                if scanner is None:
                    scanner = begin()
                    await send(TextStart())
                await drain(scanner.feed(take(chunk.text)))
            elif isinstance(chunk, TextComplete):
                if scanner is None:
                    scanner = begin()
                    await send(TextStart())
                # The complete text is authoritative; feed whatever the
                # deltas did not carry.
                if chunk.text.startswith(raw) and len(chunk.text) > len(raw):
                    tail = chunk.text[len(raw):]
                    raw += tail
                    ctx.round.raw_text += tail
                    await drain(scanner.feed(tail))
                await close()
            elif isinstance(chunk, ResponseComplete):
                await close()
                await send(chunk)
            else:
                await send(chunk)

        return await next_fn(ctx, request.with_callback(on_chunk))


# ---------------------------------------------------------------------------
# Recursion
# ---------------------------------------------------------------------------

@dataclass
class ToolRecursionMiddleware:
    """Execute tool calls and re-dispatch until the model is done.

    Each round:

    1. reset ``ctx.round`` and dispatch;
    2. resolve the round's calls against the request's tools (unknown
       names are logged and skipped);
    3. run them through ``ctx.invoker``, concurrently unless
       ``concurrent`` is False, with each failure isolated into an error
       response;
    4. have the provider append the assistant turn and the results to
       ``ctx.payload``;
    5. increment ``ctx.depth``; stop with a warning once it reaches
       ``ctx.max_depth``.

    The number of dispatches is therefore bounded by ``ctx.max_depth``.
    """

    name = "tool_recursion"
    concurrent: bool = True

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        if not request.tools or ctx.invoker is None:
            return await next_fn(ctx, request)

        while True:
            ctx.round = RoundState()
            await ctx.publish(EventType.ROUND_STARTED, depth=ctx.depth)
            result = await next_fn(ctx, request)

            calls = self._resolve(ctx, request)
            if not calls:
                return result

            await self._execute(ctx, request, calls)
            self._rehydrate(ctx, request, calls)

            ctx.depth += 1
            ctx.is_recursive_call = True
            if ctx.depth >= ctx.max_depth:
                _logger.warning(
                    "Tool recursion depth limit reached (%d), returning current result",
                    ctx.max_depth,
                )
                await ctx.publish(EventType.DEPTH_LIMIT, depth=ctx.depth)
                return result

    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(ctx: MiddlewareContext, request: CompletionsRequest) -> list[ToolCallRecord]:
        resolved = []
        for record in ctx.round.tool_calls:
            tool = ctx.provider.resolve_tool(record.name, request.tools)
            if tool is None:
                _logger.warning("Model called unknown tool %r, ignoring", record.name)
                ctx.tool_records.pop(record.id, None)
                continue
            record.tool = tool
            record.name = tool.name
            resolved.append(record)
        return resolved

    async def _execute(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        calls: list[ToolCallRecord],
    ) -> None:
        for record in calls:
            record.status = ToolCallStatus.IN_PROGRESS
        await emit(request, ToolInProgress(tools=snapshot_tools(calls)))

        if self.concurrent:
            await asyncio.gather(*(self._invoke(ctx, r) for r in calls))
        else:
            for record in calls:
                await self._invoke(ctx, record)

        ctx.accumulated.tool_responses.extend(calls)
        await emit(request, ToolComplete(tools=snapshot_tools(calls)))

    @staticmethod
    async def _invoke(ctx: MiddlewareContext, record: ToolCallRecord) -> None:
        await ctx.publish(
            EventType.TOOL_EXECUTING,
            tool=record.name, call_id=record.id, arguments=record.arguments,
        )
        try:
            response = await ctx.cancel_token.run(
                ctx.invoker(record.tool, record.arguments, ctx.cancel_token),
            )
        except RequestCancelled:
            raise
        except Exception as exc:
            _logger.warning("Tool %s failed: %s", record.name, exc)
            response = ToolResponse.from_text(f"Error: {type(exc).__name__}: {exc}", is_error=True)

        record.response = response
        if response.is_error:
            record.status = ToolCallStatus.ERROR
            await ctx.publish(
                EventType.TOOL_ERROR, tool=record.name, call_id=record.id, error=response.text,
            )
        else:
            record.status = ToolCallStatus.DONE
            await ctx.publish(
                EventType.TOOL_EXECUTED, tool=record.name, call_id=record.id,
            )

    @staticmethod
    def _rehydrate(
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        calls: list[ToolCallRecord],
    ) -> None:
        if ctx.payload is None:
            ctx.payload = ctx.provider.build_payload(request, ctx.tool_mode)
        mode = ctx.tool_mode or "native"
        text = ctx.round.raw_text if mode == "prompt" else ctx.round.text
        ctx.provider.append_tool_round(ctx.payload, text, calls, mode)
        for record in calls:
            ctx.tool_records.pop(record.id, None)

