"""Middleware composition engine.

A completion request flows through an ordered chain of middleware wrapped
around one terminal *dispatch* function (the provider call).  Every
middleware and the dispatch share the same signature::

    async def __call__(ctx: MiddlewareContext, request: CompletionsRequest)
        -> AccumulatedResult

Middleware registered first is outermost: it sees the call first and the
result last.  Each middleware decides whether, when and how many times to
call ``next_fn``, which is how retry, short-circuiting and the tool-call
loop are expressed without special-cased control flow.

Chunks travel the other way.  A middleware that wants to observe or
rewrite chunks passes a copy of the request downstream with a wrapped
``on_chunk``; the dispatch emits into the innermost wrapper, so chunks
reach inner middleware first and the caller's callback last.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from llm_relay.cancellation import CancelToken
from llm_relay.chunks import BaseChunk
from llm_relay.types import AccumulatedResult, ToolCallRecord, ToolDescriptor

if TYPE_CHECKING:
    from llm_relay.events.bus import EventBus
    from llm_relay.llm.adapters.base import ChunkAdapter
    from llm_relay.llm.providers.base import ProviderClient
    from llm_relay.tools.base import ToolInvoker

_logger = logging.getLogger(__name__)

ChunkCallback = Callable[[BaseChunk], Awaitable[None]]


# ---------------------------------------------------------------------------
# Request type
# ---------------------------------------------------------------------------

@dataclass
class CompletionsRequest:
    """Everything needed for one top-level completion.

    ``messages`` use the neutral ``{"role", "content"}`` shape with roles
    ``system`` / ``user`` / ``assistant``; provider clients convert them.
    ``tool_mode`` is ``"native"``, ``"prompt"`` or None to let the
    orchestrator decide.
    """

    messages: list[dict[str, Any]]
    model: str = ""
    system_prompt: str = ""
    tools: list[ToolDescriptor] = field(default_factory=list)
    tool_mode: str | None = None
    stream: bool = True
    enable_web_search: bool = False
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    cancel_token: CancelToken | None = None
    timeout: float | None = None
    message_id: str = ""
    on_chunk: ChunkCallback | None = None
    suppress_errors: bool = False
    max_tool_depth: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_callback(self, on_chunk: ChunkCallback) -> CompletionsRequest:
        """Copy of this request whose chunks go to *on_chunk*."""
        return dataclasses.replace(self, on_chunk=on_chunk)


async def emit(request: CompletionsRequest, chunk: BaseChunk) -> None:
    """Send *chunk* to the request's callback, if any."""
    if request.on_chunk is not None:
        await request.on_chunk(chunk)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass
class RoundState:
    """What one model invocation produced, reset before every round."""

    text: str = ""
    raw_text: str = ""
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


@dataclass
class MiddlewareContext:
    """Per-request state threaded through the chain.

    Lives for exactly one top-level call, including every tool round; the
    same ``accumulated`` instance collects text, usage and tool responses
    across rounds.
    """

    provider: ProviderClient
    accumulated: AccumulatedResult = field(default_factory=AccumulatedResult)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    payload: dict[str, Any] | None = None
    tool_mode: str | None = None
    depth: int = 0
    is_recursive_call: bool = False
    max_depth: int = 10
    invoker: ToolInvoker | None = None
    event_bus: EventBus | None = None
    message_id: str = ""
    cumulative_deltas: bool = False
    chunk_gate: Callable[[Any], BaseChunk | None] | None = None
    tool_records: dict[str, ToolCallRecord] = field(default_factory=dict)
    round: RoundState = field(default_factory=RoundState)
    aborted: bool = False
    completed: bool = False

    def new_adapter(self) -> ChunkAdapter:
        return self.provider.create_adapter()

    async def publish(self, event_type: Any, **data: Any) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, message_id=self.message_id, **data)


# ---------------------------------------------------------------------------
# Middleware protocol
# ---------------------------------------------------------------------------

# Type alias for the "rest of the chain"
NextFn = Callable[[MiddlewareContext, CompletionsRequest], Awaitable[AccumulatedResult]]
DispatchFn = NextFn


class Middleware(Protocol):
    """Protocol that all middleware must implement."""

    name: str

    async def process(
        self,
        ctx: MiddlewareContext,
        request: CompletionsRequest,
        next_fn: NextFn,
    ) -> AccumulatedResult:
        """Optionally adjust the request, call *next_fn* (any number of
        times), and return the accumulated result."""
        ...


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

def compose(middlewares: list[Middleware], dispatch: DispatchFn) -> DispatchFn:
    """Fold *middlewares* around *dispatch*; the first one is outermost."""
    chain = dispatch
    for mw in reversed(middlewares):
        chain = _wrap(mw, chain)
    return chain


def _wrap(middleware: Middleware, next_fn: NextFn) -> NextFn:
    """Create a closure that calls ``middleware.process(ctx, req, next_fn)``."""

    async def _handler(ctx: MiddlewareContext, request: CompletionsRequest) -> AccumulatedResult:
        return await middleware.process(ctx, request, next_fn)

    _handler.__qualname__ = f"{getattr(middleware, 'name', type(middleware).__name__)}.process"
    return _handler


class MiddlewarePipeline:
    """Ordered chain of middleware around a dispatch function.

    Usage::

        pipeline = MiddlewarePipeline(provider_dispatch)
        pipeline.use(ErrorHandlerMiddleware()).use(CancellationMiddleware())
        result = await pipeline.execute(ctx, request)

    Middleware is executed in the order registered (first added = outermost).
    """

    def __init__(self, dispatch: DispatchFn) -> None:
        self._dispatch = dispatch
        self._middlewares: list[Middleware] = []

    def use(self, middleware: Middleware) -> MiddlewarePipeline:
        """Register a middleware.  Returns ``self`` for chaining."""
        self._middlewares.append(middleware)
        return self

    @property
    def middlewares(self) -> list[Middleware]:
        return list(self._middlewares)

    async def execute(self, ctx: MiddlewareContext, request: CompletionsRequest) -> AccumulatedResult:
        """Run the full chain and return the accumulated result."""
        chain = compose(self._middlewares, self._dispatch)
        return await chain(ctx, request)


# ---------------------------------------------------------------------------
# Delta bookkeeping
# ---------------------------------------------------------------------------

class DeltaTracker:
    """Converts between incremental and cumulative text deltas.

    Middleware that rewrites text works on increments internally; when the
    stream is cumulative it turns incoming deltas into increments with
    :meth:`increment` and re-accumulates outgoing text with :meth:`outgoing`.
    """

    def __init__(self, cumulative: bool) -> None:
        self.cumulative = cumulative
        self._seen = ""
        self._sent = ""

    def reset(self) -> None:
        self._seen = ""
        self._sent = ""

    def increment(self, text: str) -> str:
        if not self.cumulative:
            return text
        if text.startswith(self._seen):
            fragment = text[len(self._seen):]
        else:
            _logger.debug("Cumulative delta diverged from previous value")
            fragment = text
        self._seen = text
        return fragment

    def outgoing(self, fragment: str) -> str:
        self._sent += fragment
        return self._sent if self.cumulative else fragment

    @property
    def sent(self) -> str:
        return self._sent
