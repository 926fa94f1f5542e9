"""Fluent construction of middleware chains.

Usage::

    chain = (
        MiddlewareBuilder()
        .with_defaults()
        .insert_after("final_result_consumer", LoggingMiddleware())
        .add(RetryMiddleware())
        .build()
    )

Entries are addressed by their ``name`` attribute.  Referring to a name
that is not in the chain raises ``KeyError``.
"""

from __future__ import annotations

import logging

from llm_relay.middleware.base import DispatchFn, Middleware, MiddlewarePipeline
from llm_relay.middleware.core import (
    CancellationMiddleware,
    ErrorHandlerMiddleware,
    FinalResultConsumer,
    StreamAdapterMiddleware,
    TextChunkMiddleware,
    ThinkChunkMiddleware,
    TransformParamsMiddleware,
)
from llm_relay.middleware.tools import (
    NativeToolCallMiddleware,
    ToolRecursionMiddleware,
    ToolUseExtractionMiddleware,
)

_logger = logging.getLogger(__name__)


def default_middlewares(concurrent_tools: bool = True) -> list[Middleware]:
    """Fresh instances of the default chain, outermost first."""
    return [
        FinalResultConsumer(),
        ErrorHandlerMiddleware(),
        CancellationMiddleware(),
        TransformParamsMiddleware(),
        StreamAdapterMiddleware(),
        TextChunkMiddleware(),
        ThinkChunkMiddleware(),
        NativeToolCallMiddleware(),
        ToolUseExtractionMiddleware(),
        ToolRecursionMiddleware(concurrent=concurrent_tools),
    ]


DEFAULT_ORDER = tuple(mw.name for mw in default_middlewares())


class MiddlewareBuilder:
    """Ordered, name-addressable list of middleware."""

    def __init__(self, middlewares: list[Middleware] | None = None) -> None:
        self._entries: list[Middleware] = list(middlewares or [])

    # ------------------------------------------------------------------
    # Mutation (each returns self)
    # ------------------------------------------------------------------

    def with_defaults(self, concurrent_tools: bool = True) -> MiddlewareBuilder:
        """Replace the current entries with the default chain."""
        self._entries = default_middlewares(concurrent_tools)
        return self

    def add(self, middleware: Middleware) -> MiddlewareBuilder:
        """Append *middleware* as the innermost entry."""
        self._check_unique(middleware)
        self._entries.append(middleware)
        return self

    def insert_before(self, name: str, middleware: Middleware) -> MiddlewareBuilder:
        self._check_unique(middleware)
        self._entries.insert(self._index(name), middleware)
        return self

    def insert_after(self, name: str, middleware: Middleware) -> MiddlewareBuilder:
        self._check_unique(middleware)
        self._entries.insert(self._index(name) + 1, middleware)
        return self

    def remove(self, name: str) -> MiddlewareBuilder:
        del self._entries[self._index(name)]
        return self

    def replace(self, name: str, middleware: Middleware) -> MiddlewareBuilder:
        self._entries[self._index(name)] = middleware
        return self

    def only(self, *names: str) -> MiddlewareBuilder:
        """Keep just the named entries, in their current order."""
        for name in names:
            self._index(name)
        keep = set(names)
        self._entries = [mw for mw in self._entries if mw.name in keep]
        return self

    def exclude(self, *names: str) -> MiddlewareBuilder:
        for name in names:
            self._index(name)
        drop = set(names)
        self._entries = [mw for mw in self._entries if mw.name not in drop]
        return self

    def clear(self) -> MiddlewareBuilder:
        self._entries = []
        return self

    # ------------------------------------------------------------------
    # Inspection / output
    # ------------------------------------------------------------------

    def build(self) -> list[Middleware]:
        return list(self._entries)

    def pipeline(self, dispatch: DispatchFn) -> MiddlewarePipeline:
        """A :class:`MiddlewarePipeline` around *dispatch* with these entries."""
        pipeline = MiddlewarePipeline(dispatch)
        for mw in self._entries:
            pipeline.use(mw)
        return pipeline

    def names(self) -> list[str]:
        return [mw.name for mw in self._entries]

    def has(self, name: str) -> bool:
        return any(mw.name == name for mw in self._entries)

    def clone(self) -> MiddlewareBuilder:
        """Independent builder holding the same middleware instances."""
        return MiddlewareBuilder(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------

    def _index(self, name: str) -> int:
        for i, mw in enumerate(self._entries):
            if mw.name == name:
                return i
        raise KeyError(f"No middleware named {name!r} (have: {', '.join(self.names())})")

    def _check_unique(self, middleware: Middleware) -> None:
        if self.has(middleware.name):
            _logger.warning("Middleware %r added twice", middleware.name)
