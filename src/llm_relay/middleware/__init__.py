"""Middleware composition engine and the interceptors built on it."""

from llm_relay.middleware.base import (
    CompletionsRequest,
    DeltaTracker,
    Middleware,
    MiddlewareContext,
    MiddlewarePipeline,
    NextFn,
    RoundState,
    compose,
    emit,
)
from llm_relay.middleware.builder import DEFAULT_ORDER, MiddlewareBuilder, default_middlewares
from llm_relay.middleware.core import (
    CancellationMiddleware,
    ErrorHandlerMiddleware,
    FinalResultConsumer,
    StreamAdapterMiddleware,
    TextChunkMiddleware,
    ThinkChunkMiddleware,
    TransformParamsMiddleware,
)
from llm_relay.middleware.dispatch import provider_dispatch
from llm_relay.middleware.features import (
    ImageGenerationMiddleware,
    LoggingMiddleware,
    RetryMiddleware,
    ThinkingTagExtractionMiddleware,
    WebSearchMiddleware,
)
from llm_relay.middleware.tools import (
    NativeToolCallMiddleware,
    ToolRecursionMiddleware,
    ToolUseExtractionMiddleware,
)

__all__ = [
    "DEFAULT_ORDER",
    "CancellationMiddleware",
    "CompletionsRequest",
    "DeltaTracker",
    "ErrorHandlerMiddleware",
    "FinalResultConsumer",
    "ImageGenerationMiddleware",
    "LoggingMiddleware",
    "Middleware",
    "MiddlewareBuilder",
    "MiddlewareContext",
    "MiddlewarePipeline",
    "NativeToolCallMiddleware",
    "NextFn",
    "RetryMiddleware",
    "RoundState",
    "StreamAdapterMiddleware",
    "TextChunkMiddleware",
    "ThinkChunkMiddleware",
    "ThinkingTagExtractionMiddleware",
    "ToolRecursionMiddleware",
    "ToolUseExtractionMiddleware",
    "TransformParamsMiddleware",
    "WebSearchMiddleware",
    "compose",
    "default_middlewares",
    "emit",
    "provider_dispatch",
]
