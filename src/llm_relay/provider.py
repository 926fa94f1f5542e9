"""Orchestration entry point.

:class:`AiProvider` ties a provider client, a tool invoker and the
middleware chain together behind one call::

    provider = AiProvider(config.active_profile, config=config, registry=registry)
    result = await provider.completions(CompletionsRequest(
        messages=[{"role": "user", "content": "What's the weather in Paris?"}],
        on_chunk=render,
    ))
    print(result.get_text())
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from typing import Iterable

import httpx

from llm_relay.cancellation import CancellationRegistry, CancelToken
from llm_relay.config import ProfileSpec, RelayConfig
from llm_relay.errors import classify_error
from llm_relay.events.bus import EventBus
from llm_relay.llm.providers.base import ProviderClient
from llm_relay.llm.providers.factory import create_provider
from llm_relay.middleware.base import CompletionsRequest, MiddlewareContext
from llm_relay.middleware.builder import MiddlewareBuilder
from llm_relay.middleware.dispatch import provider_dispatch
from llm_relay.middleware.features import (
    ImageGenerationMiddleware,
    LoggingMiddleware,
    RetryMiddleware,
    ThinkingTagExtractionMiddleware,
    WebSearchMiddleware,
)
from llm_relay.tools.base import ToolInvoker
from llm_relay.tools.registry import ToolRegistry
from llm_relay.types import CompletionsResult, EventType, ToolDescriptor

_logger = logging.getLogger(__name__)


class AiProvider:
    """Run completion requests against one provider profile.

    Parameters
    ----------
    profile:
        The provider profile to use, or the name of one in *config*.
        Defaults to the config's active profile.
    config:
        Relay policy (depth limit, prompt-mode threshold, timeout, retry).
    tools:
        Tools offered to the model when a request does not name its own.
        Defaults to the registry's tools.
    invoker:
        Executes tool calls.  Defaults to *registry*.
    registry:
        A :class:`ToolRegistry` providing both tools and invoker.
    event_bus:
        Receives ``relay.*`` and ``tool.*`` lifecycle events.
    cancellations:
        Shared request-id registry; one is created when omitted.
    client:
        A prebuilt provider client (otherwise created from *profile*).
    http_client:
        Passed to the provider client when *client* is not given.
    """

    def __init__(
        self,
        profile: ProfileSpec | str | None = None,
        config: RelayConfig | None = None,
        tools: Iterable[ToolDescriptor] | None = None,
        invoker: ToolInvoker | None = None,
        registry: ToolRegistry | None = None,
        event_bus: EventBus | None = None,
        cancellations: CancellationRegistry | None = None,
        client: ProviderClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or RelayConfig()
        if isinstance(profile, str):
            if profile not in self.config.profiles:
                raise KeyError(f"Unknown profile {profile!r}")
            profile = self.config.profiles[profile]
        self.profile = profile or self.config.active_profile

        relay = self.config.relay
        self.client = client or create_provider(
            self.profile,
            timeout=relay.request_timeout or 300.0,
            http_client=http_client,
            max_tokens=relay.max_tokens,
        )
        self.registry = registry
        self.invoker = invoker or registry
        if tools is not None:
            self.tools = list(tools)
        else:
            self.tools = registry.descriptors() if registry is not None else []
        self.event_bus = event_bus
        self.cancellations = cancellations or CancellationRegistry()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def resolve_tool_mode(self, request: CompletionsRequest) -> str | None:
        """``native`` or ``prompt`` for a request with tools, else None.

        An explicit ``request.tool_mode`` wins.  Otherwise prompt mode is
        used when the model cannot do native function calling or the tool
        count reaches ``prompt_tool_threshold``.
        """
        if not request.tools:
            return None
        if request.tool_mode in ("native", "prompt"):
            return request.tool_mode
        if request.tool_mode is not None:
            _logger.warning("Unknown tool_mode %r, choosing automatically", request.tool_mode)
        if not self.client.supports_function_calling(request.model):
            return "prompt"
        if len(request.tools) >= self.config.relay.prompt_tool_threshold:
            return "prompt"
        return "native"

    def build_chain(self, request: CompletionsRequest) -> MiddlewareBuilder:
        """Default chain plus the interceptors this request needs."""
        relay = self.config.relay
        builder = MiddlewareBuilder().with_defaults(concurrent_tools=relay.concurrent_tools)
        if relay.log_requests:
            builder.insert_after("final_result_consumer", LoggingMiddleware())
        if self.client.supports_image_generation:
            builder.insert_after("transform_params", ImageGenerationMiddleware())
        if request.enable_web_search:
            builder.insert_after("think_chunk", WebSearchMiddleware())
        if request.metadata.get("thinking_tags"):
            builder.insert_before("tool_recursion", ThinkingTagExtractionMiddleware())
        if self.config.retry.max_retries > 0:
            builder.add(RetryMiddleware.from_spec(self.config.retry))
        return builder

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def completions(self, request: CompletionsRequest) -> CompletionsResult:
        """Run *request* through the middleware chain.

        Chunks are delivered to ``request.on_chunk`` as they are produced.
        Raises on failure unless ``request.suppress_errors`` is set;
        cancellation returns whatever was accumulated.
        """
        relay = self.config.relay
        request = dataclasses.replace(
            request,
            model=request.model or self.profile.default_model,
            tools=list(request.tools) if request.tools else list(self.tools),
            message_id=request.message_id or uuid.uuid4().hex[:12],
        )
        tool_mode = self.resolve_tool_mode(request)
        timeout = request.timeout if request.timeout is not None else relay.request_timeout
        token = (request.cancel_token or CancelToken()).with_timeout(timeout)
        self.cancellations.register(request.message_id, token)

        ctx = MiddlewareContext(
            provider=self.client,
            cancel_token=token,
            tool_mode=tool_mode,
            max_depth=max(1, request.max_tool_depth or relay.max_tool_depth),
            invoker=self.invoker,
            event_bus=self.event_bus,
            message_id=request.message_id,
        )
        pipeline = self.build_chain(request).pipeline(provider_dispatch)

        await ctx.publish(
            EventType.REQUEST_STARTED,
            model=request.model, tool_mode=tool_mode, tools=len(request.tools),
        )
        try:
            result = await pipeline.execute(ctx, request)
        except Exception as exc:
            await ctx.publish(
                EventType.REQUEST_ERROR, error=str(exc), kind=classify_error(exc).value,
            )
            raise
        finally:
            self.cancellations.release(request.message_id, token)
            token.dispose()

        if not isinstance(result, CompletionsResult):
            result = CompletionsResult.from_accumulated(result)
        if result.error is not None:
            await ctx.publish(
                EventType.REQUEST_ERROR,
                error=str(result.error), kind=classify_error(result.error).value,
            )
        elif ctx.aborted:
            await ctx.publish(EventType.REQUEST_CANCELLED, reason=token.reason)
        else:
            await ctx.publish(
                EventType.REQUEST_DONE,
                usage=result.usage.as_dict(),
                tool_calls=len(result.tool_responses),
                depth=ctx.depth,
            )
        return result

    def abort(self, message_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel the in-flight request *message_id*.  False if unknown."""
        cancelled = self.cancellations.cancel(message_id, reason)
        if cancelled:
            _logger.info("Aborted request %s", message_id)
        return cancelled

    async def close(self) -> None:
        self.cancellations.cancel_all()
        await self.client.close()

    async def __aenter__(self) -> AiProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
