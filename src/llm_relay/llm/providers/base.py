"""Provider client base class.

A provider client owns everything that differs between wire formats on
the *request* side: endpoint URL, auth headers, payload shape, tool schema
conversion and how tool results are written back into the conversation.
Responses go through the provider's :class:`ChunkAdapter`.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx

from llm_relay.cancellation import CancelToken
from llm_relay.config import ProfileSpec
from llm_relay.errors import ProviderHTTPError
from llm_relay.llm.adapters.base import ChunkAdapter
from llm_relay.llm.sse import iter_sse_json
from llm_relay.tools.prompt import build_tool_system_prompt, format_tool_result
from llm_relay.types import ImagePayload, ToolCallRecord, ToolDescriptor

if TYPE_CHECKING:
    from llm_relay.middleware.base import CompletionsRequest

_logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 60.0

# Models known not to support native function calling
_NO_FUNCTION_CALLING = (
    "text-davinci", "davinci", "curie", "babbage", "ada",
    "embedding", "whisper", "tts", "dall-e", "o1-preview", "o1-mini",
)

_INVALID_TOOL_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_MAX_TOOL_NAME = 64


def sanitize_tool_name(name: str) -> str:
    """Make *name* acceptable to every provider's function-name rules.

    Only ``[a-zA-Z0-9_-]``, at most 64 characters, starting with a letter
    or underscore.
    """
    cleaned = name
    if cleaned[:1].isdigit():
        cleaned = f"tool_{cleaned}"
    cleaned = _INVALID_TOOL_CHARS.sub("_", cleaned)
    if not cleaned or not (cleaned[0].isalpha() or cleaned[0] == "_"):
        cleaned = f"_{cleaned}"
    return cleaned[:_MAX_TOOL_NAME]


def split_api_keys(raw: str) -> list[str]:
    return [k.strip() for k in raw.split(",") if k.strip()]


class ProviderClient(ABC):
    """Base class for one provider family.

    Parameters
    ----------
    profile:
        Connection settings.  Several comma-separated API keys are used
        round-robin, one per HTTP request.
    timeout:
        Connect/write timeout in seconds.  Streams use a longer read timeout.
    http_client:
        Optional preconfigured ``httpx.AsyncClient`` (tests inject a
        ``MockTransport`` here).
    """

    api_type: str = ""
    adapter_cls: type[ChunkAdapter]
    default_base_url: str = ""
    supports_image_generation: bool = False

    def __init__(
        self,
        profile: ProfileSpec,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.profile = profile
        self.max_tokens = max_tokens
        self._keys = split_api_keys(profile.api_key)
        self._key_index = 0
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30, read=max(timeout, 300)),
        )

    # ------------------------------------------------------------------
    # Identity / capabilities
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return (self.profile.url or self.default_base_url).rstrip("/")

    def next_api_key(self) -> str:
        """Return the next key in rotation ("" when none is configured)."""
        if not self._keys:
            return ""
        key = self._keys[self._key_index % len(self._keys)]
        self._key_index += 1
        return key

    def supports_function_calling(self, model: str) -> bool:
        lower = model.lower()
        return not any(p in lower for p in _NO_FUNCTION_CALLING)

    def is_image_model(self, model: str) -> bool:
        return False

    def create_adapter(self) -> ChunkAdapter:
        return self.adapter_cls()

    @staticmethod
    def resolve_tool(name: str, tools: list[ToolDescriptor]) -> ToolDescriptor | None:
        """Find the tool a model referred to, by name, id or sanitized name."""
        for tool in tools:
            if name in (tool.name, tool.id):
                return tool
        for tool in tools:
            if sanitize_tool_name(tool.name) == name:
                return tool
        return None

    # ------------------------------------------------------------------
    # Request side (per family)
    # ------------------------------------------------------------------

    @abstractmethod
    def endpoint(self, model: str, stream: bool) -> str:
        """Absolute URL for a completion request."""

    @abstractmethod
    def headers(self, api_key: str) -> dict[str, str]:
        """Auth and content headers."""

    def query_params(self, api_key: str, stream: bool) -> dict[str, str]:
        return {}

    @abstractmethod
    def build_payload(self, request: CompletionsRequest, tool_mode: str | None) -> dict[str, Any]:
        """Translate a neutral request into this provider's JSON body."""

    @abstractmethod
    def convert_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        """Native tool definitions for this provider."""

    @abstractmethod
    def append_tool_round(
        self,
        payload: dict[str, Any],
        text: str,
        records: list[ToolCallRecord],
        tool_mode: str,
    ) -> None:
        """Append the assistant's tool-call turn and the tool results to
        the conversation held in *payload*."""

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request_kwargs(self, model: str, stream: bool) -> dict[str, Any]:
        key = self.next_api_key()
        headers = self.headers(key)
        headers.update(self.profile.extra_headers)
        kwargs: dict[str, Any] = {"headers": headers}
        params = self.query_params(key, stream)
        if params:
            kwargs["params"] = params
        return kwargs

    async def stream_frames(
        self,
        model: str,
        payload: dict[str, Any],
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """POST *payload* and yield each decoded SSE frame."""
        url = self.endpoint(model, stream=True)
        _logger.debug("POST %s (stream)", url)
        async with self._client.stream(
            "POST", url, json=payload, **self._request_kwargs(model, True),
        ) as resp:
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise ProviderHTTPError(resp.status_code, body, url)
            async for frame in iter_sse_json(resp, cancel_token):
                yield frame

    async def fetch_response(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body."""
        url = self.endpoint(model, stream=False)
        _logger.debug("POST %s", url)
        resp = await self._client.post(url, json=payload, **self._request_kwargs(model, False))
        if resp.status_code >= 400:
            raise ProviderHTTPError(resp.status_code, resp.text, url)
        return resp.json()

    async def generate_images(self, model: str, prompt: str, **options: Any) -> ImagePayload:
        raise NotImplementedError(f"{self.api_type} provider cannot generate images")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def split_system(messages: list[dict[str, Any]], system_prompt: str) -> tuple[str, list[dict[str, Any]]]:
        """Pull ``system`` messages out of *messages* and merge them into
        one system string, for families that take it as a separate field."""
        parts = [system_prompt] if system_prompt else []
        rest = []
        for m in messages:
            if m.get("role") == "system":
                if m.get("content"):
                    parts.append(str(m["content"]))
            else:
                rest.append(m)
        return "\n\n".join(parts), rest

    def max_tokens_for(self, request: CompletionsRequest) -> int:
        return request.max_tokens or self.max_tokens

    @staticmethod
    def system_text(request: CompletionsRequest, tool_mode: str | None) -> str:
        """The request's system prompt, with tool instructions in prompt mode."""
        if tool_mode == "prompt" and request.tools:
            return build_tool_system_prompt(request.system_prompt, request.tools)
        return request.system_prompt

    @staticmethod
    def result_text(record: ToolCallRecord) -> str:
        """Flatten a tool response into the string sent back to the model."""
        response = record.response
        if response is None:
            return ""
        if all(part.get("type") == "text" for part in response.content):
            return response.text
        return json.dumps(response.content, ensure_ascii=False)

    @staticmethod
    def prompt_results_text(records: list[ToolCallRecord]) -> str:
        """The user turn carrying ``<tool_use_result>`` blocks in prompt mode."""
        return "\n\n".join(
            format_tool_result(r.name, r.response) for r in records if r.response is not None
        )
