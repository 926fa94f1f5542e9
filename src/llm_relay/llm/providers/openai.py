"""OpenAI-compatible chat completions client.

Also serves OpenRouter, LM Studio, vLLM and any other endpoint speaking
the ``/v1/chat/completions`` dialect.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from llm_relay.errors import ProviderHTTPError
from llm_relay.llm.adapters.openai import OpenAIChunkAdapter
from llm_relay.llm.providers.base import ProviderClient, sanitize_tool_name
from llm_relay.types import ImagePayload, ToolCallRecord, ToolDescriptor

if TYPE_CHECKING:
    from llm_relay.middleware.base import CompletionsRequest

_logger = logging.getLogger(__name__)

_VERSIONED_PATH = re.compile(r"/v\d")

_IMAGE_MODEL_PATTERNS = (
    "dall-e", "gpt-image", "stable-diffusion", "midjourney", "imagen", "flux",
)


def is_image_model(model: str) -> bool:
    lower = model.lower()
    return any(p in lower for p in _IMAGE_MODEL_PATTERNS)


class OpenAIProvider(ProviderClient):
    api_type = "openai"
    adapter_cls = OpenAIChunkAdapter
    default_base_url = "https://api.openai.com/v1"
    supports_image_generation = True

    @property
    def base_url(self) -> str:
        base = super().base_url
        if not _VERSIONED_PATH.search(base):
            base = f"{base}/v1"
        return base

    def endpoint(self, model: str, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self, api_key: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def is_image_model(self, model: str) -> bool:
        return is_image_model(model)

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def build_payload(self, request: CompletionsRequest, tool_mode: str | None) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        system = self.system_text(request, tool_mode)
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend(dict(m) for m in request.messages)

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": self.max_tokens_for(request),
            "stream": request.stream,
        }
        if request.stream:
            payload["stream_options"] = {"include_usage": True}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if tool_mode == "native" and request.tools:
            payload["tools"] = self.convert_tools(request.tools)
        if request.enable_web_search:
            payload["web_search_options"] = {}
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    def convert_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": sanitize_tool_name(t.name),
                    "description": t.description,
                    "parameters": t.input_schema,
                },
            }
            for t in tools
        ]

    def append_tool_round(
        self,
        payload: dict[str, Any],
        text: str,
        records: list[ToolCallRecord],
        tool_mode: str,
    ) -> None:
        messages = payload.setdefault("messages", [])
        if tool_mode == "prompt":
            messages.append({"role": "assistant", "content": text})
            messages.append({"role": "user", "content": self.prompt_results_text(records)})
            return

        messages.append({
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": r.id,
                    "type": "function",
                    "function": {
                        "name": sanitize_tool_name(r.name),
                        "arguments": json.dumps(r.arguments, ensure_ascii=False),
                    },
                }
                for r in records
            ],
        })
        for r in records:
            messages.append({
                "role": "tool",
                "tool_call_id": r.id,
                "content": self.result_text(r),
            })

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def generate_images(self, model: str, prompt: str, **options: Any) -> ImagePayload:
        """Call ``/images/generations`` and return URLs or ``data:`` URIs."""
        url = f"{self.base_url}/images/generations"
        body: dict[str, Any] = {"model": model, "prompt": prompt, "n": 1}
        body.update(options)
        _logger.debug("POST %s (model=%s)", url, model)
        resp = await self._client.post(url, json=body, **self._request_kwargs(model, False))
        if resp.status_code >= 400:
            raise ProviderHTTPError(resp.status_code, resp.text, url)

        urls: list[str] = []
        encoded: list[str] = []
        for item in resp.json().get("data") or []:
            if item.get("url"):
                urls.append(item["url"])
            elif item.get("b64_json"):
                encoded.append(f"data:image/png;base64,{item['b64_json']}")
        if urls:
            return ImagePayload(type="url", images=tuple(urls))
        return ImagePayload(type="base64", images=tuple(encoded))
