"""Anthropic Messages API client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from llm_relay.llm.adapters.anthropic import AnthropicChunkAdapter
from llm_relay.llm.providers.base import ProviderClient, sanitize_tool_name
from llm_relay.types import ToolCallRecord, ToolDescriptor

if TYPE_CHECKING:
    from llm_relay.middleware.base import CompletionsRequest

ANTHROPIC_VERSION = "2023-06-01"

_WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 5}


class AnthropicProvider(ProviderClient):
    api_type = "anthropic"
    adapter_cls = AnthropicChunkAdapter
    default_base_url = "https://api.anthropic.com/v1"

    def endpoint(self, model: str, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_payload(self, request: CompletionsRequest, tool_mode: str | None) -> dict[str, Any]:
        # System turns travel in their own field, not in ``messages``
        system, messages = self.split_system(request.messages, self.system_text(request, tool_mode))
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": self.max_tokens_for(request),
            "messages": [dict(m) for m in messages],
            "stream": request.stream,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p

        tools: list[dict[str, Any]] = []
        if tool_mode == "native" and request.tools:
            tools.extend(self.convert_tools(request.tools))
        if request.enable_web_search:
            tools.append(dict(_WEB_SEARCH_TOOL))
        if tools:
            payload["tools"] = tools
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    def convert_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        return [
            {
                "name": sanitize_tool_name(t.name),
                "description": t.description,
                "input_schema": t.input_schema,
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

        blocks: list[dict[str, Any]] = []
        if text:
            blocks.append({"type": "text", "text": text})
        for r in records:
            blocks.append({
                "type": "tool_use",
                "id": r.id,
                "name": sanitize_tool_name(r.name),
                "input": r.arguments,
            })
        messages.append({"role": "assistant", "content": blocks})
        messages.append({
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": r.id,
                    "content": self.result_text(r),
                    "is_error": bool(r.response and r.response.is_error),
                }
                for r in records
            ],
        })
