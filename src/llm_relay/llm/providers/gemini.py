"""Google Gemini ``generateContent`` client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from llm_relay.llm.adapters.gemini import GeminiChunkAdapter
from llm_relay.llm.providers.base import ProviderClient, sanitize_tool_name
from llm_relay.types import ToolCallRecord, ToolDescriptor

if TYPE_CHECKING:
    from llm_relay.middleware.base import CompletionsRequest

# JSON-schema keywords the Gemini function declaration parser rejects
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"additionalProperties", "$schema"})


def clean_schema(schema: Any) -> Any:
    """Recursively drop schema keywords Gemini does not accept."""
    if isinstance(schema, dict):
        return {
            k: clean_schema(v)
            for k, v in schema.items()
            if k not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [clean_schema(v) for v in schema]
    return schema


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text", "")) for part in content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        )
    return "" if content is None else str(content)


def to_gemini_contents(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Neutral ``{role, content}`` messages to Gemini ``contents``.

    Entries that already carry ``parts`` (earlier tool rounds) are kept.
    """
    contents = []
    for m in messages:
        if "parts" in m:
            contents.append(m)
            continue
        role = "model" if m.get("role") == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": _content_text(m.get("content"))}]})
    return contents


class GeminiProvider(ProviderClient):
    api_type = "gemini"
    adapter_cls = GeminiChunkAdapter
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def endpoint(self, model: str, stream: bool) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self.base_url}/models/{model}:{method}"

    def headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def query_params(self, api_key: str, stream: bool) -> dict[str, str]:
        params = {"alt": "sse"} if stream else {}
        if api_key:
            params["key"] = api_key
        return params

    def build_payload(self, request: CompletionsRequest, tool_mode: str | None) -> dict[str, Any]:
        system, messages = self.split_system(request.messages, self.system_text(request, tool_mode))
        config: dict[str, Any] = {"maxOutputTokens": self.max_tokens_for(request)}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p

        payload: dict[str, Any] = {
            "contents": to_gemini_contents(messages),
            "generationConfig": config,
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        tools: list[dict[str, Any]] = []
        if tool_mode == "native" and request.tools:
            tools.extend(self.convert_tools(request.tools))
        if request.enable_web_search:
            tools.append({"googleSearch": {}})
        if tools:
            payload["tools"] = tools
        if self.profile.extra_params:
            payload.update(self.profile.extra_params)
        return payload

    def convert_tools(self, tools: list[ToolDescriptor]) -> list[dict[str, Any]]:
        return [{
            "functionDeclarations": [
                {
                    "name": sanitize_tool_name(t.name),
                    "description": t.description,
                    "parameters": clean_schema(t.input_schema),
                }
                for t in tools
            ],
        }]

    def append_tool_round(
        self,
        payload: dict[str, Any],
        text: str,
        records: list[ToolCallRecord],
        tool_mode: str,
    ) -> None:
        contents = payload.setdefault("contents", [])
        if tool_mode == "prompt":
            contents.append({"role": "model", "parts": [{"text": text}]})
            contents.append({"role": "user", "parts": [{"text": self.prompt_results_text(records)}]})
            return

        parts: list[dict[str, Any]] = [{"text": text}] if text else []
        parts.extend(
            {"functionCall": {"name": sanitize_tool_name(r.name), "args": r.arguments}}
            for r in records
        )
        contents.append({"role": "model", "parts": parts})

        responses = []
        for r in records:
            is_error = bool(r.response and r.response.is_error)
            key = "error" if is_error else "output"
            responses.append({"functionResponse": {
                "name": sanitize_tool_name(r.name),
                "response": {key: self.result_text(r)},
            }})
        contents.append({"role": "user", "parts": responses})
