"""Tests for the provider clients: URLs, headers, payloads, tool rounds
and the HTTP transport."""

from __future__ import annotations

import json
import logging
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from llm_relay.config import ProfileSpec
from llm_relay.errors import ProviderHTTPError
from llm_relay.llm.providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    create_provider,
    sanitize_tool_name,
)
from llm_relay.llm.providers.gemini import clean_schema, to_gemini_contents
from llm_relay.middleware import CompletionsRequest
from llm_relay.types import ToolCallRecord, ToolDescriptor, ToolResponse


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

WEATHER = ToolDescriptor(
    name="get_weather",
    description="Current weather",
    input_schema={
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "additionalProperties": False,
    },
)


def _request(**kwargs: Any) -> CompletionsRequest:
    kwargs.setdefault("messages", [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Weather in Paris?"},
    ])
    kwargs.setdefault("model", "test-model")
    return CompletionsRequest(**kwargs)


def _record(name: str = "get_weather", text: str = "18C", is_error: bool = False) -> ToolCallRecord:
    return ToolCallRecord(
        id="call_1",
        name=name,
        arguments={"city": "Paris"},
        response=ToolResponse.from_text(text, is_error=is_error),
    )


def _sse(*frames: dict) -> bytes:
    body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames)
    return (body + "data: [DONE]\n\n").encode()


class RecordingTransport:
    """``httpx.MockTransport`` handler that records requests."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        return self.response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


# ---------------------------------------------------------------------------
# Tests: shared behaviour
# ---------------------------------------------------------------------------

class TestSharedBehaviour:
    @pytest.mark.parametrize("raw,expected", [
        ("get_weather", "get_weather"),
        ("fs.read", "fs_read"),
        ("1password", "tool_1password"),
        ("-dash", "_-dash"),
        ("a" * 80, "a" * 64),
    ])
    def test_sanitize_tool_name(self, raw, expected):
        assert sanitize_tool_name(raw) == expected

    def test_resolve_tool(self):
        tools = [ToolDescriptor(name="fs.read", id="srv:fs.read"), WEATHER]
        assert OpenAIProvider.resolve_tool("get_weather", tools) is WEATHER
        assert OpenAIProvider.resolve_tool("srv:fs.read", tools) is tools[0]
        assert OpenAIProvider.resolve_tool("fs_read", tools) is tools[0]
        assert OpenAIProvider.resolve_tool("nope", tools) is None

    def test_key_rotation(self):
        client = OpenAIProvider(ProfileSpec(api_key="k1, k2"))
        assert [client.next_api_key() for _ in range(3)] == ["k1", "k2", "k1"]
        assert OpenAIProvider(ProfileSpec()).next_api_key() == ""

    def test_function_calling_support(self):
        client = OpenAIProvider(ProfileSpec())
        assert client.supports_function_calling("gpt-4o")
        assert not client.supports_function_calling("o1-mini")

    def test_create_provider(self):
        assert isinstance(create_provider(ProfileSpec(api_type="anthropic")), AnthropicProvider)
        assert isinstance(create_provider(ProfileSpec(api_type="gemini")), GeminiProvider)

    def test_unknown_api_type_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING, logger="llm_relay.llm.providers.factory"):
            client = create_provider(ProfileSpec(provider="local", api_type="mystery"))
        assert isinstance(client, OpenAIProvider)
        assert "mystery" in caplog.text


# ---------------------------------------------------------------------------
# Tests: OpenAI
# ---------------------------------------------------------------------------

class TestOpenAIProvider:
    @pytest.mark.parametrize("url,expected", [
        ("", "https://api.openai.com/v1/chat/completions"),
        ("http://localhost:1234", "http://localhost:1234/v1/chat/completions"),
        ("https://openrouter.ai/api/v1/", "https://openrouter.ai/api/v1/chat/completions"),
    ])
    def test_endpoint(self, url, expected):
        assert OpenAIProvider(ProfileSpec(url=url)).endpoint("m", stream=True) == expected

    def test_headers(self):
        client = OpenAIProvider(ProfileSpec())
        assert client.headers("sk-1")["Authorization"] == "Bearer sk-1"
        assert "Authorization" not in client.headers("")

    def test_native_payload(self):
        client = OpenAIProvider(ProfileSpec(extra_params={"seed": 7}))
        payload = client.build_payload(_request(tools=[WEATHER], temperature=0.2), "native")

        assert payload["model"] == "test-model"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["temperature"] == 0.2
        assert payload["seed"] == 7
        assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
        assert payload["tools"][0]["function"]["name"] == "get_weather"
        assert payload["tools"][0]["function"]["parameters"] == WEATHER.input_schema

    def test_prompt_payload(self):
        client = OpenAIProvider(ProfileSpec())
        payload = client.build_payload(
            _request(tools=[WEATHER], system_prompt="You help."), "prompt",
        )
        assert "tools" not in payload
        system = payload["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith("You help.")
        assert "<name>get_weather</name>" in system["content"]

    def test_non_streaming_payload(self):
        payload = OpenAIProvider(ProfileSpec()).build_payload(_request(stream=False), None)
        assert payload["stream"] is False
        assert "stream_options" not in payload

    def test_append_tool_round_prompt(self):
        payload = {"messages": []}
        OpenAIProvider(ProfileSpec()).append_tool_round(
            payload, "<tool_use>...</tool_use>", [_record()], "prompt",
        )
        assistant, user = payload["messages"]
        assert assistant == {"role": "assistant", "content": "<tool_use>...</tool_use>"}
        assert user["role"] == "user"
        assert "<result>18C</result>" in user["content"]

    async def test_stream_frames(self):
        transport = RecordingTransport(httpx.Response(
            200,
            content=_sse({"choices": [{"delta": {"content": "Hi"}}]}, {"choices": []}),
            headers={"content-type": "text/event-stream"},
        ))
        client = OpenAIProvider(
            ProfileSpec(api_key="sk-test", extra_headers={"X-Title": "relay"}),
            http_client=transport.client(),
        )

        frames = [f async for f in client.stream_frames("m", {"model": "m", "stream": True})]

        assert frames == [{"choices": [{"delta": {"content": "Hi"}}]}, {"choices": []}]
        request = transport.requests[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["x-title"] == "relay"
        assert transport.last_json == {"model": "m", "stream": True}

    async def test_stream_http_error(self):
        transport = RecordingTransport(httpx.Response(401, text='{"error": "bad key"}'))
        client = OpenAIProvider(ProfileSpec(api_key="sk-bad"), http_client=transport.client())

        with pytest.raises(ProviderHTTPError) as excinfo:
            async for _ in client.stream_frames("m", {}):
                pass
        assert excinfo.value.status_code == 401
        assert "bad key" in excinfo.value.body

    async def test_fetch_response(self):
        client = OpenAIProvider(ProfileSpec(api_key="sk-test"))
        response = httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})
        with patch.object(client._client, "post", new_callable=AsyncMock, return_value=response) as post:
            body = await client.fetch_response("m", {"model": "m"})

        assert body["choices"][0]["message"]["content"] == "ok"
        args, kwargs = post.call_args
        assert args[0] == "https://api.openai.com/v1/chat/completions"
        assert kwargs["json"] == {"model": "m"}
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    async def test_fetch_response_error(self):
        client = OpenAIProvider(ProfileSpec())
        response = httpx.Response(503, text="unavailable")
        with patch.object(client._client, "post", new_callable=AsyncMock, return_value=response):
            with pytest.raises(ProviderHTTPError, match="503"):
                await client.fetch_response("m", {})

    async def test_generate_images(self):
        transport = RecordingTransport(httpx.Response(200, json={"data": [{"url": "https://img/1.png"}]}))
        client = OpenAIProvider(ProfileSpec(api_key="k"), http_client=transport.client())

        image = await client.generate_images("dall-e-3", "a cat", size="1024x1024")

        assert image.type == "url"
        assert image.images == ("https://img/1.png",)
        assert str(transport.requests[0].url) == "https://api.openai.com/v1/images/generations"
        assert transport.last_json == {"model": "dall-e-3", "prompt": "a cat", "n": 1, "size": "1024x1024"}

    async def test_generate_images_base64(self):
        transport = RecordingTransport(httpx.Response(200, json={"data": [{"b64_json": "QUJD"}]}))
        client = OpenAIProvider(ProfileSpec(), http_client=transport.client())
        image = await client.generate_images("gpt-image-1", "a dog")
        assert image.type == "base64"
        assert image.images == ("data:image/png;base64,QUJD",)


# ---------------------------------------------------------------------------
# Tests: Anthropic
# ---------------------------------------------------------------------------

class TestAnthropicProvider:
    def test_endpoint_and_headers(self):
        client = AnthropicProvider(ProfileSpec(api_type="anthropic"))
        assert client.endpoint("claude", stream=True) == "https://api.anthropic.com/v1/messages"
        headers = client.headers("sk-ant")
        assert headers["x-api-key"] == "sk-ant"
        assert headers["anthropic-version"] == "2023-06-01"

    def test_payload_splits_system(self):
        client = AnthropicProvider(ProfileSpec(api_type="anthropic"))
        payload = client.build_payload(
            _request(system_prompt="You help.", tools=[WEATHER], enable_web_search=True), "native",
        )
        assert payload["system"] == "You help.\n\nBe brief."
        assert payload["messages"] == [{"role": "user", "content": "Weather in Paris?"}]
        assert payload["max_tokens"] == 4096
        names = [t["name"] for t in payload["tools"]]
        assert names == ["get_weather", "web_search"]
        assert payload["tools"][0]["input_schema"] == WEATHER.input_schema

    def test_append_tool_round_native(self):
        payload = {"messages": []}
        AnthropicProvider(ProfileSpec()).append_tool_round(
            payload, "Checking.", [_record(text="boom", is_error=True)], "native",
        )
        assistant, user = payload["messages"]
        assert assistant["content"] == [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "call_1", "name": "get_weather", "input": {"city": "Paris"}},
        ]
        assert user["content"] == [{
            "type": "tool_result", "tool_use_id": "call_1", "content": "boom", "is_error": True,
        }]


# ---------------------------------------------------------------------------
# Tests: Gemini
# ---------------------------------------------------------------------------

class TestGeminiProvider:
    def test_endpoint_and_params(self):
        client = GeminiProvider(ProfileSpec(api_type="gemini"))
        base = "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro"
        assert client.endpoint("gemini-pro", stream=True) == f"{base}:streamGenerateContent"
        assert client.endpoint("gemini-pro", stream=False) == f"{base}:generateContent"
        assert client.query_params("g-key", True) == {"alt": "sse", "key": "g-key"}
        assert client.query_params("", False) == {}

    def test_payload(self):
        client = GeminiProvider(ProfileSpec(api_type="gemini"))
        payload = client.build_payload(_request(tools=[WEATHER], temperature=0.5), "native")

        assert payload["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert payload["contents"] == [{"role": "user", "parts": [{"text": "Weather in Paris?"}]}]
        assert payload["generationConfig"] == {"maxOutputTokens": 4096, "temperature": 0.5}
        declaration = payload["tools"][0]["functionDeclarations"][0]
        assert "additionalProperties" not in declaration["parameters"]

    def test_clean_schema_recursive(self):
        schema = {
            "$schema": "x",
            "type": "object",
            "properties": {"a": {"type": "object", "additionalProperties": True}},
            "anyOf": [{"additionalProperties": False, "type": "string"}],
        }
        assert clean_schema(schema) == {
            "type": "object",
            "properties": {"a": {"type": "object"}},
            "anyOf": [{"type": "string"}],
        }

    def test_contents_conversion(self):
        contents = to_gemini_contents([
            {"role": "assistant", "content": [{"type": "text", "text": "hi"}]},
            {"role": "model", "parts": [{"text": "kept"}]},
        ])
        assert contents == [
            {"role": "model", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"text": "kept"}]},
        ]

    def test_append_tool_round_native(self):
        payload = {"contents": []}
        GeminiProvider(ProfileSpec()).append_tool_round(
            payload, "", [_record(), _record(name="get_time", text="bad", is_error=True)], "native",
        )
        model_turn, user_turn = payload["contents"]
        assert model_turn["role"] == "model"
        assert [p["functionCall"]["name"] for p in model_turn["parts"]] == ["get_weather", "get_time"]
        assert user_turn["parts"][0]["functionResponse"]["response"] == {"output": "18C"}
        assert user_turn["parts"][1]["functionResponse"]["response"] == {"error": "bad"}

    async def test_stream_uses_query_params(self):
        transport = RecordingTransport(httpx.Response(
            200,
            content=_sse({"candidates": [{"content": {"parts": [{"text": "Hi"}]}}]}),
            headers={"content-type": "text/event-stream"},
        ))
        client = GeminiProvider(ProfileSpec(api_type="gemini", api_key="g-key"),
                                http_client=transport.client())

        frames = [f async for f in client.stream_frames("gemini-pro", {"contents": []})]

        assert len(frames) == 1
        url = transport.requests[0].url
        assert url.path.endswith("/models/gemini-pro:streamGenerateContent")
        assert url.params["alt"] == "sse"
        assert url.params["key"] == "g-key"
