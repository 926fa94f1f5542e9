"""Tests for the llm-relay command and its chunk renderer."""

from __future__ import annotations

import io
from types import SimpleNamespace

import pytest
from click.testing import CliRunner
from rich.console import Console

from llm_relay import cli
from llm_relay.chunks import (
    ErrorChunk,
    TextDelta,
    TextStart,
    ThinkingComplete,
    ThinkingStart,
    ToolComplete,
    ToolInProgress,
)
from llm_relay.errors import ErrorKind, ProviderHTTPError
from llm_relay.types import (
    CompletionsResult,
    ToolCallRecord,
    ToolCallStatus,
    ToolResponse,
    Usage,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeProvider:
    """Stands in for AiProvider; answers every request with "pong"."""

    instances: list[FakeProvider] = []
    fail_with: Exception | None = None

    def __init__(self, config=None, registry=None, event_bus=None):
        self.config = config
        self.registry = registry
        self.client = SimpleNamespace(adapter_cls=SimpleNamespace(cumulative=False))
        self.requests = []
        self.closed = False
        FakeProvider.instances.append(self)

    async def completions(self, request):
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        await request.on_chunk(TextStart())
        await request.on_chunk(TextDelta(text="pong"))
        return CompletionsResult(text="pong", usage=Usage.of(1, 1))

    async def close(self):
        self.closed = True


@pytest.fixture
def output(monkeypatch):
    buf = io.StringIO()
    monkeypatch.setattr(cli, "console", Console(file=buf, width=120))
    monkeypatch.setattr(cli, "AiProvider", FakeProvider)
    FakeProvider.instances = []
    FakeProvider.fail_with = None
    return buf


def _invoke(*args: str):
    runner = CliRunner()
    return runner.invoke(cli.main, ["--config", "nonexistent.yaml", "--no-tools", *args])


def _renderer(**kwargs):
    buf = io.StringIO()
    return cli.ChunkRenderer(Console(file=buf, width=120), **kwargs), buf


# ---------------------------------------------------------------------------
# Tests: command
# ---------------------------------------------------------------------------

class TestMain:
    def test_streams_answer(self, output):
        result = _invoke("ping")

        assert result.exit_code == 0, result.output
        assert "pong" in output.getvalue()
        provider = FakeProvider.instances[0]
        assert provider.closed
        request = provider.requests[0]
        assert request.messages == [{"role": "user", "content": "ping"}]
        assert request.stream is True
        assert provider.registry is None

    def test_options_reach_request(self, output):
        result = _invoke("ping", "-m", "gpt-4o", "-s", "Be brief.", "--no-stream",
                         "--web-search", "--tool-mode", "prompt", "--timeout", "5")

        assert result.exit_code == 0, result.output
        request = FakeProvider.instances[0].requests[0]
        assert request.model == "gpt-4o"
        assert request.system_prompt == "Be brief."
        assert request.stream is False
        assert request.enable_web_search is True
        assert request.tool_mode == "prompt"
        assert request.timeout == 5.0

    def test_usage_table(self, output):
        result = _invoke("ping", "--usage")

        assert result.exit_code == 0, result.output
        text = output.getvalue()
        assert "total" in text
        assert "2" in text

    def test_unknown_profile(self, output):
        result = _invoke("ping", "--profile", "nope")
        assert result.exit_code == 2
        assert not FakeProvider.instances

    def test_provider_error_exits_nonzero(self, output):
        FakeProvider.fail_with = ProviderHTTPError(401, "bad key")
        result = _invoke("ping")
        assert result.exit_code == 1
        assert FakeProvider.instances[0].closed

    def test_prompt_from_stdin(self, output):
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["--config", "nonexistent.yaml", "--no-tools"], input="from stdin",
        )
        assert result.exit_code == 0, result.output
        assert FakeProvider.instances[0].requests[0].messages[0]["content"] == "from stdin"


# ---------------------------------------------------------------------------
# Tests: renderer
# ---------------------------------------------------------------------------

class TestChunkRenderer:
    def test_incremental_text(self):
        renderer, buf = _renderer()
        renderer.handle(TextStart())
        renderer.handle(TextDelta(text="Hel"))
        renderer.handle(TextDelta(text="lo"))
        renderer.finish()
        assert buf.getvalue() == "Hello\n"

    def test_cumulative_text(self):
        renderer, buf = _renderer(cumulative=True)
        renderer.handle(TextStart())
        renderer.handle(TextDelta(text="Hel"))
        renderer.handle(TextDelta(text="Hello"))
        renderer.finish()
        assert buf.getvalue() == "Hello\n"

    def test_thinking_hidden_by_default(self):
        renderer, buf = _renderer()
        renderer.handle(ThinkingStart())
        renderer.handle(ThinkingComplete(text="plan", thinking_millsec=1500))
        assert buf.getvalue() == ""

    def test_thinking_summary(self):
        renderer, buf = _renderer(show_thinking=True)
        renderer.handle(ThinkingStart())
        renderer.handle(ThinkingComplete(text="plan the answer\nmore", thinking_millsec=1500))
        text = buf.getvalue()
        assert "thinking..." in text
        assert "thought for 1.5s: plan the answer..." in text

    def test_tool_lifecycle(self):
        renderer, buf = _renderer()
        running = ToolCallRecord(id="c1", name="get_weather", arguments={"city": "Paris"},
                                 status=ToolCallStatus.IN_PROGRESS)
        done = ToolCallRecord(id="c1", name="get_weather", arguments={"city": "Paris"},
                              status=ToolCallStatus.DONE,
                              response=ToolResponse.from_text("Sunny"))
        renderer.handle(ToolInProgress(tools=(running,)))
        renderer.handle(ToolComplete(tools=(done,)))
        text = buf.getvalue()
        assert "> get_weather" in text
        assert "Paris" in text
        assert "OK get_weather" in text
        assert "Sunny" in text

    def test_error_breaks_line(self):
        renderer, buf = _renderer()
        renderer.handle(TextDelta(text="par"))
        renderer.handle(ErrorChunk(message="slow down", kind=ErrorKind.RATE_LIMITED, status=429))
        assert buf.getvalue() == "par\nError (rate_limited): slow down\n"
