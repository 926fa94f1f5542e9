"""``llm-relay`` command: send one prompt and stream the answer."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from llm_relay.chunks import (
    BaseChunk,
    ErrorChunk,
    ImageComplete,
    TextDelta,
    TextStart,
    ThinkingComplete,
    ThinkingStart,
    ToolComplete,
    ToolInProgress,
    WebSearchComplete,
)
from llm_relay.config import load_config
from llm_relay.errors import RelayError
from llm_relay.events.bus import EventBus
from llm_relay.middleware.base import CompletionsRequest
from llm_relay.provider import AiProvider
from llm_relay.tools.registry import ToolRegistry
from llm_relay.types import CompletionsResult

console = Console()


class ChunkRenderer:
    """Renders chunks to the terminal as they arrive."""

    def __init__(self, con: Console, show_thinking: bool = False, cumulative: bool = False):
        self.con = con
        self.show_thinking = show_thinking
        self.cumulative = cumulative
        self._streaming = False
        self._printed = ""

    async def __call__(self, chunk: BaseChunk) -> None:
        self.handle(chunk)

    def handle(self, chunk: BaseChunk) -> None:
        if isinstance(chunk, TextStart):
            self._printed = ""

        elif isinstance(chunk, TextDelta):
            text = chunk.text
            if self.cumulative:
                text, self._printed = text[len(self._printed):], text
            if not self._streaming:
                self._streaming = True
            self.con.print(text, end="", highlight=False)

        elif isinstance(chunk, ThinkingStart):
            self._flush()
            if self.show_thinking:
                self.con.print("[dim italic]thinking...[/dim italic]")

        elif isinstance(chunk, ThinkingComplete):
            if self.show_thinking and chunk.text:
                first = chunk.text.strip().split("\n")[0][:80]
                secs = (chunk.thinking_millsec or 0) / 1000
                self.con.print(f"[dim italic]thought for {secs:.1f}s: {first}...[/dim italic]")

        elif isinstance(chunk, ToolInProgress):
            self._flush()
            for record in chunk.tools:
                args = str(record.arguments)
                if len(args) > 120:
                    args = args[:120] + "..."
                self.con.print(f"[yellow]> {record.name}[/yellow] [dim]{args}[/dim]")

        elif isinstance(chunk, ToolComplete):
            for record in chunk.tools:
                ok = record.status.value == "done"
                icon = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
                out = record.response.text if record.response else ""
                if len(out) > 600:
                    out = out[:600] + "\n..."
                if out.strip():
                    self.con.print(Panel(out, title=f"{icon} {record.name}",
                                         border_style="dim", expand=False))

        elif isinstance(chunk, WebSearchComplete) and chunk.results is not None:
            self._flush()
            for item in chunk.results.items:
                self.con.print(f"[cyan]- {item.title or item.url}[/cyan] [dim]{item.url}[/dim]")

        elif isinstance(chunk, ImageComplete) and chunk.image is not None:
            self._flush()
            for image in chunk.image.images:
                shown = image if len(image) < 120 else image[:120] + "..."
                self.con.print(f"[magenta]image:[/magenta] {shown}")

        elif isinstance(chunk, ErrorChunk):
            self._flush()
            self.con.print(f"[red]Error ({chunk.kind.value}): {chunk.message}[/red]")

    def finish(self) -> None:
        self._flush()

    def _flush(self) -> None:
        if self._streaming:
            self.con.print()
            self._streaming = False


def _print_usage(result: CompletionsResult) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_row("[dim]prompt[/dim]", str(result.usage.prompt_tokens))
    table.add_row("[dim]completion[/dim]", str(result.usage.completion_tokens))
    table.add_row("[dim]total[/dim]", str(result.usage.total_tokens))
    if result.tool_responses:
        table.add_row("[dim]tool calls[/dim]", str(len(result.tool_responses)))
    console.print(table)


async def _run(provider: AiProvider, request: CompletionsRequest, renderer: ChunkRenderer) -> CompletionsResult:
    try:
        return await provider.completions(request)
    finally:
        renderer.finish()
        await provider.close()


@click.command()
@click.argument("prompt", required=False)
@click.option("--config", "-c", "config_path", default=None,
              help="Path to llm_relay.yaml (auto-detected from CWD or ~/.config/llm-relay/)")
@click.option("--profile", "-p", default=None, help="Provider profile name")
@click.option("--model", "-m", default=None, help="Model (defaults to the profile's first model)")
@click.option("--system", "-s", "system_prompt", default="", help="System prompt")
@click.option("--no-stream", is_flag=True, help="Request a single non-streamed response")
@click.option("--web-search", is_flag=True, help="Enable provider web search")
@click.option("--tool-mode", type=click.Choice(["native", "prompt"]), default=None,
              help="Force the tool-call mode (default: automatic)")
@click.option("--tools/--no-tools", "use_tools", default=True,
              help="Offer tools registered under the llm_relay.tools entry point")
@click.option("--timeout", type=float, default=None, help="Request timeout in seconds")
@click.option("--thinking", is_flag=True, help="Show reasoning summaries")
@click.option("--usage", "show_usage", is_flag=True, help="Print token usage afterwards")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def main(prompt: str | None, config_path: str | None, profile: str | None, model: str | None,
         system_prompt: str, no_stream: bool, web_search: bool, tool_mode: str | None,
         use_tools: bool, timeout: float | None, thinking: bool, show_usage: bool,
         verbose: bool):
    """Send PROMPT (or stdin) to an LLM provider and stream the answer."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    if prompt is None:
        if sys.stdin.isatty():
            raise click.UsageError("Give a PROMPT argument or pipe one on stdin")
        prompt = sys.stdin.read()

    config = load_config(config_path)
    if profile:
        if profile not in config.profiles:
            raise click.BadParameter(
                f"unknown profile (have: {', '.join(config.profiles)})", param_hint="--profile",
            )
        config.profile = profile

    registry = None
    if use_tools:
        registry = ToolRegistry()
        registry.discover()
        if not registry.tool_names():
            registry = None

    bus = EventBus()
    provider = AiProvider(config=config, registry=registry, event_bus=bus)
    renderer = ChunkRenderer(console, show_thinking=thinking,
                             cumulative=provider.client.adapter_cls.cumulative)
    request = CompletionsRequest(
        messages=[{"role": "user", "content": prompt}],
        model=model or "",
        system_prompt=system_prompt,
        tool_mode=tool_mode,
        stream=not no_stream,
        enable_web_search=web_search,
        timeout=timeout,
        on_chunk=renderer,
    )

    try:
        result = asyncio.run(_run(provider, request, renderer))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except (RelayError, httpx.HTTPError) as e:
        # Already reported through the error chunk
        logging.getLogger(__name__).debug("Request failed", exc_info=e)
        sys.exit(1)

    if show_usage:
        _print_usage(result)
    if result.error is not None:
        sys.exit(1)


if __name__ == "__main__":
    main()
