"""Incremental scanners for tags embedded in streamed model text.

Two scanners share one state machine:

* :class:`ToolTagScanner` recognizes prompt-injected tool calls in any of
  the supported dialects and strips them from the visible text;
* :class:`ThinkTagScanner` turns ``<think>``-style blocks into reasoning.

States:
  text  - forwarding plain text; a ``<`` that could still become a known
          opening tag is held back until it either completes or diverges
  tag   - inside a recognized tag, buffering until its closing marker

Each character is examined a bounded number of times, so cost stays
linear in the total streamed length however the text is fragmented.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Generator, Iterable

from llm_relay.types import ToolCallRecord, new_call_id

_logger = logging.getLogger(__name__)

ScanEvent = tuple[str, Any]


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

_KV_LINE = re.compile(r"^(\w+)\s*[:=]\s*(.+)$")


def parse_tag_arguments(body: str) -> dict[str, Any]:
    """Parse the argument body of a tagged tool call.

    Tried in order: a JSON object; ``key: value`` / ``key=value`` lines
    (each value JSON-decoded when possible); finally ``{"raw": body}``.
    """
    text = body.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    args: dict[str, Any] = {}
    for line in text.splitlines():
        m = _KV_LINE.match(line.strip())
        if not m:
            continue
        key, raw_value = m.group(1), m.group(2).strip()
        try:
            args[key] = json.loads(raw_value)
        except json.JSONDecodeError:
            args[key] = raw_value
    if args:
        return args
    return {"raw": text}


# ---------------------------------------------------------------------------
# Shared scanner
# ---------------------------------------------------------------------------

class _TagScanner:
    """Base state machine.  Subclasses define openers and tag handling."""

    _OPENERS: tuple[str, ...] = ()

    def __init__(self) -> None:
        self.buffer = ""
        self.state = "text"
        self.opener = ""
        self._scan_from = 0

    def feed(self, chunk: str) -> Generator[ScanEvent, None, None]:
        """Feed a text fragment.  Yields ``(event_type, data)`` pairs."""
        self.buffer += chunk

        changed = True
        while changed:
            changed = False

            if self.state == "text":
                lt = self.buffer.find("<")
                if lt < 0:
                    if self.buffer:
                        yield ("text", self.buffer)
                        self.buffer = ""
                    break
                if lt > 0:
                    yield ("text", self.buffer[:lt])
                    self.buffer = self.buffer[lt:]

                opener = self._match_opener(self.buffer)
                if opener is None:
                    # Not a tag: release up to the next candidate
                    nxt = self.buffer.find("<", 1)
                    cut = nxt if nxt > 0 else len(self.buffer)
                    yield ("text", self.buffer[:cut])
                    self.buffer = self.buffer[cut:]
                    changed = bool(self.buffer)
                elif opener:
                    self.state = "tag"
                    self.opener = opener
                    self._scan_from = 0
                    yield from self._enter_tag()
                    changed = True
                # else: a prefix of some opener, wait for more input

            elif self.state == "tag":
                changed = yield from self._scan_tag()

    def finish(self) -> Generator[ScanEvent, None, None]:
        """Flush at end of stream."""
        if self.state == "text":
            if self.buffer:
                yield ("text", self.buffer)
        else:
            yield from self._unterminated()
        self.buffer = ""
        self.state = "text"

    def _match_opener(self, buf: str) -> str | None:
        """Return the opener *buf* starts with, ``""`` if *buf* may still
        grow into one, or None if it never can."""
        possible = False
        for opener in self._OPENERS:
            if buf.startswith(opener):
                return opener
            if len(buf) < len(opener) and opener.startswith(buf):
                possible = True
        return "" if possible else None

    def _find_closer(self, closer: str) -> int:
        idx = self.buffer.find(closer, self._scan_from)
        if idx < 0:
            self._scan_from = max(0, len(self.buffer) - len(closer) + 1)
        return idx

    def _enter_tag(self) -> Generator[ScanEvent, None, None]:
        return
        yield

    def _scan_tag(self) -> Generator[ScanEvent, None, bool]:
        raise NotImplementedError

    def _unterminated(self) -> Generator[ScanEvent, None, None]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Tool tags
# ---------------------------------------------------------------------------

_TOOL_DIALECTS: dict[str, tuple[str, re.Pattern[str]]] = {
    "<tool_use>": (
        "</tool_use>",
        re.compile(
            r"<tool_use>\s*<name>(.*?)</name>\s*<arguments>(.*?)</arguments>\s*</tool_use>",
            re.DOTALL,
        ),
    ),
    "<tool_name>": (
        "</tool_input>",
        re.compile(
            r"<tool_name>(.*?)</tool_name>\s*<tool_input>(.*?)</tool_input>",
            re.DOTALL,
        ),
    ),
    "<function_call ": (
        "</function_call>",
        re.compile(
            r'<function_call\s+name\s*=\s*"([^"]+)"\s*>(.*?)</function_call>',
            re.DOTALL,
        ),
    ),
}


class ToolTagScanner(_TagScanner):
    """Extract prompt-injected tool calls from streamed text.

    Events:
      ``("text", str)``              visible text with tags removed
      ``("tool", ToolCallRecord)``   a complete call to a known tool
      ``("ignored", str)``           a complete call naming an unknown tool

    With ``tool_names=None`` every name is accepted.
    """

    _OPENERS = tuple(_TOOL_DIALECTS)

    def __init__(self, tool_names: Iterable[str] | None = None) -> None:
        super().__init__()
        self._tool_names = set(tool_names) if tool_names is not None else None

    def _scan_tag(self) -> Generator[ScanEvent, None, bool]:
        closer, pattern = _TOOL_DIALECTS[self.opener]
        idx = self._find_closer(closer)
        if idx < 0:
            return False

        end = idx + len(closer)
        block = self.buffer[:end]
        self.buffer = self.buffer[end:]
        self.state = "text"

        m = pattern.match(block)
        if not m:
            _logger.warning("Unparseable tool tag kept as text: %.200s", block)
            yield ("text", block)
            return True

        name = m.group(1).strip()
        if self._tool_names is not None and name not in self._tool_names:
            _logger.warning("Model referenced unknown tool %r, ignoring", name)
            yield ("ignored", name)
            return True

        yield ("tool", ToolCallRecord(
            id=new_call_id("tag_call"),
            name=name,
            arguments=parse_tag_arguments(m.group(2)),
        ))
        return True

    def _unterminated(self) -> Generator[ScanEvent, None, None]:
        _logger.warning(
            "Stream ended inside an unterminated tool tag, dropping %d chars",
            len(self.buffer),
        )
        return
        yield


def extract_tool_calls(
    text: str,
    tool_names: Iterable[str] | None = None,
) -> tuple[str, list[ToolCallRecord]]:
    """One-shot helper: return ``(text_without_tags, calls)``."""
    scanner = ToolTagScanner(tool_names)
    parts: list[str] = []
    calls: list[ToolCallRecord] = []
    for kind, data in [*scanner.feed(text), *scanner.finish()]:
        if kind == "text":
            parts.append(data)
        elif kind == "tool":
            calls.append(data)
    return "".join(parts), calls


# ---------------------------------------------------------------------------
# Thinking tags
# ---------------------------------------------------------------------------

THINK_TAGS = ("think", "thinking", "reasoning", "thought")


class ThinkTagScanner(_TagScanner):
    """Split ``<think>``-style blocks out of streamed text.

    Events: ``("text", str)``, ``("thinking_start", "")``,
    ``("thinking", str)`` (incremental), ``("thinking_end", "")``.
    """

    _OPENERS = tuple(f"<{t}>" for t in THINK_TAGS)

    def _enter_tag(self) -> Generator[ScanEvent, None, None]:
        self.buffer = self.buffer[len(self.opener):]
        yield ("thinking_start", "")

    def _scan_tag(self) -> Generator[ScanEvent, None, bool]:
        closer = "</" + self.opener[1:]
        idx = self.buffer.find(closer)
        if idx < 0:
            hold = _closer_prefix_len(self.buffer, closer)
            ready = self.buffer[:len(self.buffer) - hold]
            if ready:
                yield ("thinking", ready)
                self.buffer = self.buffer[len(ready):]
            return False

        if idx > 0:
            yield ("thinking", self.buffer[:idx])
        yield ("thinking_end", "")
        self.buffer = self.buffer[idx + len(closer):]
        self.state = "text"
        return True

    def _unterminated(self) -> Generator[ScanEvent, None, None]:
        if self.buffer:
            yield ("thinking", self.buffer)
        yield ("thinking_end", "")


def _closer_prefix_len(buf: str, closer: str) -> int:
    """Length of the longest suffix of *buf* that is a prefix of *closer*."""
    for k in range(min(len(closer) - 1, len(buf)), 0, -1):
        if closer.startswith(buf[-k:]):
            return k
    return 0
