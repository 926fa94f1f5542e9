"""Shared machinery for provider stream adapters.

An adapter turns the decoded frames of one provider response into chunks.
Subclasses decide *what* a frame means; this base keeps the bookkeeping
that every family needs:

* text / thinking blocks get exactly one ``start`` before their first
  ``delta`` and one ``complete`` when they close;
* ``ResponseCreated`` and ``ResponseComplete`` are emitted at most once;
* tool-call argument fragments are buffered until the call closes.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from llm_relay.chunks import (
    BaseChunk,
    ResponseComplete,
    ResponseCreated,
    TextComplete,
    TextDelta,
    TextStart,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStart,
    ToolPending,
    WebSearchComplete,
    WebSearchInProgress,
    snapshot_tools,
)
from llm_relay.types import (
    ToolCallRecord,
    Usage,
    WebSearchItem,
    WebSearchResults,
    new_call_id,
)

_logger = logging.getLogger(__name__)


def parse_tool_arguments_json(raw: str) -> dict[str, Any]:
    """Parse concatenated tool-call arguments.

    Empty input is ``{}``.  Anything that is not a JSON object is wrapped as
    ``{"raw": raw}`` so one bad call never fails the whole stream.
    """
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        _logger.warning("Tool arguments are not valid JSON: %.200s", raw)
        return {"raw": raw}
    if isinstance(parsed, dict):
        return parsed
    return {"raw": raw}


class ToolCallBuffer:
    """Accumulate streamed tool-call fragments keyed by an index.

    A fragment carrying a name for an unseen index opens a new call; later
    fragments for the same index append to its argument string.
    """

    def __init__(self, id_prefix: str = "call") -> None:
        self._calls: dict[int, dict[str, str]] = {}
        self._id_prefix = id_prefix

    def feed(
        self,
        index: int | None,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        if index is None:
            if name or not self._calls:
                index = len(self._calls)
            else:
                index = max(self._calls)
        entry = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if call_id:
            entry["id"] = call_id
        if name:
            entry["name"] = name
        if arguments:
            entry["arguments"] += arguments

    def has_calls(self) -> bool:
        return bool(self._calls)

    def pop(self, index: int) -> ToolCallRecord | None:
        """Close the call at *index* and return its record."""
        entry = self._calls.pop(index, None)
        if entry is None:
            return None
        return self._to_record(index, entry)

    def flush(self) -> list[ToolCallRecord]:
        """Close every buffered call, in index order."""
        records = []
        for index in sorted(self._calls):
            record = self._to_record(index, self._calls[index])
            if record is not None:
                records.append(record)
        self._calls.clear()
        return records

    def _to_record(self, index: int, entry: dict[str, str]) -> ToolCallRecord | None:
        if not entry["name"]:
            _logger.warning("Dropping tool call %d without a name", index)
            return None
        return ToolCallRecord(
            id=entry["id"] or new_call_id(self._id_prefix),
            name=entry["name"],
            arguments=parse_tool_arguments_json(entry["arguments"]),
        )


class ChunkAdapter(ABC):
    """Base class for provider stream adapters.

    One adapter instance handles exactly one provider response.

    ``cumulative`` marks families whose text and thinking deltas carry the
    whole string accumulated so far rather than the new fragment.
    """

    provider: str = ""
    cumulative: bool = False

    def __init__(self) -> None:
        self._created = False
        self._completed = False
        self._text_open = False
        self._text = ""
        self._thinking_open = False
        self._thinking = ""
        self._thinking_started_at = 0.0
        self._usage: Usage | None = None
        self._citations: list[WebSearchItem] = []
        self._search_announced = False
        self._search_reported = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @abstractmethod
    def feed(self, frame: dict[str, Any]) -> list[BaseChunk]:
        """Translate one decoded stream frame into chunks."""

    @abstractmethod
    def adapt_response(self, body: dict[str, Any]) -> list[BaseChunk]:
        """Translate a complete (non-streaming) response body into chunks."""

    def safe_feed(self, frame: dict[str, Any]) -> list[BaseChunk]:
        """:meth:`feed` that logs and skips a frame it cannot interpret."""
        try:
            return self.feed(frame)
        except (KeyError, TypeError, ValueError, AttributeError, IndexError):
            _logger.warning(
                "%s adapter skipped malformed frame: %.200r",
                self.provider or type(self).__name__, frame, exc_info=True,
            )
            return []

    def finish(self) -> list[BaseChunk]:
        """Close whatever is still open at end of stream.  Idempotent."""
        out = self._close_blocks()
        out += self._report_search()
        out += self._complete()
        return out

    @property
    def usage(self) -> Usage | None:
        return self._usage

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _ensure_created(self) -> list[BaseChunk]:
        if self._created:
            return []
        self._created = True
        return [ResponseCreated()]

    def _open_text(self) -> list[BaseChunk]:
        if self._text_open:
            return []
        out = self._close_thinking()
        self._text_open = True
        self._text = ""
        out.append(TextStart())
        return out

    def _text_delta(self, fragment: str) -> list[BaseChunk]:
        if not fragment:
            return []
        out = self._open_text()
        self._text += fragment
        out.append(TextDelta(text=self._text if self.cumulative else fragment))
        return out

    def _close_text(self) -> list[BaseChunk]:
        if not self._text_open:
            return []
        self._text_open = False
        return [TextComplete(text=self._text)]

    def _open_thinking(self) -> list[BaseChunk]:
        if self._thinking_open:
            return []
        out = self._close_text()
        self._thinking_open = True
        self._thinking = ""
        self._thinking_started_at = time.monotonic()
        out.append(ThinkingStart())
        return out

    def _thinking_delta(self, fragment: str) -> list[BaseChunk]:
        if not fragment:
            return []
        out = self._open_thinking()
        self._thinking += fragment
        out.append(ThinkingDelta(
            text=self._thinking if self.cumulative else fragment,
            thinking_millsec=self._thinking_elapsed(),
        ))
        return out

    def _close_thinking(self) -> list[BaseChunk]:
        if not self._thinking_open:
            return []
        self._thinking_open = False
        return [ThinkingComplete(
            text=self._thinking, thinking_millsec=self._thinking_elapsed(),
        )]

    def _close_blocks(self) -> list[BaseChunk]:
        return self._close_thinking() + self._close_text()

    def _thinking_elapsed(self) -> int:
        return int((time.monotonic() - self._thinking_started_at) * 1000)

    def _tool_pending(self, records: list[ToolCallRecord]) -> list[BaseChunk]:
        if not records:
            return []
        return [ToolPending(tools=snapshot_tools(records))]

    def _add_citation(self, url: str | None, title: str | None = "", snippet: str | None = "") -> list[BaseChunk]:
        if not url or any(c.url == url for c in self._citations):
            return []
        self._citations.append(WebSearchItem(url=url, title=title or "", snippet=snippet or ""))
        return self._announce_search()

    def _announce_search(self) -> list[BaseChunk]:
        if self._search_announced:
            return []
        self._search_announced = True
        return [WebSearchInProgress()]

    def _report_search(self) -> list[BaseChunk]:
        if not self._citations or self._search_reported:
            return []
        self._search_reported = True
        return [WebSearchComplete(results=WebSearchResults(
            source=self.provider, items=tuple(self._citations),
        ))]

    def _complete(self) -> list[BaseChunk]:
        if self._completed:
            return []
        self._completed = True
        out = self._ensure_created()
        out.append(ResponseComplete(usage=self._usage))
        return out
