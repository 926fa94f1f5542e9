"""Server-sent-event frame reader for streaming provider responses."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from llm_relay.cancellation import CancelToken

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def parse_data_line(raw_line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not raw_line.startswith("data:"):
        return None
    return raw_line[5:].strip()


async def iter_sse_json(
    resp: httpx.Response,
    cancel_token: CancelToken | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield each JSON object carried by a ``data:`` frame of *resp*.

    Stops at the ``[DONE]`` sentinel, at end of body, or as soon as
    *cancel_token* is cancelled.  A frame that is not valid JSON is logged
    and skipped; ``event:``/``id:`` lines and comments are ignored since
    every provider repeats the event name inside the JSON body.
    """
    async for raw_line in resp.aiter_lines():
        if cancel_token is not None and cancel_token.cancelled:
            _logger.debug("SSE read stopped: %s", cancel_token.reason)
            return
        data_str = parse_data_line(raw_line)
        if not data_str:
            continue
        if data_str == DONE_SENTINEL:
            return
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.warning("Skipping malformed SSE frame: %.200s", data_str)
            continue
        if not isinstance(data, dict):
            _logger.warning("Skipping non-object SSE frame: %.200s", data_str)
            continue
        yield data
