"""Async pub/sub EventBus for request lifecycle observability.

The chunk callback carries the content of a response; the bus carries
what happened to the request (started, tool executed, depth limit hit,
cancelled, ...) for loggers, metrics sinks or UIs that want it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from llm_relay.types import EventType, RelayEvent

_logger = logging.getLogger(__name__)

# Subscribing to this key receives every event
_WILDCARD = "*"

Handler = Callable[[RelayEvent], Any]


class EventBus:
    """Lightweight async pub/sub bus.

    Handlers may be sync or async.  ``emit()`` fans out to the handlers of
    the event type plus wildcard handlers concurrently; a failing handler
    is logged and never affects the request that emitted the event.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: deque[RelayEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        self._handlers.setdefault(self._key(event_type), []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        handlers = self._handlers.get(self._key(event_type), [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass

    async def emit(self, event: RelayEvent) -> None:
        self._history.append(event)

        handlers = list(self._handlers.get(self._key(event.type), []))
        handlers.extend(self._handlers.get(_WILDCARD, []))
        if not handlers:
            return
        await asyncio.gather(
            *(self._call_handler(h, event) for h in handlers),
            return_exceptions=True,
        )

    async def publish(self, event_type: EventType, **data: Any) -> None:
        """Shorthand for ``emit(RelayEvent(event_type, data))``."""
        await self.emit(RelayEvent(type=event_type, data=data))

    @property
    def history(self) -> list[RelayEvent]:
        return list(self._history)

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    @staticmethod
    def _key(event_type: EventType | str) -> str:
        if isinstance(event_type, EventType):
            return event_type.value
        return str(event_type)

    @staticmethod
    async def _call_handler(handler: Handler, event: RelayEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
