"""Cancellation tokens and the request-id registry.

A :class:`CancelToken` is an ``asyncio.Event`` with a reason attached.
Tokens form a tree: a derived token is cancelled whenever its parent is,
which is how per-request timeouts and per-tool cancellation are built
without a second mechanism.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from llm_relay.errors import RequestCancelled

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation signal for one request (or a part of one)."""

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason = ""
        self._timed_out = False
        self._callbacks: list[Callable[[CancelToken], Any]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._parent = parent
        if parent is not None:
            if parent.cancelled:
                self.cancel(parent.reason)
            else:
                parent.add_callback(self._on_parent_cancel)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the token.  Further calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        self._clear_timer()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                _logger.exception("Cancel callback %r raised", callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    # ------------------------------------------------------------------
    # Callbacks / derivation
    # ------------------------------------------------------------------

    def add_callback(self, callback: Callable[[CancelToken], Any]) -> None:
        """Call *callback* on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback(self)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[CancelToken], Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def child(self) -> CancelToken:
        """Return a token cancelled together with this one."""
        return CancelToken(parent=self)

    def with_timeout(self, seconds: float | None) -> CancelToken:
        """Return a derived token that also cancels itself after *seconds*.

        Must be called from a running event loop.  With ``seconds`` of
        ``None`` or ``<= 0`` this is the same as :meth:`child`.
        """
        token = self.child()
        if seconds and seconds > 0 and not token.cancelled:
            loop = asyncio.get_running_loop()
            token._timer = loop.call_later(seconds, token._expire, seconds)
        return token

    def dispose(self) -> None:
        """Detach from the parent and stop any pending timer."""
        self._clear_timer()
        if self._parent is not None:
            self._parent.remove_callback(self._on_parent_cancel)
            self._parent = None

    def _on_parent_cancel(self, parent: CancelToken) -> None:
        self.cancel(parent.reason)

    def _expire(self, seconds: float) -> None:
        self._timer = None
        if not self.cancelled:
            self._timed_out = True
            self.cancel(f"timeout after {seconds:g}s")

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ------------------------------------------------------------------
    # Racing
    # ------------------------------------------------------------------

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the token is cancelled first.

        Raises :class:`RequestCancelled` when the token wins the race; the
        abandoned task is cancelled and awaited.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, RequestCancelled):
            pass
        except Exception:
            _logger.debug("Abandoned task raised after cancellation", exc_info=True)
        raise RequestCancelled(self._reason)

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self.cancelled else "active"
        return f"<CancelToken {state}>"


class CancellationRegistry:
    """Maps logical request ids to their active cancellation tokens.

    Owned by the orchestration layer and passed to whoever needs it, so a
    "stop" action can cancel a request by id.  Entries are removed on
    completion (:meth:`release`) or on cancellation.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancelToken] = {}

    def register(self, request_id: str, token: CancelToken | None = None) -> CancelToken:
        """Track *token* under *request_id*.

        A request already registered under the same id is cancelled first.
        """
        existing = self._tokens.get(request_id)
        if existing is not None and existing is not token:
            _logger.info("Request %s superseded, cancelling previous run", request_id)
            existing.cancel("superseded by a new request")
        token = token or CancelToken()
        self._tokens[request_id] = token
        return token

    def cancel(self, request_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel and forget the request.  Returns False for unknown ids."""
        token = self._tokens.pop(request_id, None)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, request_id: str, token: CancelToken | None = None) -> None:
        """Forget *request_id* without cancelling it.

        When *token* is given the entry is only removed if it still maps to
        that token, so a finishing run never evicts its replacement.
        """
        current = self._tokens.get(request_id)
        if current is None:
            return
        if token is None or current is token:
            del self._tokens[request_id]

    def cancel_all(self, reason: str = "shutdown") -> None:
        tokens, self._tokens = self._tokens, {}
        for token in tokens.values():
            token.cancel(reason)

    def get(self, request_id: str) -> CancelToken | None:
        return self._tokens.get(request_id)

    @property
    def active_ids(self) -> list[str]:
        return list(self._tokens.keys())

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
