"""
=============================================================================
COOPERATIVE CANCELLATION
=============================================================================

A CancellationSource decides, a CancellationToken observes:

    ┌──────────────────────┐   cancel(reason)   ┌──────────────────────────┐
    │  CancellationSource  │ ─────────────────► │ registered callbacks run │
    │  (owned by caller)   │                    │ once each, in order      │
    └──────────┬───────────┘                    └──────────────────────────┘
               │ .token
               ▼
    ┌──────────────────────┐
    │  CancellationToken   │  cancellation_requested, reason,
    │  (handed to others)  │  register(), throw_if_requested(), wait()
    └──────────────────────┘

Tokens compose: compose_cancellation_token(a, b) is cancelled as soon as
a OR b is. The server uses this to build each request's token out of the
server-wide token and the request's own "client went away" token.

Cancellation is cooperative. Firing a token never interrupts code by
itself; code either polls throw_if_requested() at safe points, or awaits
something racing token.wait() (see operation.py).

=============================================================================
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

from .errors import CancelError

logger = logging.getLogger(__name__)

CancelCallback = Callable[[Any], Any]


class Registration:
    """Handle returned by register(); unregister() is idempotent."""

    def __init__(self, callback: CancelCallback, source: Optional["CancellationSource"] = None):
        self.callback = callback
        self._source = source

    @property
    def active(self) -> bool:
        return self._source is not None

    def unregister(self) -> None:
        source, self._source = self._source, None
        if source is not None:
            source._remove(self)


class CancellationToken:
    """
    Read-only view over a CancellationSource.

    Once cancellation_requested is True it stays True.
    """

    def __init__(self, source: "CancellationSource"):
        self._source = source

    @property
    def cancellation_requested(self) -> bool:
        return self._source.cancellation_requested

    @property
    def reason(self) -> Any:
        return self._source.reason

    def register(self, callback: CancelCallback) -> Registration:
        """
        Call callback(reason) when cancellation is requested.

        Registering the same callback twice returns the first registration.
        Registering after cancellation returns an inert registration and the
        callback is not called.

        Raises:
            TypeError: If callback is not callable.
        """
        return self._source._register(callback)

    def throw_if_requested(self) -> None:
        """Raise CancelError(reason) when cancellation was requested."""
        if self.cancellation_requested:
            raise CancelError(self.reason)

    def wait(self) -> "asyncio.Future[Any]":
        """
        Future resolved with the reason once cancellation is requested.

        Cancelling the returned future drops the underlying registration.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self.cancellation_requested:
            future.set_result(self.reason)
            return future

        def resolve(reason: Any) -> None:
            if not future.done():
                future.set_result(reason)

        registration = self.register(resolve)
        future.add_done_callback(lambda _: registration.unregister())
        return future

    def __repr__(self) -> str:
        state = f"requested reason={self.reason!r}" if self.cancellation_requested else "pending"
        return f"<{type(self).__name__} {state}>"


class CancellationSource:
    """
    Owns the cancellation state and the registered callbacks.

    Example:
        source = CancellationSource()
        source.token.register(lambda reason: print("stopped:", reason))
        source.cancel("shutdown")     # prints once
        source.cancel("again")        # no-op, reason stays "shutdown"
    """

    def __init__(self) -> None:
        self._registrations: List[Registration] = []
        self._requested = False
        self._reason: Any = None
        # tasks spawned by coroutine callbacks, kept alive until done
        self._pending: Set["asyncio.Future[Any]"] = set()
        self.token = CancellationToken(self)

    @property
    def cancellation_requested(self) -> bool:
        return self._requested

    @property
    def reason(self) -> Any:
        return self._reason

    def _register(self, callback: CancelCallback) -> Registration:
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {callback!r}")
        if self._requested:
            return Registration(callback)
        for registration in self._registrations:
            if registration.callback == callback:
                return registration
        registration = Registration(callback, self)
        self._registrations.append(registration)
        return registration

    def _remove(self, registration: Registration) -> None:
        self._registrations = [r for r in self._registrations if r is not registration]

    def cancel(self, reason: Any = None) -> None:
        """
        Request cancellation. Only the first call has an effect.

        Callbacks present when cancel() starts are each called exactly once,
        even if one of them unregisters another. Never raises: a failing
        callback is logged and delivery goes on.
        """
        if self._requested:
            return
        self._requested = True
        self._reason = reason

        snapshot, self._registrations = self._registrations, []
        for registration in snapshot:
            registration._source = None
            try:
                result = registration.callback(reason)
            except Exception:
                logger.exception("cancellation callback failed")
                continue
            if inspect.isawaitable(result):
                self._track(result)

    def _track(self, awaitable: Any) -> None:
        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)

        def done(fut: "asyncio.Future[Any]") -> None:
            self._pending.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.error("cancellation callback failed", exc_info=fut.exception())

        future.add_done_callback(done)


def create_cancellation_token() -> CancellationToken:
    """A token that is never cancelled; the default when a caller passes none."""
    # nobody keeps the source, so nobody can cancel it
    return CancellationSource().token


class _ComposedRegistration(Registration):
    def __init__(self, callback: CancelCallback, owner: "ComposedCancellationToken"):
        super().__init__(callback)
        self._owner: Optional[ComposedCancellationToken] = owner
        self.parts: List[Registration] = []
        self.fired = False

    @property
    def active(self) -> bool:
        return self._owner is not None

    def unregister(self) -> None:
        owner, self._owner = self._owner, None
        if owner is None:
            return
        owner._registrations = [r for r in owner._registrations if r is not self]
        for part in self.parts:
            part.unregister()


class ComposedCancellationToken(CancellationToken):
    """
    Cancelled the instant any of the composed tokens is.

    reason is the reason of the first composed token (in composition order)
    that reports cancellation.
    """

    def __init__(self, tokens: List[CancellationToken]):
        self._tokens = tokens
        self._registrations: List[_ComposedRegistration] = []

    @property
    def cancellation_requested(self) -> bool:
        return any(token.cancellation_requested for token in self._tokens)

    @property
    def reason(self) -> Any:
        for token in self._tokens:
            if token.cancellation_requested:
                return token.reason
        return None

    def register(self, callback: CancelCallback) -> Registration:
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {callback!r}")
        # bound methods are new objects on each access: compare, do not use id()
        for existing in self._registrations:
            if existing.callback == callback:
                return existing
        if self.cancellation_requested:
            return Registration(callback)

        registration = _ComposedRegistration(callback, self)

        def forward(reason: Any) -> Any:
            # the first part to fire delivers; the others are dropped
            if registration.fired:
                return None
            registration.fired = True
            registration.unregister()
            return callback(reason)

        self._registrations.append(registration)
        registration.parts = [token.register(forward) for token in self._tokens]
        return registration


def compose_cancellation_token(*tokens: CancellationToken) -> CancellationToken:
    """Collapse N tokens into one. A single token is returned as is."""
    if len(tokens) == 1:
        return tokens[0]
    return ComposedCancellationToken(list(tokens))
