"""
=============================================================================
CANCELLABLE AND STOPPABLE OPERATIONS
=============================================================================

create_operation(token, start)
    Run start() and race it against the token. Token first -> CancelError,
    and the task running start() is cancelled.

create_stoppable_operation(token, start, stop)
    Same race, plus a release step. Whatever start() opened, stop(value,
    reason) closes, exactly once, whichever of these happens first:

        token fires while start() is running   -> wait start, then stop
        token fires after start() resolved     -> stop
        someone calls operation.stop(reason)   -> stop
        start() raised                         -> nothing to release

    The listener uses this so that a server cancelled during start never
    leaves an orphan socket behind.

=============================================================================
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Generator, Iterable, Optional, TypeVar

from .cancellation import CancellationToken, create_cancellation_token
from .errors import CancelError

T = TypeVar("T")


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def create_operation(
    cancellation_token: Optional[CancellationToken],
    start: Callable[[], Any],
) -> Any:
    """
    Await start() unless the token fires first.

    Raises:
        CancelError: The token was (or became) cancelled before start() finished.
    """
    token = cancellation_token or create_cancellation_token()
    token.throw_if_requested()

    task = asyncio.ensure_future(_call(start))
    cancelled = token.wait()
    try:
        await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if not cancelled.done():
            cancelled.cancel()

    if task.done():
        return task.result()
    task.cancel()
    raise CancelError(token.reason)


class StoppableOperation(Awaitable[Any]):
    """
    Result of create_stoppable_operation(). Await it to get start()'s value.

    stop(reason) can be called any number of times; the release function runs
    once and every caller awaits the same run.
    """

    def __init__(
        self,
        cancellation_token: CancellationToken,
        start: Callable[[], Any],
        stop: Callable[[Any, Any], Any],
    ):
        self._token = cancellation_token
        self._stop = stop
        self._stop_future: Optional["asyncio.Future[None]"] = None
        self._task = asyncio.ensure_future(_call(start))
        self._registration = cancellation_token.register(self._on_cancel)

    def _on_cancel(self, reason: Any) -> "asyncio.Future[None]":
        return self.stop(reason)

    def stop(self, reason: Any = None) -> "asyncio.Future[None]":
        if self._stop_future is None:
            self._registration.unregister()
            self._stop_future = asyncio.ensure_future(self._release(reason))
        return self._stop_future

    @property
    def stopped(self) -> bool:
        return self._stop_future is not None

    async def _release(self, reason: Any) -> None:
        await asyncio.wait({self._task})
        if self._task.cancelled() or self._task.exception() is not None:
            return
        await _call(self._stop, self._task.result(), reason)

    async def _result(self) -> Any:
        cancelled = self._token.wait()
        try:
            await asyncio.wait({self._task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not cancelled.done():
                cancelled.cancel()

        if self._token.cancellation_requested:
            await self.stop(self._token.reason)
            raise CancelError(self._token.reason)
        return self._task.result()

    def __await__(self) -> Generator[Any, None, Any]:
        return self._result().__await__()


def create_stoppable_operation(
    cancellation_token: Optional[CancellationToken],
    start: Callable[[], Any],
    stop: Callable[[Any, Any], Any],
) -> StoppableOperation:
    """
    Start start() now and guarantee stop(value, reason) runs at most once.

    Must be called from a running event loop.

    Raises:
        CancelError: The token is already cancelled (nothing is started).
    """
    token = cancellation_token or create_cancellation_token()
    token.throw_if_requested()
    return StoppableOperation(token, start, stop)


async def first_operation_matching(
    items: Iterable[T],
    start: Callable[[T], Any],
    predicate: Callable[[Any], bool],
) -> Any:
    """Run start(item) for each item in turn; return the first value matching predicate."""
    for item in items:
        value = await _call(start, item)
        if predicate(value):
            return value
    return None
