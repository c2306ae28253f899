"""
=============================================================================
PUBLISHER: ONE PUSH-STREAM ABSTRACTION
=============================================================================

Everything that produces values over time goes through Publisher:

    response bodies        Publisher[bytes]    (string, bytes, file, async gen)
    request bodies         Publisher[bytes]    (fed by the protocol)
    server events          Broadcaster         (connection / request / session)
    SSE client streams     Publisher[str]

Contract:

    subscription = publisher.subscribe(next=..., error=..., complete=...)
    subscription.unsubscribe()

    - after error() or complete() no more notifications arrive
    - unsubscribe() stops delivery and runs the producer's teardown once
    - unsubscribe() is idempotent

Adapters (from_value, from_async_iterable, from_file) live here, at the few
places where outside data enters, instead of being re-invented per caller.

=============================================================================
"""

import asyncio
import logging
from typing import (
    IO,
    Any,
    AsyncIterable,
    Callable,
    Generic,
    List,
    Optional,
    TypeVar,
    Union,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Teardown = Optional[Callable[[], None]]


class Subscription:
    def __init__(self) -> None:
        self.closed = False
        self._teardown: Teardown = None

    def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        teardown, self._teardown = self._teardown, None
        if teardown is not None:
            teardown()


class Observer(Generic[T]):
    """Guards the callbacks of one subscriber."""

    def __init__(
        self,
        subscription: Subscription,
        next: Optional[Callable[[T], None]] = None,
        error: Optional[Callable[[BaseException], None]] = None,
        complete: Optional[Callable[[], None]] = None,
    ):
        self._subscription = subscription
        self._next = next
        self._error = error
        self._complete = complete

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    def next(self, value: T) -> None:
        if self.closed:
            return
        if self._next is not None:
            self._next(value)

    def error(self, exc: BaseException) -> None:
        if self.closed:
            return
        self._subscription.unsubscribe()
        if self._error is not None:
            self._error(exc)
        else:
            logger.error("unhandled publisher error", exc_info=exc)

    def complete(self) -> None:
        if self.closed:
            return
        self._subscription.unsubscribe()
        if self._complete is not None:
            self._complete()


class Publisher(Generic[T]):
    """
    Lazy push stream. Nothing happens until subscribe() is called.

    Args:
        producer: Called with an Observer on each subscribe. May return a
            teardown callable run when the subscription ends.
    """

    def __init__(self, producer: Callable[[Observer[T]], Teardown]):
        self._producer = producer

    def subscribe(
        self,
        next: Optional[Callable[[T], None]] = None,
        error: Optional[Callable[[BaseException], None]] = None,
        complete: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        subscription = Subscription()
        observer = Observer(subscription, next, error, complete)
        try:
            teardown = self._producer(observer)
        except Exception as exc:
            observer.error(exc)
            return subscription
        if subscription.closed:
            if teardown is not None:
                teardown()
        else:
            subscription._teardown = teardown
        return subscription

    # ─────────────────────────────────────────────────────────────────────
    # ADAPTERS
    # ─────────────────────────────────────────────────────────────────────

    @classmethod
    def from_value(cls, value: Union[str, bytes, None]) -> "Publisher[Any]":
        """Emit value once (nothing for None or empty) then complete."""

        def producer(observer: Observer[Any]) -> Teardown:
            if value:
                observer.next(value)
            observer.complete()
            return None

        return cls(producer)

    @classmethod
    def from_async_iterable(cls, iterable: AsyncIterable[T]) -> "Publisher[T]":
        """Pump an async iterable in a task; unsubscribe cancels the task."""

        def producer(observer: Observer[T]) -> Teardown:
            async def pump() -> None:
                try:
                    async for chunk in iterable:
                        if observer.closed:
                            break
                        observer.next(chunk)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    observer.error(exc)
                    return
                observer.complete()

            task = asyncio.ensure_future(pump())
            return task.cancel

        return cls(producer)

    @classmethod
    def from_file(cls, fileobj: IO[bytes], chunk_size: int = 64 * 1024) -> "Publisher[bytes]":
        """Stream an open binary file; the file is closed when the stream ends."""

        async def chunks() -> AsyncIterable[bytes]:
            try:
                while True:
                    chunk = await asyncio.to_thread(fileobj.read, chunk_size)
                    if not chunk:
                        break
                    yield chunk
            finally:
                fileobj.close()

        def producer(observer: Observer[bytes]) -> Teardown:
            inner = cls.from_async_iterable(chunks()).subscribe(
                next=observer.next, error=observer.error, complete=observer.complete,
            )

            def teardown() -> None:
                inner.unsubscribe()
                if not fileobj.closed:
                    fileobj.close()

            return teardown

        return cls(producer)


class Broadcaster(Publisher[T]):
    """
    Hot publisher: emit() fans a value out to everyone subscribed right now.

    Late subscribers see only later values. The server exposes its
    connection / request / session events this way so trackers can stop
    listening (unsubscribe) before they snapshot their live set.
    """

    def __init__(self) -> None:
        self._observers: List[Observer[T]] = []
        super().__init__(self._add)

    def _add(self, observer: Observer[T]) -> Teardown:
        self._observers.append(observer)

        def remove() -> None:
            self._observers = [o for o in self._observers if o is not observer]

        return remove

    @property
    def subscriber_count(self) -> int:
        return len(self._observers)

    def emit(self, value: T) -> None:
        for observer in list(self._observers):
            observer.next(value)

    def complete(self) -> None:
        for observer in list(self._observers):
            observer.complete()


def is_publisher(value: Any) -> bool:
    return isinstance(value, Publisher)


def to_publisher(body: Any) -> Publisher[Any]:
    """Adapt any supported response body to a Publisher."""
    if isinstance(body, Publisher):
        return body
    if body is None or isinstance(body, (str, bytes, bytearray, memoryview)):
        return Publisher.from_value(bytes(body) if isinstance(body, (bytearray, memoryview)) else body)
    if hasattr(body, "__aiter__"):
        return Publisher.from_async_iterable(body)
    if hasattr(body, "read"):
        return Publisher.from_file(body)
    raise TypeError(f"unsupported body type: {type(body).__name__}")


async def read_body(body: Optional[Publisher[Any]]) -> bytes:
    """Collect a whole body into bytes (empty when body is None)."""
    if body is None:
        return b""
    loop = asyncio.get_running_loop()
    done: "asyncio.Future[bytes]" = loop.create_future()
    chunks: List[bytes] = []

    def on_next(chunk: Any) -> None:
        chunks.append(chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk))

    def on_error(exc: BaseException) -> None:
        if not done.done():
            done.set_exception(exc)

    def on_complete() -> None:
        if not done.done():
            done.set_result(b"".join(chunks))

    subscription = body.subscribe(next=on_next, error=on_error, complete=on_complete)
    try:
        return await done
    finally:
        subscription.unsubscribe()


async def read_body_as_string(body: Optional[Publisher[Any]], encoding: str = "utf-8") -> str:
    return (await read_body(body)).decode(encoding)
