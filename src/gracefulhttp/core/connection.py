"""
=============================================================================
TRACKED CLIENT CONNECTION
=============================================================================

Wraps one accepted asyncio transport. The socket server emits each new
Connection on its `connections` publisher; the ConnectionTracker keeps the
live ones and destroys them when the server stops.

    ┌──────────┐  accept   ┌────────────┐  emit   ┌───────────────────┐
    │ listener │ ────────► │ Connection │ ──────► │ ConnectionTracker │
    └──────────┘           └─────┬──────┘         └───────────────────┘
                                 │ connection_lost
                                 ▼
                          closed future done → leaves the live set

destroy() first tries a graceful close (buffered bytes, like a 503 head
written during shutdown, are flushed), then aborts if the peer does not
let go within DESTROY_GRACE seconds.

=============================================================================
"""

import asyncio
import logging
import socket
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

DESTROY_GRACE = 1.0


class ConnectionState(Enum):
    NEW = "new"                # accepted, nothing read yet
    READING = "reading"        # reading a request head/body
    PROCESSING = "processing"  # waiting for the handler's response
    WRITING = "writing"        # response being written
    KEEP_ALIVE = "keep_alive"  # response done, waiting for the next request
    CLOSING = "closing"        # close() called, flushing
    CLOSED = "closed"          # transport gone


@dataclass(eq=False)
class Connection:
    """
    One client connection.

    Attributes:
        transport: The asyncio transport.
        address: Client's (ip, port) tuple.
        id: Short identifier for log lines.
    """

    transport: asyncio.Transport
    address: Tuple[str, int] = ("", 0)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    requests_handled: int = 0
    _closed: "asyncio.Future[Optional[BaseException]]" = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._closed = asyncio.get_running_loop().create_future()

    @property
    def client_ip(self) -> str:
        return self.address[0] if self.address else ""

    @property
    def encrypted(self) -> bool:
        return self.transport.get_extra_info("ssl_object") is not None

    @property
    def destroyed(self) -> bool:
        return self._closed.done()

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def on_close(self, callback: Callable[["Connection"], Any]) -> None:
        self._closed.add_done_callback(lambda _: callback(self))

    async def wait_closed(self) -> Optional[BaseException]:
        return await asyncio.shield(self._closed)

    def set_no_delay(self) -> None:
        sock = self.transport.get_extra_info("socket")
        if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    def write(self, data: bytes) -> bool:
        """Queue bytes for sending; False once the connection is closing."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return False
        self.touch()
        self.transport.write(data)
        return True

    def close(self) -> None:
        """Graceful close: pending writes are flushed first."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self.state = ConnectionState.CLOSING
        self.transport.close()

    def lost(self, exc: Optional[BaseException]) -> None:
        """Called by the protocol from connection_lost()."""
        self.state = ConnectionState.CLOSED
        if not self._closed.done():
            self._closed.set_result(exc)

    async def destroy(self, reason: Any = None) -> None:
        """Close and wait until the transport is really gone."""
        if self.destroyed:
            return
        logger.debug(f"[{self.id}] destroying connection ({reason})")
        self.close()
        try:
            await asyncio.wait_for(asyncio.shield(self._closed), DESTROY_GRACE)
        except asyncio.TimeoutError:
            logger.debug(f"[{self.id}] peer did not close in time, aborting")
            self.transport.abort()
            await asyncio.shield(self._closed)
