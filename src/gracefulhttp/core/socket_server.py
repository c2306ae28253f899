"""
=============================================================================
LISTENING SOCKET AND SERVER EVENTS
=============================================================================

SocketServer owns the asyncio listening server and publishes everything
that happens on it. Nothing here knows about request handlers or
lifecycle; the ServerLifecycle (server.py) and the trackers subscribe.

    loop.create_server(ProtocolSelector)
              │ accept
              ▼
    ┌───────────────────┐   connections  ┌──────────────────────────┐
    │   SocketServer    │ ─────────────► │ ConnectionTracker        │
    │                   │   requests     ├──────────────────────────┤
    │ open_connection() │ ─────────────► │ RequestTracker, dispatch │
    │                   │   sessions     ├──────────────────────────┤
    │                   │ ─────────────► │ SessionTracker (HTTP/2)  │
    └───────────────────┘                └──────────────────────────┘

All three are Broadcasters: a subscriber only sees events emitted while it
is subscribed. That is what lets a tracker unsubscribe and then take a
final, stable snapshot of what it tracks.

Socket options:
    SO_REUSEADDR   restart without waiting for TIME_WAIT (asyncio default
                   on Unix, passed explicitly)
    TCP_NODELAY    set per connection when nagle=False

https with accept_plaintext=True listens through SniffingServer instead: the
first byte of each connection picks TLS (0x16, a ClientHello) or plain
TCP, so plain HTTP requests sent to the https port can be redirected.

=============================================================================
"""

import asyncio
import errno
import logging
import socket
import ssl
from typing import Optional, Set, Union

from ..errors import AddressInUseError, BindError, PermissionDeniedError
from ..publisher import Broadcaster
from .connection import Connection
from .exchange import Exchange
from .http2 import HTTP2Session
from .tls import ProtocolSelector

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUEST_SIZE = 10 * 1024 * 1024


class SocketServer:
    """
    Listening socket plus the connection / request / session publishers.

    Usage:
        server = SocketServer()
        server.requests.subscribe(next=handle_exchange)
        port = await server.listen(0, "127.0.0.1")
        ...
        await server.close()
    """

    def __init__(
        self,
        ssl_context: Optional[ssl.SSLContext] = None,
        http2: bool = False,
        http1_allowed: bool = True,
        nagle: bool = True,
        max_request_size: int = DEFAULT_MAX_REQUEST_SIZE,
        accept_plaintext: bool = False,
    ):
        self.ssl_context = ssl_context
        # with ssl_context: let plain HTTP in too (connection.encrypted is False)
        self.accept_plaintext = accept_plaintext
        self.http2 = http2
        self.http1_allowed = http1_allowed
        self.nagle = nagle
        self.max_request_size = max_request_size

        self.connections: Broadcaster[Connection] = Broadcaster()
        self.requests: Broadcaster[Exchange] = Broadcaster()
        self.sessions: Broadcaster[HTTP2Session] = Broadcaster()

        self._server: Optional[Union[asyncio.AbstractServer, "SniffingServer"]] = None
        self._live: Set[Connection] = set()
        self.port = 0

    @property
    def encrypted(self) -> bool:
        return self.ssl_context is not None

    @property
    def listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def connection_count(self) -> int:
        return len(self._live)

    async def listen(self, port: int, ip: str) -> int:
        """
        Bind ip:port and start accepting. Returns the bound port.

        Raises:
            AddressInUseError: Something else listens there.
            PermissionDeniedError: Not allowed to bind (privileged port).
            BindError: Any other bind failure.
        """
        loop = asyncio.get_running_loop()
        try:
            if self.ssl_context is not None and self.accept_plaintext:
                self._server = SniffingServer(
                    _bind(port, ip),
                    lambda: ProtocolSelector(self),
                    self.ssl_context,
                )
            else:
                self._server = await loop.create_server(
                    lambda: ProtocolSelector(self),
                    host=ip or None,
                    port=port,
                    ssl=self.ssl_context,
                    reuse_address=True,
                )
        except OSError as exc:
            raise _bind_error(exc, port, ip) from exc

        sockets = self._server.sockets or ()
        self.port = sockets[0].getsockname()[1] if sockets else port
        logger.debug(f"listening on {ip}:{self.port}")
        return self.port

    def open_connection(self, transport: asyncio.BaseTransport) -> Connection:
        """Called by the protocols from connection_made()."""
        address = transport.get_extra_info("peername") or ("", 0)
        connection = Connection(transport=transport, address=tuple(address[:2]))
        if not self.nagle:
            connection.set_no_delay()
        self._live.add(connection)
        connection.on_close(self._live.discard)
        logger.debug(f"[{connection.id}] connection from {connection.client_ip}")
        self.connections.emit(connection)
        return connection

    async def close(self) -> None:
        """Stop accepting, drop remaining connections, wait until closed."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        remaining = list(self._live)
        if remaining:
            await asyncio.gather(*(connection.destroy("server closed") for connection in remaining))
        await server.wait_closed()
        logger.debug(f"stopped listening on port {self.port}")


# ─────────────────────────────────────────────────────────────────────────
# TLS AND PLAINTEXT ON ONE PORT
# ─────────────────────────────────────────────────────────────────────────

# first byte of a TLS record carrying a handshake (ClientHello)
TLS_HANDSHAKE = b"\x16"
SNIFF_TIMEOUT = 10.0


def _bind(port: int, ip: str) -> socket.socket:
    family = socket.AF_INET6 if ":" in ip else socket.AF_INET
    sock = socket.create_server((ip or "", port), family=family, reuse_port=False)
    sock.setblocking(False)
    return sock


async def _peek(loop: asyncio.AbstractEventLoop, sock: socket.socket) -> bytes:
    """First byte the client sent, left in the socket buffer."""
    fd = sock.fileno()
    readable = loop.create_future()
    loop.add_reader(fd, lambda: readable.done() or readable.set_result(None))
    try:
        await readable
    finally:
        loop.remove_reader(fd)
    return sock.recv(1, socket.MSG_PEEK)


class SniffingServer:
    """
    Accept loop deciding per connection between TLS and plain TCP.

    The first byte is peeked, not read: a ClientHello starts the TLS
    handshake as usual, anything else reaches the protocol unencrypted.
    Quacks like the asyncio server SocketServer uses otherwise.
    """

    def __init__(self, sock: socket.socket, protocol_factory, ssl_context: ssl.SSLContext):
        self.sockets = (sock,)
        self._sock = sock
        self._protocol_factory = protocol_factory
        self._ssl_context = ssl_context
        self._loop = asyncio.get_running_loop()
        self._opening: Set["asyncio.Task[None]"] = set()
        self._accepting = self._loop.create_task(self._accept_forever())

    def is_serving(self) -> bool:
        return not self._accepting.done()

    def close(self) -> None:
        self._accepting.cancel()
        for task in list(self._opening):
            task.cancel()

    async def wait_closed(self) -> None:
        await asyncio.gather(self._accepting, *self._opening, return_exceptions=True)
        self._sock.close()

    async def _accept_forever(self) -> None:
        while True:
            client, _ = await self._loop.sock_accept(self._sock)
            task = self._loop.create_task(self._open(client))
            self._opening.add(task)
            task.add_done_callback(self._opening.discard)

    async def _open(self, client: socket.socket) -> None:
        try:
            first = await asyncio.wait_for(_peek(self._loop, client), SNIFF_TIMEOUT)
            if not first:
                client.close()
                return
            ssl_context = self._ssl_context if first == TLS_HANDSHAKE else None
            await self._loop.connect_accepted_socket(self._protocol_factory, client, ssl=ssl_context)
        except (OSError, asyncio.TimeoutError) as exc:
            # ssl.SSLError is an OSError
            logger.debug(f"connection dropped before it opened: {exc!r}")
            client.close()
        except asyncio.CancelledError:
            client.close()
            raise


def _bind_error(exc: OSError, port: int, ip: str) -> BindError:
    if exc.errno == errno.EADDRINUSE:
        return AddressInUseError(f"address {ip}:{port} already in use", port=port, ip=ip, errno_code=exc.errno)
    if exc.errno == errno.EACCES:
        return PermissionDeniedError(f"permission denied to listen on {ip}:{port}", port=port, ip=ip, errno_code=exc.errno)
    return BindError(f"cannot listen on {ip}:{port}: {exc.strerror or exc}", port=port, ip=ip, errno_code=exc.errno or 0)
