"""
=============================================================================
HTTP/2 SESSIONS (h2)
=============================================================================

HTTP/2 multiplexes many request streams over one TLS connection. The
framing state machine is the `h2` library's H2Connection; this module only
moves bytes between it and the asyncio transport:

    transport bytes ──► H2Connection.receive_data() ──► events
                                                         │
        RequestReceived  → new stream: Exchange emitted on server.requests
        DataReceived     → stream body fed, flow-control window returned
        StreamEnded      → stream body finished
        StreamReset      → client gave up on the stream
        WindowUpdated    → buffered response data may flow again
        ConnectionTerminated → client sent GOAWAY

    H2Connection.data_to_send() ──► transport.write()

Each connection is also an HTTP2Session emitted on server.sessions; the
SessionTracker closes them with GOAWAY(NO_ERROR) when the server stops.

Response data respects flow control: what the peer's window cannot take
yet stays in the stream's buffer until a WindowUpdated arrives.

=============================================================================
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from h2.config import H2Configuration
from h2.connection import H2Connection
from h2.errors import ErrorCodes
from h2.events import (
    ConnectionTerminated,
    DataReceived,
    RequestReceived,
    StreamEnded,
    StreamReset,
    WindowUpdated,
)
from h2.exceptions import ProtocolError

from ..http.headers import headers_from_pairs
from ..http.request import METHODS_WITH_BODY, RequestBody
from .connection import DESTROY_GRACE, Connection
from .exchange import Exchange, IncomingRequest, ResponseWriter

if TYPE_CHECKING:
    from .socket_server import SocketServer

logger = logging.getLogger(__name__)

# connection-specific headers are forbidden in HTTP/2 (RFC 7540 section 8.1.2.2)
_CONNECTION_HEADERS = {"connection", "keep-alive", "proxy-connection", "transfer-encoding", "upgrade"}


class HTTP2ResponseWriter(ResponseWriter):
    def __init__(self, protocol: "HTTP2Protocol", stream_id: int, method: str):
        super().__init__()
        self._protocol = protocol
        self.stream_id = stream_id
        self._method = method
        self._pending = bytearray()
        self._ending = False

    def _send_head(self) -> None:
        headers = [(":status", str(self.status))]
        headers.extend(
            (name, value) for name, value in self.headers.items() if name not in _CONNECTION_HEADERS
        )
        self._protocol.send_headers(self, headers)

    def _send_data(self, data: bytes) -> None:
        if self._method == "HEAD" or self._bodyless:
            return
        self._pending.extend(data)
        self.pump()

    def _finish(self, terminal: bool = False) -> None:
        self._ending = True
        self.pump()

    def _abort(self) -> None:
        self._protocol.reset_stream(self, ErrorCodes.CANCEL)

    def pump(self) -> None:
        """Send as much buffered data as the flow-control window allows."""
        if self.closed:
            return
        self._protocol.send_pending(self)


class HTTP2Session:
    """
    One HTTP/2 connection, as seen by the SessionTracker.

    close() says goodbye (GOAWAY) instead of cutting the TCP connection, so
    the client knows which streams were processed.
    """

    def __init__(self, protocol: "HTTP2Protocol"):
        self._protocol = protocol
        self._closed: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()

    @property
    def connection(self) -> Optional[Connection]:
        return self._protocol.connection

    @property
    def closed(self) -> bool:
        return self._closed.done()

    def on_close(self, callback: Callable[["HTTP2Session"], Any]) -> None:
        self._closed.add_done_callback(lambda _: callback(self))

    def _mark_closed(self) -> None:
        if not self._closed.done():
            self._closed.set_result(None)

    async def close(self, error_code: ErrorCodes = ErrorCodes.NO_ERROR) -> None:
        if self.closed:
            return
        self._protocol.goaway(error_code)
        try:
            await asyncio.wait_for(asyncio.shield(self._closed), DESTROY_GRACE)
        except asyncio.TimeoutError:
            if self.connection is not None:
                self.connection.transport.abort()
            await asyncio.shield(self._closed)


class HTTP2Protocol(asyncio.Protocol):
    """asyncio protocol running one server-side h2 connection."""

    def __init__(self, server: "SocketServer"):
        self._server = server
        config = H2Configuration(client_side=False, header_encoding="utf-8")
        self._h2 = H2Connection(config=config)
        self._writers: Dict[int, HTTP2ResponseWriter] = {}
        self._bodies: Dict[int, RequestBody] = {}
        self.connection: Optional[Connection] = None
        self.session = HTTP2Session(self)

    # ─────────────────────────────────────────────────────────────────────
    # ASYNCIO CALLBACKS
    # ─────────────────────────────────────────────────────────────────────

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.connection = self._server.open_connection(transport)
        self._h2.initiate_connection()
        self.flush()
        self._server.sessions.emit(self.session)

    def data_received(self, data: bytes) -> None:
        self.connection.touch()
        try:
            events = self._h2.receive_data(data)
        except ProtocolError as exc:
            logger.debug(f"[{self.connection.id}] HTTP/2 protocol error: {exc}")
            self.flush()
            self.connection.close()
            return

        for event in events:
            if isinstance(event, RequestReceived):
                self._on_request(event.stream_id, event.headers)
            elif isinstance(event, DataReceived):
                self._h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
                body = self._bodies.get(event.stream_id)
                if body is not None:
                    body.feed(event.data)
            elif isinstance(event, StreamEnded):
                body = self._bodies.pop(event.stream_id, None)
                if body is not None:
                    body.finish()
            elif isinstance(event, StreamReset):
                self._on_reset(event.stream_id)
            elif isinstance(event, WindowUpdated):
                self._on_window_updated(event.stream_id)
            elif isinstance(event, ConnectionTerminated):
                self.flush()
                self.connection.close()
        self.flush()

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        if self.connection is not None:
            self.connection.lost(exc)
        for body in self._bodies.values():
            body.fail(exc or ConnectionResetError("connection closed"))
        self._bodies.clear()
        writers = list(self._writers.values())
        self._writers.clear()
        for writer in writers:
            writer._mark_closed()
        self.session._mark_closed()

    # ─────────────────────────────────────────────────────────────────────
    # EVENTS
    # ─────────────────────────────────────────────────────────────────────

    def _on_request(self, stream_id: int, raw_headers: List[Any]) -> None:
        pseudo: Dict[str, str] = {}
        regular = []
        for name, value in raw_headers:
            if name.startswith(":"):
                pseudo[name] = value
            else:
                regular.append((name, value))
        headers = headers_from_pairs(regular)
        authority = pseudo.get(":authority") or headers.get("host")
        if authority and "host" not in headers:
            headers["host"] = authority

        method = pseudo.get(":method", "GET")
        body = None
        if method in METHODS_WITH_BODY:
            body = RequestBody()
            self._bodies[stream_id] = body

        writer = HTTP2ResponseWriter(self, stream_id, method)
        self._writers[stream_id] = writer
        request = IncomingRequest(
            method=method,
            target=pseudo.get(":path", "/"),
            headers=headers,
            connection=self.connection,
            http_version="HTTP/2",
            scheme=pseudo.get(":scheme", "https"),
            authority=authority,
            body=body,
        )
        logger.debug(f"[{self.connection.id}] stream {stream_id}: {method} {request.target}")
        self._server.requests.emit(Exchange(request, writer))

    def _on_reset(self, stream_id: int) -> None:
        body = self._bodies.pop(stream_id, None)
        if body is not None:
            body.fail(ConnectionResetError(f"stream {stream_id} reset by client"))
        writer = self._writers.pop(stream_id, None)
        if writer is not None:
            writer._mark_closed()

    def _on_window_updated(self, stream_id: int) -> None:
        # stream 0 is the connection window: every stream may move again
        if stream_id == 0:
            for writer in list(self._writers.values()):
                writer.pump()
        else:
            writer = self._writers.get(stream_id)
            if writer is not None:
                writer.pump()

    # ─────────────────────────────────────────────────────────────────────
    # WRITE SIDE (used by writers and the session)
    # ─────────────────────────────────────────────────────────────────────

    def flush(self) -> None:
        data = self._h2.data_to_send()
        if data and self.connection is not None:
            self.connection.write(data)

    def _stream_gone(self, writer: HTTP2ResponseWriter) -> None:
        self._writers.pop(writer.stream_id, None)
        writer._mark_closed()

    def send_headers(self, writer: HTTP2ResponseWriter, headers: List[Any]) -> None:
        try:
            self._h2.send_headers(writer.stream_id, headers)
        except ProtocolError:
            self._stream_gone(writer)
            return
        self.flush()

    def send_pending(self, writer: HTTP2ResponseWriter) -> None:
        try:
            while writer._pending:
                window = self._h2.local_flow_control_window(writer.stream_id)
                size = min(window, len(writer._pending), self._h2.max_outbound_frame_size)
                if size <= 0:
                    break
                self._h2.send_data(writer.stream_id, bytes(writer._pending[:size]))
                del writer._pending[:size]
            if writer._ending and not writer._pending:
                self._h2.end_stream(writer.stream_id)
                self._stream_gone(writer)
        except ProtocolError:
            self._stream_gone(writer)
        self.flush()

    def reset_stream(self, writer: HTTP2ResponseWriter, error_code: ErrorCodes) -> None:
        try:
            self._h2.reset_stream(writer.stream_id, error_code=error_code)
        except ProtocolError as exc:
            logger.debug(f"[{self.connection.id}] stream {writer.stream_id} already closed: {exc}")
        body = self._bodies.pop(writer.stream_id, None)
        if body is not None:
            body.fail(ConnectionResetError(f"stream {writer.stream_id} reset"))
        self._stream_gone(writer)
        self.flush()

    def goaway(self, error_code: ErrorCodes) -> None:
        if self.connection is None or self.connection.destroyed:
            self.session._mark_closed()
            return
        try:
            self._h2.close_connection(error_code=error_code)
        except ProtocolError as exc:
            logger.debug(f"[{self.connection.id}] GOAWAY not sent: {exc}")
        self.flush()
        self.connection.close()
