"""
=============================================================================
HTTP/1.1 OVER AN ASYNCIO PROTOCOL
=============================================================================

One HTTP1Protocol per TCP (or TLS) connection. It turns bytes into
Exchanges and writes responses back, one request at a time:

    data_received()
         │
         ▼
    ┌──────────┐ blank line ┌──────────┐ body done ┌──────────┐
    │   HEAD   │ ─────────► │   BODY   │ ────────► │   BUSY   │
    └──────────┘            └──────────┘           └────┬─────┘
         ▲                                              │ response end()
         └──────────────── keep-alive ◄─────────────────┘

Pipelined requests (sent before the previous response) wait in the buffer
until the current response is finished; HTTP/1.1 requires responses in
request order, so there is never more than one Exchange per connection.

Body framing in:  Content-Length, or Transfer-Encoding: chunked.
Body framing out: the handler's content-length if it set one, otherwise
chunked (HTTP/1.1) or close-delimited (HTTP/1.0).

Malformed input is answered directly with the HTTPParseError status and the
connection is closed; the request handler never sees it.

=============================================================================
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..errors import HTTPParseError
from ..http.request import METHODS_WITH_BODY, RequestBody, RequestHead, RequestParser
from ..http.response import format_http_date, status_text_for
from .connection import Connection, ConnectionState
from .exchange import Exchange, IncomingRequest, ResponseWriter

if TYPE_CHECKING:
    from .socket_server import SocketServer

logger = logging.getLogger(__name__)

_HEAD = "head"
_BODY = "body"
_BUSY = "busy"
_DONE = "done"

# stop reading while this much pipelined data waits for the current response
_MAX_PENDING_BUFFER = 256 * 1024


class HTTP1ResponseWriter(ResponseWriter):
    def __init__(self, protocol: "HTTP1Protocol", method: str, version: str, keep_alive: bool):
        super().__init__()
        self._protocol = protocol
        self._method = method
        self._version = version
        self.keep_alive = keep_alive
        self._chunked = False

    @property
    def _drops_body(self) -> bool:
        return self._method == "HEAD" or self._bodyless

    def _send_head(self) -> None:
        headers = dict(self.headers)

        if "content-length" not in headers and not self._drops_body:
            if self._version == "HTTP/1.1":
                headers["transfer-encoding"] = "chunked"
            else:
                # HTTP/1.0: the end of the body is the end of the connection
                self.keep_alive = False
        self._chunked = "chunked" in headers.get("transfer-encoding", "").lower() and not self._drops_body

        if headers.get("connection", "").lower() == "close" or self._protocol.closing:
            self.keep_alive = False
        headers.setdefault("date", format_http_date())
        headers["connection"] = "keep-alive" if self.keep_alive else "close"

        status_text = self.status_text or status_text_for(self.status or 200)
        lines = [f"HTTP/1.1 {self.status} {status_text}"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        self._protocol.send(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1", "replace"))

    def _send_data(self, data: bytes) -> None:
        if self._drops_body:
            return
        if self._chunked:
            self._protocol.send(b"%x\r\n%s\r\n" % (len(data), data))
        else:
            self._protocol.send(data)

    def _finish(self, terminal: bool = False) -> None:
        if self._chunked:
            self._protocol.send(b"0\r\n\r\n")
        if terminal:
            self.keep_alive = False
        self._protocol.response_finished(self)

    def _abort(self) -> None:
        self.keep_alive = False
        self._protocol.abort()


class HTTP1Protocol(asyncio.Protocol):
    """
    asyncio protocol speaking HTTP/1.0 and HTTP/1.1 to one client.

    Args:
        server: The SocketServer that created it. Provides open_connection(),
            the `requests` publisher and max_request_size.
    """

    def __init__(self, server: "SocketServer"):
        self._server = server
        self._parser = RequestParser()
        self._buffer = bytearray()
        self._state = _HEAD
        self._writer: Optional[HTTP1ResponseWriter] = None
        self._response_done = False
        self._reading_paused = False
        self._eof = False
        self.connection: Optional[Connection] = None

        # current request body
        self._body: Optional[RequestBody] = None
        self._body_remaining = 0
        self._body_received = 0
        self._chunked = False
        self._chunk_state = "size"

    @property
    def closing(self) -> bool:
        return self._state == _DONE or self._eof or self.connection is None or self.connection.destroyed

    # ─────────────────────────────────────────────────────────────────────
    # ASYNCIO CALLBACKS
    # ─────────────────────────────────────────────────────────────────────

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.connection = self._server.open_connection(transport)

    def data_received(self, data: bytes) -> None:
        if self._state == _DONE:
            return
        self.connection.touch()
        self._buffer.extend(data)
        self._process_safely()
        if self._state == _BUSY and len(self._buffer) > _MAX_PENDING_BUFFER and not self._reading_paused:
            self._reading_paused = True
            self.connection.transport.pause_reading()

    def eof_received(self) -> bool:
        self._eof = True
        if self._body is not None:
            self._body.fail(ConnectionResetError("client closed the connection while sending the body"))
            self._body = None
        # keep the write side open while a response is still owed
        return self._writer is not None

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        self._state = _DONE
        if self.connection is not None:
            self.connection.lost(exc)
        if self._body is not None:
            self._body.fail(exc or ConnectionResetError("connection closed"))
            self._body = None
        writer, self._writer = self._writer, None
        if writer is not None:
            writer._mark_closed()

    # ─────────────────────────────────────────────────────────────────────
    # WRITE SIDE (used by the writer)
    # ─────────────────────────────────────────────────────────────────────

    def send(self, data: bytes) -> None:
        if self.connection is not None:
            self.connection.state = ConnectionState.WRITING
            self.connection.write(data)

    def abort(self) -> None:
        self._state = _DONE
        if self.connection is not None:
            self.connection.transport.abort()

    def response_finished(self, writer: HTTP1ResponseWriter) -> None:
        if writer is not self._writer:
            return
        self._writer = None
        self.connection.requests_handled += 1

        if not writer.keep_alive or self.closing:
            self._state = _DONE
            self.connection.close()
            writer._mark_closed()
            return

        writer._mark_closed()
        if self._state == _BODY:
            # answered before the body was fully read; drain it first
            self._response_done = True
            return
        self._next_request()

    def _next_request(self) -> None:
        self._state = _HEAD
        self._response_done = False
        self.connection.state = ConnectionState.KEEP_ALIVE
        if self._reading_paused:
            self._reading_paused = False
            self.connection.transport.resume_reading()
        if self._buffer:
            asyncio.get_running_loop().call_soon(self._process_safely)

    # ─────────────────────────────────────────────────────────────────────
    # READ SIDE
    # ─────────────────────────────────────────────────────────────────────

    def _process_safely(self) -> None:
        try:
            self._process()
        except HTTPParseError as exc:
            self._reject(exc)

    def _process(self) -> None:
        while self._state != _DONE:
            if self._state == _HEAD:
                # tolerate stray CRLFs between pipelined requests
                while self._buffer[:2] == b"\r\n":
                    del self._buffer[:2]
                end = self._buffer.find(b"\r\n\r\n")
                if end == -1:
                    if len(self._buffer) > self._parser.max_head_size:
                        raise HTTPParseError("Request head too large", status_code=431)
                    return
                head = self._parser.parse_head(bytes(self._buffer[:end]))
                del self._buffer[: end + 4]
                self._start_request(head)

            elif self._state == _BODY:
                if not self._consume_body():
                    return
                self._body.finish()
                self._body = None
                if self._response_done:
                    self._next_request()
                    return
                else:
                    self._state = _BUSY
                    self.connection.state = ConnectionState.PROCESSING

            else:
                return

    def _start_request(self, head: RequestHead) -> None:
        length = head.content_length
        if length > self._server.max_request_size:
            raise HTTPParseError(f"Request body too large: {length} bytes", status_code=413)

        connection_header = head.headers.get("connection", "").lower()
        if head.version == "HTTP/1.1":
            keep_alive = connection_header != "close"
        else:
            keep_alive = connection_header == "keep-alive"

        self._writer = HTTP1ResponseWriter(self, head.method, head.version, keep_alive)

        has_body = head.is_chunked or length > 0
        body = RequestBody() if has_body or head.method in METHODS_WITH_BODY else None
        if has_body:
            self._body = body
            self._body_remaining = length
            self._body_received = 0
            self._chunked = head.is_chunked
            self._chunk_state = "size"
            self._state = _BODY
            self.connection.state = ConnectionState.READING
            if head.headers.get("expect", "").lower() == "100-continue" and head.version == "HTTP/1.1":
                self.connection.write(b"HTTP/1.1 100 Continue\r\n\r\n")
        else:
            if body is not None:
                body.finish()
            self._state = _BUSY
            self.connection.state = ConnectionState.PROCESSING

        request = IncomingRequest(
            method=head.method,
            target=head.target,
            headers=head.headers,
            connection=self.connection,
            http_version=head.version,
            scheme="https" if self._server.encrypted else "http",
            authority=head.headers.get("host"),
            body=body,
        )
        logger.debug(f"[{self.connection.id}] {head.method} {head.target} {head.version}")
        self._server.requests.emit(Exchange(request, self._writer))

    def _feed_body(self, data: bytes) -> None:
        self._body_received += len(data)
        if self._body_received > self._server.max_request_size:
            raise HTTPParseError("Request body too large", status_code=413)
        self._body.feed(data)

    def _consume_body(self) -> bool:
        """Move body bytes from the buffer to the RequestBody. True once complete."""
        if not self._chunked:
            take = min(self._body_remaining, len(self._buffer))
            if take:
                self._feed_body(bytes(self._buffer[:take]))
                del self._buffer[:take]
                self._body_remaining -= take
            return self._body_remaining == 0

        while True:
            if self._chunk_state == "size":
                end = self._buffer.find(b"\r\n")
                if end == -1:
                    return False
                size_field = bytes(self._buffer[:end]).split(b";")[0].strip()
                del self._buffer[: end + 2]
                try:
                    size = int(size_field, 16)
                except ValueError:
                    raise HTTPParseError(f"Invalid chunk size: {size_field!r}")
                if size == 0:
                    self._chunk_state = "trailer"
                else:
                    self._body_remaining = size
                    self._chunk_state = "data"

            elif self._chunk_state == "data":
                if not self._buffer:
                    return False
                take = min(self._body_remaining, len(self._buffer))
                self._feed_body(bytes(self._buffer[:take]))
                del self._buffer[:take]
                self._body_remaining -= take
                if self._body_remaining:
                    return False
                self._chunk_state = "data_end"

            elif self._chunk_state == "data_end":
                if len(self._buffer) < 2:
                    return False
                if self._buffer[:2] != b"\r\n":
                    raise HTTPParseError("Missing CRLF after chunk data")
                del self._buffer[:2]
                self._chunk_state = "size"

            else:
                # trailer section, ends with an empty line; trailers are ignored
                end = self._buffer.find(b"\r\n")
                if end == -1:
                    return False
                line = self._buffer[:end]
                del self._buffer[: end + 2]
                if not line:
                    return True

    def _reject(self, exc: HTTPParseError) -> None:
        logger.debug(f"[{self.connection.id}] rejecting request: {exc}")
        if self._body is not None:
            self._body.fail(exc)
            self._body = None

        if self._writer is None:
            message = str(exc).encode("utf-8")
            head = (
                f"HTTP/1.1 {exc.status_code} {status_text_for(exc.status_code)}\r\n"
                f"content-type: text/plain; charset=utf-8\r\n"
                f"content-length: {len(message)}\r\n"
                f"date: {format_http_date()}\r\n"
                f"connection: close\r\n\r\n"
            )
            self.connection.write(head.encode("latin-1") + message)
        self._state = _DONE
        self._buffer.clear()
        self.connection.close()
