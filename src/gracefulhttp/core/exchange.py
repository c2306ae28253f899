"""
=============================================================================
EXCHANGE: WHAT A PROTOCOL HANDS TO THE SERVER
=============================================================================

Both wire protocols (http1.py, http2.py) reduce a request to the same pair
and emit it on SocketServer.requests:

    Exchange
    ├── request: IncomingRequest   method, target, headers, body, scheme
    └── response: ResponseWriter   write_head() / write() / end() / destroy()

The server turns the IncomingRequest into a Request for the handler and
populates the ResponseWriter from the handler's Response. The
RequestTracker keeps every Exchange whose response is not closed yet.

ResponseWriter life:

    write_head(...)  →  write(chunk)*  →  end()          normal
          │
          └──────────────────────────►  destroy()        abort / shutdown

    `closed` becomes True exactly once, after end() finished or the stream
    was torn down (destroy, client gone). on_close callbacks run then.

=============================================================================
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..http.request import RequestBody
from .connection import Connection

# CR and LF in a status line would split the response
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]+")


def clean_status_text(text: Optional[str]) -> Optional[str]:
    """Status text with control characters turned into single spaces."""
    if not text:
        return text
    return _CONTROL_CHARACTERS.sub(" ", text).strip()


@dataclass
class IncomingRequest:
    """A request as read from the wire, before the server wraps it."""

    method: str
    target: str
    headers: Dict[str, str]
    connection: Connection
    http_version: str = "HTTP/1.1"
    scheme: str = "http"
    authority: Optional[str] = None
    body: Optional[RequestBody] = None


class ResponseWriter:
    """
    Base class of the per-protocol response writers.

    Subclasses implement _send_head(), _send_data(), _finish() and _abort().
    """

    def __init__(self) -> None:
        self.headers_sent = False
        self.status: Optional[int] = None
        self.status_text: Optional[str] = None
        self.headers: Dict[str, str] = {}
        self._head_flushed = False
        self._body_written = False
        self._closed: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._close_callbacks: List[Callable[["ResponseWriter"], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed.done()

    def on_close(self, callback: Callable[["ResponseWriter"], Any]) -> None:
        if self.closed:
            callback(self)
        else:
            self._close_callbacks.append(callback)

    async def wait_closed(self) -> None:
        await asyncio.shield(self._closed)

    def _mark_closed(self) -> None:
        if self._closed.done():
            return
        self._closed.set_result(None)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback(self)

    # ─────────────────────────────────────────────────────────────────────
    # PUBLIC WRITE API
    # ─────────────────────────────────────────────────────────────────────

    def write_head(self, status: int, status_text: Optional[str] = None, headers: Optional[Dict[str, str]] = None) -> None:
        """Record the status line and headers; they go out with the first write or end()."""
        if self.headers_sent or self.closed:
            return
        self.headers_sent = True
        self.status = status
        self.status_text = clean_status_text(status_text)
        self.headers = {name.lower(): str(value) for name, value in (headers or {}).items()}

    def write(self, data: Any) -> None:
        if self.closed:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        if not self.headers_sent:
            self.write_head(200)
        self._flush_head()
        self._body_written = True
        self._send_data(bytes(data))

    def end(self) -> None:
        if self.closed:
            return
        if not self.headers_sent:
            self.write_head(200)
        if not self._head_flushed and not self._body_written and not self._bodyless:
            self.headers.setdefault("content-length", "0")
        self._flush_head()
        self._finish()

    def destroy(self) -> None:
        """
        Tear the response down.

        A head recorded but never flushed is still delivered as a complete,
        empty response (this is how the RequestTracker's 503 reaches the
        client); otherwise the stream is aborted.
        """
        if self.closed:
            return
        if self.headers_sent and not self._head_flushed:
            if not self._bodyless:
                self.headers.setdefault("content-length", "0")
            self.headers["connection"] = "close"
            self._flush_head()
            self._finish(terminal=True)
        else:
            self._abort()

    @property
    def _bodyless(self) -> bool:
        return self.status is not None and (self.status in (204, 304) or 100 <= self.status < 200)

    def _flush_head(self) -> None:
        if self._head_flushed:
            return
        self._head_flushed = True
        self._send_head()

    # ─────────────────────────────────────────────────────────────────────
    # PROTOCOL HOOKS
    # ─────────────────────────────────────────────────────────────────────

    def _send_head(self) -> None:
        raise NotImplementedError

    def _send_data(self, data: bytes) -> None:
        raise NotImplementedError

    def _finish(self, terminal: bool = False) -> None:
        raise NotImplementedError

    def _abort(self) -> None:
        raise NotImplementedError


@dataclass
class Exchange:
    request: IncomingRequest
    response: ResponseWriter
