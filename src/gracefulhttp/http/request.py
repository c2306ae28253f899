"""
=============================================================================
REQUEST MODEL AND HTTP/1.1 HEAD PARSER
=============================================================================

Every protocol (HTTP/1.1, HTTP/2) turns what it receives into the same
frozen Request object handed to the request handler:

    Request(
        method="GET",
        origin="https://127.0.0.1:8443",
        resource="/users?page=1",          ← path + query, as received
        headers={"accept": "text/html"},   ← lowercase names
        body=None,                         ← Publisher[bytes] for POST/PUT/PATCH
        cancellation_token=...,            ← server stop OR client gone
    )

The HTTP/1.1 protocol reads bytes until the blank line, then asks
RequestParser.parse_head() for the request line and the headers. The body is
not part of the head: it is streamed afterwards through a RequestBody.

=============================================================================
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

from ..cancellation import CancellationToken, create_cancellation_token
from ..errors import HTTPParseError
from ..publisher import Publisher
from .headers import headers_from_pairs

METHODS_WITH_BODY = ("POST", "PUT", "PATCH")


@dataclass(frozen=True)
class Request:
    """
    A normalized request, identical for HTTP/1.1 and HTTP/2.

    The cancellation token fires when the server stops or when the client
    goes away, whichever happens first.
    """

    method: str
    resource: str
    origin: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Publisher[bytes]] = None
    cancellation_token: CancellationToken = field(default_factory=create_cancellation_token)
    http_version: str = "HTTP/1.1"
    client_address: Tuple[str, int] = ("", 0)

    @property
    def path(self) -> str:
        return unquote(urlsplit(self.resource).path) or "/"

    @property
    def query_string(self) -> str:
        return urlsplit(self.resource).query

    @property
    def query_params(self) -> Dict[str, List[str]]:
        return parse_qs(self.query_string, keep_blank_values=True)

    @property
    def url(self) -> str:
        return f"{self.origin}{self.resource}"

    @property
    def is_keep_alive(self) -> bool:
        """HTTP/1.1 keeps alive unless "close"; HTTP/1.0 closes unless "keep-alive"."""
        connection = self.headers.get("connection", "").lower()
        if self.http_version == "HTTP/1.1":
            return connection != "close"
        return connection == "keep-alive"

    def get_header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def get_query(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.query_params.get(name, [])
        return values[0] if values else default


class RequestBody:
    """
    Bytes arriving from the wire, exposed as a single-subscriber Publisher.

    The protocol feeds it; the handler subscribes (or calls read_body()).
    Data fed before anyone subscribes is queued, not lost.
    """

    _END = object()

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.finished = False
        self.publisher: Publisher[bytes] = Publisher.from_async_iterable(self._iterate())

    def feed(self, data: bytes) -> None:
        if data and not self.finished:
            self._queue.put_nowait(bytes(data))

    def finish(self) -> None:
        if not self.finished:
            self.finished = True
            self._queue.put_nowait(self._END)

    def fail(self, exc: BaseException) -> None:
        if not self.finished:
            self.finished = True
            self._queue.put_nowait(exc)

    async def _iterate(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    headers: Dict[str, str]

    @property
    def content_length(self) -> int:
        try:
            return int(self.headers.get("content-length", 0))
        except ValueError:
            raise HTTPParseError("Invalid Content-Length header")

    @property
    def is_chunked(self) -> bool:
        return "chunked" in self.headers.get("transfer-encoding", "").lower()


class RequestParser:
    """
    Parses the head (request line + headers) of an HTTP/1.1 request.

    REQUEST_LINE_PATTERN: ^([A-Z]+) ([^ ]+) (HTTP/\\d\\.\\d)$

        ([A-Z]+)      METHOD
        ([^ ]+)       request target, "/path?query"
        (HTTP/\\d\\.\\d)  version

    HEADER_PATTERN: ^([^:]+):\\s*(.*)$

    Limits: a head larger than max_head_size is refused with 431; a path
    containing a ".." segment is refused with 400.
    """

    VALID_METHODS = {
        "GET",
        "POST",
        "PUT",
        "DELETE",
        "PATCH",
        "HEAD",
        "OPTIONS",
        "TRACE",
        "CONNECT",
    }

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:]+):\s*(.*)$")

    def __init__(self, max_head_size: int = 64 * 1024):
        self.max_head_size = max_head_size

    def parse_head(self, data: bytes) -> RequestHead:
        """
        Parse head bytes (everything before the blank line).

        Raises:
            HTTPParseError: If the head is malformed.
        """
        if len(data) > self.max_head_size:
            raise HTTPParseError(f"Request head too large: {len(data)} bytes", status_code=431)

        lines = data.decode("latin-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPParseError("Empty request")

        method, target, version = self._parse_request_line(lines[0])
        headers = self._parse_headers(lines[1:])
        return RequestHead(method=method, target=target, version=version, headers=headers)

    def _parse_request_line(self, line: str) -> Tuple[str, str, str]:
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line}")

        method, target, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise HTTPParseError(f"Unsupported HTTP version: {version}", status_code=505)

        # path traversal: "GET /../../etc/passwd"
        if ".." in unquote(urlsplit(target).path).split("/"):
            raise HTTPParseError("Invalid path: contains ..", status_code=400)

        return method, target, version

    def _parse_headers(self, lines: List[str]) -> Dict[str, str]:
        pairs: List[List[str]] = []
        for line in lines:
            if not line:
                continue
            # obsolete line folding: continuation of the previous header
            if line[0] in (" ", "\t"):
                if pairs:
                    pairs[-1][1] += " " + line.strip()
                continue
            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue
            name, value = match.groups()
            pairs.append([name, value])
        return headers_from_pairs((name, value) for name, value in pairs)
