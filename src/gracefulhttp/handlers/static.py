"""
=============================================================================
SERVING FILES
=============================================================================

serve_file() turns a file system path into a Response, with one of three
cache strategies:

    ┌──────────┬──────────────────────────────────────────────────────────┐
    │ etag     │ content hash in `etag`; if-none-match equal → 304        │
    │ (default)│ (the file is read to hash it, body sent from memory)     │
    ├──────────┼──────────────────────────────────────────────────────────┤
    │ mtime    │ `last-modified`; if-modified-since ≥ mtime → 304         │
    │          │ (file streamed from disk)                                │
    ├──────────┼──────────────────────────────────────────────────────────┤
    │ none     │ `cache-control: no-store` (file streamed from disk)      │
    └──────────┴──────────────────────────────────────────────────────────┘

    serve_file("public/index.html", method=request.method, headers=request.headers)

It does NOT map URLs to paths and does NOT guard against path traversal:
the caller decides which path to serve. (The HTTP/1.1 parser already
refuses ".." segments in request targets.)

File system errors become responses:

    PermissionError / EACCES / EPERM   → 403
    FileNotFoundError / ENOENT         → 404
    EBUSY                              → 503, retry-after: 0.01
    EMFILE                             → 503, retry-after: 0.1
    IsADirectoryError / EISDIR         → 500

Anything else propagates (and ends up as a 500 from the server).

=============================================================================
"""

import asyncio
import base64
import errno
import hashlib
import json
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union
from urllib.parse import urlsplit
from urllib.request import url2pathname

from ..http.mime_types import path_to_content_type
from ..http.response import Response, format_http_date
from ..publisher import Publisher

CACHE_STRATEGIES = ("etag", "mtime", "none")

ETAG_FOR_EMPTY_CONTENT = '"0-2jmj7l5rSw0yVb/vlWAYkK/YBwk"'


def bytes_to_etag(content: bytes) -> str:
    """Strong ETag: hex length + base64 SHA-1 prefix."""
    if not content:
        return ETAG_FOR_EMPTY_CONTENT
    digest = base64.b64encode(hashlib.sha1(content).digest()).decode("ascii")[:27]
    return f'"{len(content):x}-{digest}"'


def _to_path(source: Union[str, os.PathLike]) -> Path:
    if isinstance(source, str) and source.startswith("file://"):
        return Path(url2pathname(urlsplit(source).path))
    return Path(source)


def _read_directory(path: Path) -> str:
    return json.dumps(sorted(entry.name for entry in path.iterdir()))


async def serve_file(
    source: Union[str, os.PathLike],
    method: str = "GET",
    headers: Optional[Mapping[str, str]] = None,
    can_read_directory: bool = False,
    cache_strategy: str = "etag",
    content_type_map: Optional[Mapping[str, Sequence[str]]] = None,
) -> Response:
    """
    Response for the file (or directory) at source.

    Args:
        source: Path, or a file:// URL.
        method: Only GET and HEAD are served; anything else gets 501.
        headers: Request headers (if-none-match, if-modified-since).
        can_read_directory: Answer directories with a JSON list of entries
            instead of 403.
        cache_strategy: "etag", "mtime" or "none".
        content_type_map: Replaces the default content type table.

    Raises:
        ValueError: Unknown cache_strategy.
    """
    if cache_strategy not in CACHE_STRATEGIES:
        raise ValueError(f"cache_strategy must be one of {CACHE_STRATEGIES}, got {cache_strategy!r}")
    if method not in ("GET", "HEAD"):
        return Response(status=501)

    headers = headers or {}
    path = _to_path(source)
    cache_disabled = cache_strategy == "none"
    no_store = {"cache-control": "no-store"} if cache_disabled else {}

    try:
        stat = await asyncio.to_thread(path.stat)

        if path.is_dir():
            if not can_read_directory:
                return Response(status=403, status_text="not allowed to read directory", headers=no_store)
            listing = await asyncio.to_thread(_read_directory, path)
            return Response(
                status=200,
                headers={
                    **no_store,
                    "content-type": "application/json",
                    "content-length": len(listing.encode("utf-8")),
                },
                body=listing,
            )

        if not path.is_file():
            return Response(status=404, headers=no_store)

        content_type = path_to_content_type(path, content_type_map)

        if cache_strategy == "etag":
            content = await asyncio.to_thread(path.read_bytes)
            etag = bytes_to_etag(content)
            if headers.get("if-none-match") == etag:
                return Response(status=304)
            return Response(
                status=200,
                headers={
                    "content-length": len(content),
                    "content-type": content_type,
                    "etag": etag,
                },
                body=content,
            )

        modified = datetime.fromtimestamp(int(stat.st_mtime), tz=timezone.utc)
        if cache_strategy == "mtime" and "if-modified-since" in headers:
            try:
                cached = parsedate_to_datetime(headers["if-modified-since"])
            except (TypeError, ValueError):
                return Response(status=400, status_text="if-modified-since header is not a valid date")
            if cached.tzinfo is None:
                cached = cached.replace(tzinfo=timezone.utc)
            if cached >= modified:
                return Response(status=304)

        fileobj = await asyncio.to_thread(open, path, "rb")
        return Response(
            status=200,
            headers={
                **no_store,
                **({"last-modified": format_http_date(modified)} if cache_strategy == "mtime" else {}),
                "content-length": stat.st_size,
                "content-type": content_type,
            },
            body=Publisher.from_file(fileobj),
        )
    except OSError as error:
        return convert_file_system_error(error)


def convert_file_system_error(error: BaseException) -> Response:
    """
    Response for a file system error.

    Raises:
        The error itself when it is not a known file system failure.
    """
    code = getattr(error, "errno", None)
    if isinstance(error, PermissionError) or code in (errno.EACCES, errno.EPERM):
        return Response(status=403, status_text="no permission to read file")
    if isinstance(error, FileNotFoundError) or code == errno.ENOENT:
        return Response(status=404, status_text="file not found")
    # antivirus or indexer holding the file, usually for a few ms
    if code == errno.EBUSY:
        return Response(status=503, status_text="file is busy", headers={"retry-after": "0.01"})
    if code == errno.EMFILE:
        return Response(status=503, status_text="too many file opened", headers={"retry-after": "0.1"})
    if isinstance(error, IsADirectoryError) or code == errno.EISDIR:
        return Response(status=500, status_text="Unexpected directory operation")
    raise error