"""
=============================================================================
RESPONSE MODEL
=============================================================================

A request handler returns exactly one of:

    Response(status=200, headers={...}, body="ok")   → sent to the client
    NO_RESPONSE  (or None)                           → "not mine", 501

Response bodies can be anything to_publisher() understands: str, bytes,
an open binary file, an async iterable, or a Publisher. Streaming bodies
(SSE, files) are pushed chunk by chunk; the protocol takes care of
content-length vs chunked framing.

=============================================================================
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from email.utils import format_datetime
from http import HTTPStatus
from typing import Any, Dict, Optional, Union

from .headers import compose_response_headers, normalize_headers


def status_text_for(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "not specified"


@dataclass
class Response:
    status: int = 200
    status_text: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    body_encoding: Optional[str] = None
    timing: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = normalize_headers(self.headers)
        if self.status_text is None:
            self.status_text = status_text_for(self.status)

    def set_header(self, name: str, value: Any) -> "Response":
        self.headers.update(normalize_headers({name: value}))
        return self


class NoResponse:
    """The handler has no opinion about this request."""

    _instance: Optional["NoResponse"] = None

    def __new__(cls) -> "NoResponse":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_RESPONSE"


NO_RESPONSE = NoResponse()

HandlerResult = Union[Response, NoResponse, None]


def is_response(value: Any) -> bool:
    return isinstance(value, Response)


def compose_response(response: Response, other: Optional[Response] = None, **changes: Any) -> Response:
    """
    Layer other (and/or keyword changes) on top of response.

    status, status_text, body and body_encoding are replaced; headers are
    composed with compose_response_headers(); timing entries are merged.
    """
    if other is not None:
        changes = {
            "status": other.status,
            "status_text": other.status_text,
            "headers": other.headers,
            "body": other.body,
            "body_encoding": other.body_encoding,
            "timing": other.timing,
            **changes,
        }
    headers = compose_response_headers(response.headers, changes.pop("headers", {}))
    timing = {**response.timing, **changes.pop("timing", {})}
    if "status" in changes and "status_text" not in changes:
        changes["status_text"] = status_text_for(changes["status"])
    return replace(response, headers=headers, timing=timing, **changes)


def format_http_date(dt: Optional[datetime] = None) -> str:
    """RFC 7231 date, e.g. "Wed, 01 Jan 2026 12:00:00 GMT"."""
    return format_datetime(dt or datetime.now(timezone.utc), usegmt=True)
