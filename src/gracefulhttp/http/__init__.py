"""
HTTP data model: requests, responses, headers and content negotiation.

Protocol wire handling lives in gracefulhttp.core; this package only holds
the protocol-independent shapes handlers work with.
"""

from .headers import compose_response_headers, normalize_headers
from .negotiation import (
    accepts_content_type,
    negotiate_content_encoding,
    negotiate_content_type,
)
from .request import Request, RequestParser
from .response import (
    NO_RESPONSE,
    NoResponse,
    Response,
    compose_response,
    format_http_date,
    status_text_for,
)

__all__ = [
    "Request",
    "RequestParser",
    "Response",
    "NoResponse",
    "NO_RESPONSE",
    "compose_response",
    "compose_response_headers",
    "normalize_headers",
    "format_http_date",
    "status_text_for",
    "negotiate_content_type",
    "negotiate_content_encoding",
    "accepts_content_type",
]
