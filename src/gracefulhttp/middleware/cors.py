"""
=============================================================================
CORS (Cross-Origin Resource Sharing) HEADERS
=============================================================================

Browsers only let a page read a response from another origin when the
server says so through access-control-* headers. The server computes these
headers once per request and merges them into whatever the handler returns;
a preflight (OPTIONS with CORS enabled) is answered directly with 200.

    ┌─────────┐  OPTIONS /api                      ┌─────────┐
    │ Browser │  origin: https://app.com           │ Server  │
    │         │  access-control-request-method: PUT│         │
    │         │ ─────────────────────────────────► │         │
    │         │ ◄───────────────────────────────── │         │
    │         │  200                               │         │
    │         │  access-control-allow-origin:      │         │
    │         │      https://app.com               │         │
    │         │  access-control-allow-methods:     │         │
    │         │      GET, POST, PUT, DELETE, ...   │         │
    │         │  vary: origin                      │         │
    └─────────┘                                    └─────────┘

=============================================================================
WHAT ENDS UP IN EACH HEADER
=============================================================================

    ┌──────────────────────────────┬──────────────────────────────────────┐
    │ access-control-allow-origin  │ allowed_origins, plus the request's  │
    │                              │ origin (or referer's origin, or "*") │
    │                              │ when allow_request_origin            │
    ├──────────────────────────────┼──────────────────────────────────────┤
    │ access-control-allow-methods │ allowed_methods, plus the requested  │
    │                              │ method when allow_request_method     │
    ├──────────────────────────────┼──────────────────────────────────────┤
    │ access-control-allow-headers │ allowed_headers, plus the requested  │
    │                              │ ones when allow_request_headers      │
    ├──────────────────────────────┼──────────────────────────────────────┤
    │ vary                         │ every request header that changed    │
    │                              │ the answer, so caches keep them apart│
    └──────────────────────────────┴──────────────────────────────────────┘

=============================================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping
from urllib.parse import urlsplit

from ..http.request import Request
from ..http.response import Response

logger = logging.getLogger(__name__)


@dataclass
class CORSConfig:
    """
    CORS policy.

    DEVELOPMENT (reflect whoever asks):
        CORSConfig(allow_request_origin=True, allow_request_method=True,
                   allow_request_headers=True)

    PRODUCTION (fixed list):
        CORSConfig(allowed_origins=["https://myapp.com"], allow_credentials=True)
    """

    allowed_origins: List[str] = field(default_factory=list)
    allowed_methods: List[str] = field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS"])
    allowed_headers: List[str] = field(default_factory=lambda: ["x-requested-with", "content-type", "accept"])

    # reflect the request's own origin / method / headers
    allow_request_origin: bool = False
    allow_request_method: bool = False
    allow_request_headers: bool = False

    # WARNING: browsers refuse credentials together with a "*" origin
    allow_credentials: bool = False

    # seconds a browser may cache the preflight answer
    max_age: int = 600

    # also send timing-allow-origin so server-timing is readable cross-origin
    send_server_timing: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.allow_request_origin or self.allowed_origins)

    @classmethod
    def from_server_config(cls, config: Any) -> "CORSConfig":
        return cls(
            allowed_origins=list(config.access_control_allowed_origins),
            allowed_methods=list(config.access_control_allowed_methods),
            allowed_headers=list(config.access_control_allowed_headers),
            allow_request_origin=config.access_control_allow_request_origin,
            allow_request_method=config.access_control_allow_request_method,
            allow_request_headers=config.access_control_allow_request_headers,
            allow_credentials=config.access_control_allow_credentials,
            max_age=config.access_control_max_age,
            send_server_timing=config.send_server_timing,
        )


def _url_to_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def generate_access_control_headers(headers: Mapping[str, str], config: CORSConfig) -> Dict[str, str]:
    """
    access-control-* headers answering a request carrying headers.

    >>> generate_access_control_headers(
    ...     {"origin": "http://example.com"},
    ...     CORSConfig(allow_request_origin=True),
    ... )["access-control-allow-origin"]
    'http://example.com'
    """
    vary: List[str] = []

    allowed_origins = list(config.allowed_origins)
    if config.allow_request_origin:
        origin = headers.get("origin")
        if origin and origin != "null":
            allowed_origins.append(origin)
            vary.append("origin")
        elif "referer" in headers:
            allowed_origins.append(_url_to_origin(headers["referer"]))
            vary.append("referer")
        else:
            allowed_origins.append("*")

    allowed_methods = list(config.allowed_methods)
    requested_method = headers.get("access-control-request-method")
    if config.allow_request_method and requested_method:
        if requested_method not in allowed_methods:
            allowed_methods.append(requested_method)
            vary.append("access-control-request-method")

    allowed_headers = list(config.allowed_headers)
    requested_headers = headers.get("access-control-request-headers")
    if config.allow_request_headers and requested_headers:
        for name in requested_headers.split(","):
            name = name.strip().lower()
            if name and name not in allowed_headers:
                allowed_headers.append(name)
                if "access-control-request-headers" not in vary:
                    vary.append("access-control-request-headers")

    origin_value = ", ".join(allowed_origins)
    if config.allow_credentials and "*" in allowed_origins:
        logger.warning(
            "access-control-allow-credentials with a \"*\" origin is refused by browsers; "
            "list explicit origins or enable allow_request_origin"
        )

    result: Dict[str, str] = {
        "access-control-allow-origin": origin_value,
        "access-control-allow-methods": ", ".join(allowed_methods),
        "access-control-allow-headers": ", ".join(allowed_headers),
        "access-control-max-age": str(config.max_age),
    }
    if config.allow_credentials:
        result["access-control-allow-credentials"] = "true"
    if config.send_server_timing:
        result["timing-allow-origin"] = origin_value
    if vary:
        result["vary"] = ", ".join(vary)
    return result


def is_preflight(request: Request) -> bool:
    return request.method == "OPTIONS"


def preflight_response() -> Response:
    """Answer to a CORS preflight; the CORS headers are merged in by the server."""
    return Response(status=200, headers={"content-length": "0"})


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# generate_access_control_headers() is a pure function of the request
# headers and the policy; the server calls it for every request when CORS
# is enabled and composes the result with the handler's headers (vary and
# the allow-* lists are merged, not overwritten).
#
# SECURITY NOTES:
# - allow_request_origin reflects ANY origin; use it for development
# - credentials + "*" only logs a warning, browsers will block the response
# - CORS is enforced by browsers, not servers
# =============================================================================
