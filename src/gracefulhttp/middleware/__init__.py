"""
Cross-cutting response headers computed by the server for every request.

    CORS           access-control-* headers and preflight answers (cors.py)

Server-timing headers live in gracefulhttp.server_timing.
"""

from .cors import CORSConfig, generate_access_control_headers, is_preflight, preflight_response

__all__ = [
    "CORSConfig",
    "generate_access_control_headers",
    "is_preflight",
    "preflight_response",
]
