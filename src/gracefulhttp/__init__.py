"""
=============================================================================
GRACEFULHTTP - HTTP/1.1, HTTPS and HTTP/2 Server With Graceful Lifecycle
=============================================================================

A small asyncio server toolkit: start a server around one request handler,
and stop it cleanly no matter what is in flight.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         WHAT YOU GET                                │
    ├─────────────────────────────────────────────────────────────────────┤
    │   1. LIFECYCLE          start_server() / server.stop(reason)        │
    │      - pending requests answered 503, connections closed,          │
    │        socket closed last; SIGINT/SIGTERM/exit wired in            │
    │   2. CANCELLATION       request.cancellation_token fires when the   │
    │      server stops or the client leaves                             │
    │   3. PROTOCOLS          HTTP/1.1 (keep-alive, chunked), TLS,        │
    │      HTTP/2 through h2 + ALPN                                      │
    │   4. BATTERIES          CORS, server-timing, static files with      │
    │      etag/mtime caching, server-sent events rooms                  │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    gracefulhttp/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m gracefulhttp)
    ├── server.py            # start_server(), Server, ServerStatus
    ├── config.py            # ServerConfig dataclass
    ├── cancellation.py      # CancellationSource / CancellationToken
    ├── operation.py         # cancellable and stoppable operations
    ├── publisher.py         # push streams used for bodies and events
    ├── services.py          # compose_service()
    ├── server_timing.py     # server-timing header
    ├── sse.py               # SSERoom
    ├── stop_reasons.py      # built-in stop reasons
    ├── errors.py            # exception hierarchy
    ├── log.py               # logging setup
    ├── core/                # sockets, protocols, trackers, signals
    ├── http/                # Request, Response, headers, negotiation
    ├── middleware/          # CORS
    └── handlers/            # serve_file(), 500 page

=============================================================================
QUICK START
=============================================================================

    import asyncio
    from gracefulhttp import Response, start_server

    async def handler(request):
        if request.path == "/":
            return Response(status=200, headers={"content-type": "text/plain"}, body="ok")
        return None   # → 501

    async def main():
        server = await start_server(request_handler=handler, port=8080)
        await server.stopped      # Ctrl+C

    asyncio.run(main())

=============================================================================
"""

__version__ = "1.0.0"

from .cancellation import (
    CancellationSource,
    CancellationToken,
    compose_cancellation_token,
    create_cancellation_token,
)
from .config import ServerConfig
from .errors import (
    AddressInUseError,
    BindError,
    CancelError,
    ConfigurationError,
    PermissionDeniedError,
    ServerError,
    is_cancel_error,
)
from .handlers import internal_error_to_response, serve_file
from .http import (
    NO_RESPONSE,
    Request,
    Response,
    accepts_content_type,
    compose_response,
    negotiate_content_encoding,
    negotiate_content_type,
)
from .operation import create_operation, create_stoppable_operation, first_operation_matching
from .publisher import Publisher, read_body, read_body_as_string
from .server import Server, ServerStatus, start_server
from .server_timing import time_function, timing_to_server_timing_headers
from .services import compose_service, compose_service_with_timing
from .sse import SSERoom
from .stop_reasons import (
    INTERNAL_ERROR,
    NOT_SPECIFIED,
    PROCESS_CRASH,
    PROCESS_EXIT,
    PROCESS_SIGHUP,
    PROCESS_SIGINT,
    PROCESS_SIGTERM,
    StopReason,
)

__all__ = [
    "__version__",
    "start_server",
    "Server",
    "ServerStatus",
    "ServerConfig",
    "Request",
    "Response",
    "NO_RESPONSE",
    "compose_response",
    "negotiate_content_type",
    "negotiate_content_encoding",
    "accepts_content_type",
    "CancellationSource",
    "CancellationToken",
    "compose_cancellation_token",
    "create_cancellation_token",
    "create_operation",
    "create_stoppable_operation",
    "first_operation_matching",
    "Publisher",
    "read_body",
    "read_body_as_string",
    "compose_service",
    "compose_service_with_timing",
    "time_function",
    "timing_to_server_timing_headers",
    "serve_file",
    "internal_error_to_response",
    "SSERoom",
    "StopReason",
    "INTERNAL_ERROR",
    "NOT_SPECIFIED",
    "PROCESS_SIGINT",
    "PROCESS_SIGTERM",
    "PROCESS_SIGHUP",
    "PROCESS_EXIT",
    "PROCESS_CRASH",
    "ServerError",
    "ConfigurationError",
    "BindError",
    "AddressInUseError",
    "PermissionDeniedError",
    "CancelError",
    "is_cancel_error",
]
