"""
=============================================================================
CORE: TRANSPORT AND LIFECYCLE PLUMBING
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                           SOCKET SERVER                             │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • asyncio listening server (plain TCP or TLS with ALPN)            │
    │  • publishes connections, request exchanges and HTTP/2 sessions     │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                      PROTOCOLS (http1 / http2)                      │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • bytes ⇄ Exchange(IncomingRequest, ResponseWriter)                │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │               TRACKERS, LISTENER, SIGNAL BRIDGE                     │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • what is open, how to close it, when to stop                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from .connection import Connection, ConnectionState
from .exchange import Exchange, IncomingRequest, ResponseWriter
from .listener import find_free_port, kill_port_owner, listen
from .signals import SignalBridge, default_signal_bridge
from .socket_server import SocketServer
from .tls import create_ssl_context
from .trackers import ConnectionTracker, RequestTracker, SessionTracker

__all__ = [
    "Connection",
    "ConnectionState",
    "Exchange",
    "IncomingRequest",
    "ResponseWriter",
    "SocketServer",
    "create_ssl_context",
    "listen",
    "find_free_port",
    "kill_port_owner",
    "SignalBridge",
    "default_signal_bridge",
    "ConnectionTracker",
    "RequestTracker",
    "SessionTracker",
]
