"""
=============================================================================
TRACKERS: WHAT IS STILL OPEN WHEN THE SERVER STOPS
=============================================================================

A server stop must not leave anything dangling. Three trackers each keep a
live set and know how to end its members:

    ┌───────────────────┬─────────────────────┬─────────────────────────────┐
    │ tracker           │ tracks              │ stop()                      │
    ├───────────────────┼─────────────────────┼─────────────────────────────┤
    │ RequestTracker    │ open exchanges      │ write 503 (500) head, then  │
    │                   │                     │ destroy the response        │
    │ ConnectionTracker │ client connections  │ destroy each connection     │
    │ SessionTracker    │ HTTP/2 sessions     │ GOAWAY(NO_ERROR) each one   │
    └───────────────────┴─────────────────────┴─────────────────────────────┘

Every stop() follows the same three steps:

    1. unsubscribe from the server publisher   → the set cannot grow
    2. snapshot the live set
    3. end every member concurrently, await all

A member that is already gone ("not connected") or that fails with the
very reason that triggered the stop counts as successfully ended.

=============================================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

from ..errors import is_not_connected_error
from ..publisher import Subscription
from .connection import Connection
from .exchange import Exchange
from .http2 import HTTP2Session
from .socket_server import SocketServer

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _end_all(members: Iterable[T], end: Callable[[T], Awaitable[Any]], reason: Any) -> None:
    async def end_one(member: T) -> None:
        try:
            await end(member)
        except Exception as exc:
            if is_not_connected_error(exc) or exc is reason:
                return
            raise

    members = list(members)
    if members:
        await asyncio.gather(*(end_one(member) for member in members))


class ConnectionTracker:
    def __init__(self) -> None:
        self.connections: Set[Connection] = set()
        self._subscription: Optional[Subscription] = None

    def track(self, server: SocketServer) -> None:
        self._subscription = server.connections.subscribe(next=self._add)

    def _add(self, connection: Connection) -> None:
        self.connections.add(connection)
        connection.on_close(self.connections.discard)

    async def stop(self, reason: Any = None) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        snapshot = [connection for connection in self.connections if not connection.destroyed]
        logger.debug(f"destroying {len(snapshot)} connection(s)")
        await _end_all(snapshot, lambda connection: connection.destroy(reason), reason)


class RequestTracker:
    def __init__(self) -> None:
        self.exchanges: List[Exchange] = []
        self._subscription: Optional[Subscription] = None

    def track(self, server: SocketServer) -> None:
        self._subscription = server.requests.subscribe(next=self._add)

    def _add(self, exchange: Exchange) -> None:
        self.exchanges.append(exchange)

        def remove(_: Any) -> None:
            self.exchanges = [e for e in self.exchanges if e is not exchange]

        exchange.response.on_close(remove)

    async def stop(self, status: int, reason: Any = None) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        snapshot = [exchange for exchange in self.exchanges if not exchange.response.closed]
        if snapshot:
            logger.debug(f"answering {len(snapshot)} pending request(s) with {status}")

        # heads are written before the first await, so they reach the wire
        # ahead of anything the other trackers close concurrently
        for exchange in snapshot:
            response = exchange.response
            if not response.headers_sent:
                response.write_head(status, str(reason))
            response.destroy()

        await _end_all(snapshot, lambda exchange: exchange.response.wait_closed(), reason)


class SessionTracker:
    def __init__(self) -> None:
        self.sessions: Set[HTTP2Session] = set()
        self._subscription: Optional[Subscription] = None

    def track(self, server: SocketServer) -> None:
        self._subscription = server.sessions.subscribe(next=self._add)

    def _add(self, session: HTTP2Session) -> None:
        self.sessions.add(session)
        session.on_close(self.sessions.discard)

    async def stop(self, reason: Any = None) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        snapshot = [session for session in self.sessions if not session.closed]
        logger.debug(f"closing {len(snapshot)} HTTP/2 session(s)")
        await _end_all(snapshot, lambda session: session.close(), reason)
