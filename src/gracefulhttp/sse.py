"""
=============================================================================
SERVER-SENT EVENTS ROOM
=============================================================================

A room is a broadcast channel for EventSource clients:

    room = SSERoom(history_length=100)
    room.open()

    def handler(request):
        if request.path == "/events":
            return room.join(request)          # text/event-stream response
        ...

    room.send_event(data="build done", type="reload")

Every event with an id is kept in a bounded history (oldest dropped first).
A client reconnecting with a last-event-id gets the events it missed
replayed before the live ones:

    sent:      e1 e2 e3 e4 e5
    reconnect: last-event-id = id(e2)
    replayed:  e3 e4 e5

join() answers:
    503   the room already holds max_connection_allowed clients
    204   the room is not opened (EventSource stops reconnecting on 204)
    200   text/event-stream, stays open until the client leaves or close()

Wire format of one event:

    id:3
    event:reload
    data:build done
    <blank line>

=============================================================================
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .http.request import Request
from .http.response import Response
from .publisher import Observer, Publisher, Teardown

logger = logging.getLogger(__name__)

EventId = Union[int, str]


@dataclass
class SSEEvent:
    data: Any = ""
    type: str = "message"
    id: Optional[EventId] = None
    retry: Optional[int] = None

    def stringify(self) -> str:
        lines = []
        if self.id is not None:
            lines.append(f"id:{self.id}")
        if self.retry:
            lines.append(f"retry:{self.retry}")
        if self.type != "message":
            lines.append(f"event:{self.type}")
        # a multi-line payload needs one data: field per line
        lines.extend(f"data:{line}" for line in str(self.data).split("\n"))
        return "\n".join(lines) + "\n\n"


def _default_compute_event_id(event: SSEEvent, last_event_id: Any) -> EventId:
    return (last_event_id or 0) + 1


def _clock() -> str:
    return time.strftime("%H:%M:%S")


class _Client:
    def __init__(self, observer: Observer[str]) -> None:
        self.observer = observer

    def write(self, chunk: str) -> None:
        self.observer.next(chunk)

    def close(self) -> None:
        self.observer.complete()


class SSERoom:
    """
    Args:
        keepalive_duration: Seconds between keep-alive comments.
        retry_duration: Reconnection delay suggested to clients (ms).
        history_length: Number of events kept for replay.
        max_connection_allowed: Clients accepted at the same time.
        compute_event_id: (event, previous_id) -> id for events sent without one.
        welcome_event: Greet each new client with a "welcome" event
            (kept in history).
        welcome_event_public: Replay welcome events to reconnecting clients.
    """

    def __init__(
        self,
        keepalive_duration: float = 30.0,
        retry_duration: int = 1000,
        history_length: int = 1000,
        max_connection_allowed: int = 100,
        compute_event_id: Callable[[SSEEvent, Any], EventId] = _default_compute_event_id,
        welcome_event: bool = False,
        welcome_event_public: bool = False,
    ):
        self.keepalive_duration = keepalive_duration
        self.retry_duration = retry_duration
        self.max_connection_allowed = max_connection_allowed
        self.compute_event_id = compute_event_id
        self.welcome_event = welcome_event
        self.welcome_event_public = welcome_event_public

        self._history: Deque[SSEEvent] = deque(maxlen=history_length)
        self._clients: List[_Client] = []
        self._last_event_id: Any = None
        self._keepalive: Optional[asyncio.TimerHandle] = None
        self.opened = False

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ─────────────────────────────────────────────────────────────────────
    # ROOM STATE
    # ─────────────────────────────────────────────────────────────────────

    def open(self) -> None:
        """Start accepting clients and sending keep-alive comments."""
        if self.opened:
            return
        self.opened = True
        self._schedule_keepalive()

    def close(self) -> None:
        """End every client stream, stop keep-alives and forget the history."""
        if not self.opened:
            return
        logger.debug(f"closing room, {self.client_count} client(s) to close")
        for client in list(self._clients):
            client.close()
        self._clients.clear()
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None
        self._history.clear()
        self.opened = False

    def _schedule_keepalive(self) -> None:
        loop = asyncio.get_running_loop()
        self._keepalive = loop.call_later(self.keepalive_duration, self._send_keepalive)

    def _send_keepalive(self) -> None:
        logger.debug(f"send keep alive event, {self.client_count} client(s) listening")
        self.send_event(data=_clock(), type="comment")
        if self.opened:
            self._schedule_keepalive()

    # ─────────────────────────────────────────────────────────────────────
    # EVENTS
    # ─────────────────────────────────────────────────────────────────────

    def _assign_id(self, event: SSEEvent) -> None:
        if event.id is None:
            event.id = self.compute_event_id(event, self._last_event_id)
        self._last_event_id = event.id
        self._history.append(event)

    def send_event(self, data: Any = "", type: str = "message", id: Optional[EventId] = None) -> SSEEvent:
        """Broadcast an event. Comments are neither numbered nor kept."""
        event = SSEEvent(data=data, type=type, id=id)
        if type != "comment":
            self._assign_id(event)
            logger.debug(f"send {type} event, {self.client_count} client(s) listening")
        chunk = event.stringify()
        for client in list(self._clients):
            client.write(chunk)
        return event

    def events_since(self, last_known_event_id: EventId) -> List[SSEEvent]:
        """Events after the one with last_known_event_id, oldest first."""
        events = list(self._history)
        wanted = str(last_known_event_id)
        index = next((i for i, event in enumerate(events) if str(event.id) == wanted), None)
        if index is not None:
            events = events[index + 1:]
        else:
            # that event fell out of the history: fall back to comparing ids
            try:
                threshold = int(wanted)
                events = [event for event in events if isinstance(event.id, int) and event.id > threshold]
            except ValueError:
                events = []
        if self.welcome_event and not self.welcome_event_public:
            events = [event for event in events if event.type != "welcome"]
        return events

    # ─────────────────────────────────────────────────────────────────────
    # CLIENTS
    # ─────────────────────────────────────────────────────────────────────

    def join(self, request: Request) -> Response:
        """connect() using the request's last-event-id header (or query parameter)."""
        last_event_id = request.headers.get("last-event-id") or request.get_query("last-event-id")
        return self.connect(last_event_id)

    def connect(self, last_known_event_id: Optional[EventId] = None) -> Response:
        """
        Response streaming the room to one client.

        The client takes a slot when the body is subscribed, not before: a
        response that is never streamed holds no slot. Missed events and the
        first event (comment or welcome) are sent at that moment too.
        """
        if self.client_count >= self.max_connection_allowed:
            return Response(status=503)
        if not self.opened:
            return Response(status=204)

        def producer(observer: Observer[str]) -> Teardown:
            if not self.opened or self.client_count >= self.max_connection_allowed:
                observer.complete()
                return None

            replay = [] if last_known_event_id is None else self.events_since(last_known_event_id)
            first_event = SSEEvent(data=_clock(), type="comment", retry=self.retry_duration)
            if self.welcome_event:
                first_event.type = "welcome"
                self._assign_id(first_event)

            client = _Client(observer)
            self._clients.append(client)
            logger.debug(
                f"client joined, {self.client_count} client(s) connected, max allowed: {self.max_connection_allowed}"
            )
            for event in replay + [first_event]:
                client.write(event.stringify())

            def leave() -> None:
                if client in self._clients:
                    self._clients.remove(client)
                    logger.debug(f"client left, {self.client_count} client(s) connected")

            return leave

        headers: Dict[str, str] = {
            "content-type": "text/event-stream",
            "cache-control": "no-store",
            "connection": "keep-alive",
        }
        return Response(status=200, headers=headers, body=Publisher(producer))
