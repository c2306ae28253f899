"""
=============================================================================
SERVER LIFECYCLE
=============================================================================

start_server() ties everything together and returns a running Server:

    server = await start_server(
        request_handler=handler,
        ip="127.0.0.1",
        port=0,
        access_control_allow_request_origin=True,
    )
    print(server.origin)            # http://127.0.0.1:54321
    ...
    await server.stop("shutdown")   # or Ctrl+C, SIGTERM, ...
    await server.stopped            # → "shutdown"

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                              Server                                 │
    │   status: STARTING → OPENED → STOPPING → STOPPED (never backwards)  │
    └───────┬─────────────────────┬──────────────────────┬────────────────┘
            │                     │                      │
            ▼                     ▼                      ▼
    ┌──────────────┐     ┌──────────────────┐    ┌──────────────────────┐
    │ SignalBridge │     │   SocketServer   │    │ Request, Connection, │
    │ SIGINT, ...  │     │ (via listen())   │    │ Session trackers     │
    │ → stop()     │     │ exchanges ─────────►  │ (cleanup callbacks)  │
    └──────────────┘     └────────┬─────────┘    └──────────────────────┘
                                  │ exchange
                                  ▼
                        ┌─────────────────────┐
                        │ dispatch:           │
                        │ CORS preflight?     │
                        │ request_handler()   │
                        │ → Response          │
                        │ → ResponseWriter    │
                        └─────────────────────┘

=============================================================================
STOP SEQUENCE
=============================================================================

    1. status = STOPPING, the server token fires: every handler still
       running sees its request token cancelled
    2. cleanup callbacks run concurrently:
         RequestTracker     pending requests get 503 (500 for INTERNAL_ERROR)
         ConnectionTracker  remaining connections destroyed
         SessionTracker     HTTP/2 sessions get GOAWAY
         dispatch           no new request reaches the handler
    3. the listening socket closes (only after step 2 is over)
    4. status = STOPPED, `stopped` resolves with the reason,
       stopped_callback(reason=...) is called

stop() can be called any number of times from anywhere; every call waits
for the same sequence.

=============================================================================
"""

import asyncio
import logging
import socket
from enum import Enum
from typing import Any, Callable, List, Optional

from .cancellation import CancellationSource, CancellationToken, Registration, compose_cancellation_token
from .config import ServerConfig
from .core.exchange import Exchange, ResponseWriter
from .core.listener import kill_port_owner, listen
from .core.signals import CRASH_TRIGGERS, SIGINT_TRIGGERS, TEARDOWN_TRIGGERS, SignalBridge, default_signal_bridge
from .core.socket_server import SocketServer
from .core.tls import create_ssl_context
from .core.trackers import ConnectionTracker, RequestTracker, SessionTracker
from .errors import CancelError, HandlerError, is_cancel_error, is_not_connected_error
from .handlers.internal_error import internal_error_to_response
from .http.negotiation import accepts_content_type
from .http.request import Request
from .http.response import NO_RESPONSE, Response, compose_response, is_response
from .middleware.cors import CORSConfig, generate_access_control_headers, is_preflight, preflight_response
from .operation import StoppableOperation, _call
from .publisher import Subscription, to_publisher
from .server_timing import time_start, timing_to_server_timing_headers
from .stop_reasons import INTERNAL_ERROR, NOT_SPECIFIED, TRIGGER_REASONS, status_for_reason

logger = logging.getLogger(__name__)

REQUEST_CLOSED = "request closed"


class ServerStatus(Enum):
    STARTING = "starting"
    OPENED = "opened"
    STOPPING = "stopping"
    STOPPED = "stopped"


def _default_request_waiting_callback(request: Request, request_waiting_ms: int) -> None:
    logger.warning(
        f"still no response found for request after {request_waiting_ms} ms\n"
        f"--- request url ---\n{request.url}\n"
        f"--- request headers ---\n{request.headers}"
    )


def _external_ip() -> Optional[str]:
    # connect() on UDP only picks the outgoing interface, nothing is sent
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        udp.connect(("10.255.255.255", 1))
        return udp.getsockname()[0]
    except OSError:
        return None
    finally:
        udp.close()


def server_origin(protocol: str, ip: str, port: int) -> str:
    """scheme://host:port, with a wildcard bind address replaced by a reachable one."""
    host = ip
    if ip in ("", "0.0.0.0"):
        host = _external_ip() or "127.0.0.1"
    elif ip == "::":
        host = "::1"
    if ":" in host:
        host = f"[{host}]"
    default_port = 443 if protocol == "https" else 80
    return f"{protocol}://{host}" if port == default_port else f"{protocol}://{host}:{port}"


class Server:
    """
    A started server. Returned by start_server(); not meant to be built
    directly.

    Attributes:
        origin: "http://127.0.0.1:8080"-like origin clients can use.
        port: The bound port (the chosen one when port=0 was asked).
        stopped: Future resolved with the stop reason.
    """

    def __init__(
        self,
        config: ServerConfig,
        request_handler: Callable[[Request], Any],
        cancellation_token: Optional[CancellationToken] = None,
        signal_bridge: Optional[SignalBridge] = None,
        started_callback: Optional[Callable[..., Any]] = None,
        stopped_callback: Optional[Callable[..., Any]] = None,
        request_waiting_callback: Optional[Callable[[Request, int], Any]] = None,
        server_internal_error_to_response: Callable[..., Any] = internal_error_to_response,
        error_is_cancellation: Optional[Callable[[BaseException], bool]] = None,
    ):
        self.config = config
        self.request_handler = request_handler
        self.signal_bridge = signal_bridge or default_signal_bridge()
        self.started_callback = started_callback
        self.stopped_callback = stopped_callback
        self.request_waiting_callback = request_waiting_callback or _default_request_waiting_callback
        self.server_internal_error_to_response = server_internal_error_to_response
        self.cors = CORSConfig.from_server_config(config)
        self.error_is_cancellation = error_is_cancellation
        self.redirect_http_to_https = config.wants_redirect_http_to_https()
        if config.redirect_http_to_https and config.protocol == "http":
            logger.warning("redirect_http_to_https ignored because protocol is http")

        self.status = ServerStatus.STARTING
        self.origin = ""
        self.port = 0

        loop = asyncio.get_running_loop()
        self._loop = loop
        self.stopped: "asyncio.Future[Any]" = loop.create_future()
        self._stop_future: Optional["asyncio.Future[None]"] = None

        self._external_token = cancellation_token
        # fires when start must be abandoned
        self._start_source = CancellationSource()
        # fires when stop() begins; every request token derives from it
        self._stop_source = CancellationSource()
        self.cancellation_token = self._stop_source.token

        self._socket_server: Optional[SocketServer] = None
        self._listener: Optional[StoppableOperation] = None
        self._cleanups: List[Callable[[Any], Any]] = []
        self._waiting: List[Exchange] = []
        self._external_registration: Optional[Registration] = None
        self._remove_trigger_listeners: Callable[[], None] = lambda: None

    def get_status(self) -> ServerStatus:
        return self.status

    # ─────────────────────────────────────────────────────────────────────
    # START
    # ─────────────────────────────────────────────────────────────────────

    async def _start(self) -> None:
        config = self.config
        self._listen_to_triggers()

        if self._external_token is not None:
            self._external_registration = self._external_token.register(self._start_source.cancel)
            if self._external_token.cancellation_requested:
                self._start_source.cancel(self._external_token.reason)

        try:
            if config.force_port:
                await kill_port_owner(config.port)

            ssl_context = None
            if config.protocol == "https":
                ssl_context = create_ssl_context(
                    config.certificate_file,
                    config.private_key_file,
                    http2=config.http2,
                    http1_allowed=config.http1_allowed,
                )

            self._socket_server = SocketServer(
                ssl_context=ssl_context,
                http2=config.http2,
                http1_allowed=config.http1_allowed,
                nagle=config.nagle,
                max_request_size=config.max_request_size,
                accept_plaintext=self.redirect_http_to_https,
            )
            # subscribed before listening: a connection may arrive before start resumes
            self._track()
            self._listener = listen(
                self._start_source.token,
                self._socket_server,
                port=config.port,
                ip=config.ip,
                port_hint=config.port_hint,
            )
            self.port = await self._listener
        except BaseException:
            self._abandon_start()
            raise

        if self._external_registration is not None:
            self._external_registration.unregister()
            self._external_registration = self._external_token.register(self.stop)

        self.origin = server_origin(config.protocol, config.ip, self.port)
        self.status = ServerStatus.OPENED
        logger.info(f"{config.server_name} started at {self.origin}")
        if self.started_callback is not None:
            self.started_callback(origin=self.origin)
        waiting, self._waiting = self._waiting, []
        for exchange in waiting:
            self._on_exchange(exchange)

    def _abandon_start(self) -> None:
        self._remove_trigger_listeners()
        if self._external_registration is not None:
            self._external_registration.unregister()
        waiting, self._waiting = self._waiting, []
        for exchange in waiting:
            exchange.response.destroy()
        reason = self._start_source.reason if self._start_source.cancellation_requested else NOT_SPECIFIED
        self.status = ServerStatus.STOPPED
        if not self.stopped.done():
            self.stopped.set_result(reason)

    def _track(self) -> None:
        server = self._socket_server

        request_tracker = RequestTracker()
        request_tracker.track(server)
        self._cleanups.append(lambda reason: request_tracker.stop(status_for_reason(reason), reason))

        connection_tracker = ConnectionTracker()
        connection_tracker.track(server)
        self._cleanups.append(connection_tracker.stop)

        if self.config.http2:
            session_tracker = SessionTracker()
            session_tracker.track(server)
            self._cleanups.append(session_tracker.stop)

        subscription = server.requests.subscribe(next=self._on_exchange)
        self._cleanups.append(lambda reason: subscription.unsubscribe())

    def _listen_to_triggers(self) -> None:
        config = self.config
        triggers: List[str] = []
        if config.stop_on_exit:
            triggers.extend(t for t in TEARDOWN_TRIGGERS if t != "SIGINT" or config.stop_on_sigint)
        elif config.stop_on_sigint:
            triggers.extend(SIGINT_TRIGGERS)
        if config.stop_on_crash:
            triggers.extend(CRASH_TRIGGERS)
        if triggers:
            self._remove_trigger_listeners = self.signal_bridge.race(self._on_trigger, triggers)

    def _on_trigger(self, trigger: str, value: Any) -> None:
        reason = TRIGGER_REASONS[trigger]
        loop = self._loop
        if loop.is_closed():
            # asyncio.run() already tore the loop down, the process closes the sockets
            logger.debug(f"{trigger} received after the event loop closed, nothing to stop")
            return
        logger.debug(f"{trigger} received, stopping {self.config.server_name}")
        if loop.is_running():
            loop.call_soon_threadsafe(self.stop, reason)
            return
        # interpreter exit with the loop left open: nothing else will run it
        if self._stop_future is None:
            self._stop_future = loop.create_task(self._stop(reason))
        loop.run_until_complete(self._stop_future)

    # ─────────────────────────────────────────────────────────────────────
    # STOP
    # ─────────────────────────────────────────────────────────────────────

    def stop(self, reason: Any = NOT_SPECIFIED) -> "asyncio.Future[None]":
        """Stop the server. Idempotent; every call returns the same future."""
        if self._stop_future is None:
            self._stop_future = asyncio.ensure_future(self._stop(reason))
        return self._stop_future

    async def _stop(self, reason: Any) -> None:
        if self.status is ServerStatus.STOPPED:
            return
        if self.status is ServerStatus.STARTING:
            self._start_source.cancel(reason)
            await asyncio.shield(self.stopped)
            return

        self.status = ServerStatus.STOPPING
        self._remove_trigger_listeners()
        if self._external_registration is not None:
            self._external_registration.unregister()
        self._stop_source.cancel(reason)

        results = await asyncio.gather(*(_call(cleanup, reason) for cleanup in self._cleanups), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                logger.error("error while stopping server", exc_info=result)

        await self._listener.stop(reason)

        self.status = ServerStatus.STOPPED
        logger.info(f"{self.config.server_name} stopped because {reason}")
        if not self.stopped.done():
            self.stopped.set_result(reason)
        if self.stopped_callback is not None:
            self.stopped_callback(reason=reason)

    # ─────────────────────────────────────────────────────────────────────
    # REQUEST DISPATCH
    # ─────────────────────────────────────────────────────────────────────

    def _on_exchange(self, exchange: Exchange) -> None:
        if self.status is ServerStatus.STARTING:
            # accepted before start resumed: dispatched once opened
            self._waiting.append(exchange)
            return
        if self.status is not ServerStatus.OPENED:
            # arrived while the trackers were being stopped
            reason = self._stop_source.reason
            writer = exchange.response
            writer.write_head(status_for_reason(reason), str(reason))
            writer.destroy()
            return
        if self.redirect_http_to_https and not exchange.request.connection.encrypted:
            self._redirect_to_https(exchange)
            return
        self._loop.create_task(self._handle_safely(exchange))

    def _redirect_to_https(self, exchange: Exchange) -> None:
        incoming = exchange.request
        location = f"{self.origin}{incoming.target}"
        logger.info(f"{incoming.method} {incoming.target} over plain http, redirected to {location}")
        exchange.response.write_head(301, None, {"location": location, "connection": "close"})
        exchange.response.end()

    async def _handle_safely(self, exchange: Exchange) -> None:
        try:
            await self._handle(exchange)
        except Exception:
            logger.exception(f"failed to respond to {exchange.request.method} {exchange.request.target}")
            exchange.response.destroy()

    def _create_request(self, exchange: Exchange, token: CancellationToken) -> Request:
        incoming = exchange.request
        return Request(
            method=incoming.method,
            resource=incoming.target,
            origin=self.origin,
            headers=incoming.headers,
            body=incoming.body.publisher if incoming.body is not None else None,
            cancellation_token=token,
            http_version=incoming.http_version,
            client_address=incoming.connection.address,
        )

    async def _handle(self, exchange: Exchange) -> None:
        writer = exchange.response

        close_source = CancellationSource()
        writer.on_close(lambda _: close_source.cancel(REQUEST_CLOSED))
        token = compose_cancellation_token(self._stop_source.token, close_source.token)
        request = self._create_request(exchange, token)

        time_end = time_start("time to start responding")
        response, error = await self._generate_response(request)
        timing = time_end()

        logger.info(f"{request.method} {request.url}")

        if error is not None and not isinstance(error, HandlerError):
            if self._stop_source.cancellation_requested:
                # the request tracker answers it
                logger.info("ignored because server closing")
            else:
                logger.info("ignored because request canceled")
                writer.destroy()
            return

        if writer.closed:
            logger.info("request aborted by client")
            release_body(response)
            return

        if error is not None:
            logger.error(
                f"internal error while handling request.\n"
                f"--- request ---\n{request.method} {request.url}",
                exc_info=error.original,
            )

        if self.config.send_server_timing:
            response = compose_response(
                response,
                headers=timing_to_server_timing_headers({**response.timing, **timing}),
            )
        if self.config.content_negotiation_warnings:
            self._check_content_negotiation(request, response)

        logger.info(f"{response.status} {response.status_text}")
        populate_response(writer, response, ignore_body=request.method == "HEAD")

        if error is not None and self.config.stop_on_internal_error:
            self.stop(INTERNAL_ERROR)

    async def _generate_response(self, request: Request):
        """(response, error). error is a cancellation (response None), a HandlerError or None."""
        try:
            if self.cors.enabled and is_preflight(request):
                return self._with_cors(request, preflight_response()), None
            result = await self._run_handler(request)
            if not is_response(result):
                if result is not None and result is not NO_RESPONSE:
                    raise TypeError(f"request handler must return a Response, got {type(result).__name__}")
                result = Response(status=501)
            return self._with_cors(request, result), None
        except Exception as error:
            if self._is_cancellation(error, request):
                return None, error
            error_response = await _call(
                self.server_internal_error_to_response,
                error,
                request,
                self.config.send_server_internal_error_details,
            )
            response = compose_response(
                self._with_cors(
                    request,
                    Response(status=500, headers={"cache-control": "no-store", "content-type": "text/plain"}),
                ),
                error_response,
            )
            return response, HandlerError(error, request)

    def _is_cancellation(self, error: BaseException, request: Request) -> bool:
        """Errors that drop the request instead of answering 500."""
        if is_cancel_error(error) and request.cancellation_token.cancellation_requested:
            return True
        if self._stop_source.cancellation_requested and (
            error is self._stop_source.reason or is_not_connected_error(error)
        ):
            return True
        return self.error_is_cancellation is not None and bool(self.error_is_cancellation(error))

    async def _run_handler(self, request: Request) -> Any:
        """Run the handler as a task the request token can cancel."""
        token = request.cancellation_token
        token.throw_if_requested()

        task = asyncio.ensure_future(_call(self.request_handler, request))
        registration = token.register(lambda reason: task.cancel())
        waiting = self._loop.call_later(
            self.config.request_waiting_ms / 1000,
            self.request_waiting_callback,
            request,
            self.config.request_waiting_ms,
        )
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancellation_requested and task.cancelled():
                raise CancelError(token.reason) from None
            raise
        finally:
            waiting.cancel()
            registration.unregister()

    def _with_cors(self, request: Request, response: Response) -> Response:
        if not self.cors.enabled:
            return response
        cors_headers = generate_access_control_headers(request.headers, self.cors)
        return compose_response(response, headers=cors_headers)

    def _check_content_negotiation(self, request: Request, response: Response) -> None:
        content_type = response.headers.get("content-type")
        if not content_type or "accept" not in request.headers:
            return
        if not accepts_content_type(request.headers["accept"], content_type):
            logger.warning(
                f"response content type is not in the request accepted content types.\n"
                f"--- response content-type header ---\n{content_type}\n"
                f"--- request accept header ---\n{request.headers['accept']}"
            )

    def __repr__(self) -> str:
        return f"<Server {self.origin or '-'} {self.status.value}>"


def release_body(response: Optional[Response]) -> None:
    """Release a body nobody will read (open file, stream, SSE client slot)."""
    if response is None:
        return
    body = response.body
    if body is not None and not isinstance(body, (str, bytes, bytearray)):
        to_publisher(body).subscribe().unsubscribe()


def populate_response(writer: ResponseWriter, response: Response, ignore_body: bool = False) -> None:
    """Write response into writer: head now, body as it is published."""
    writer.write_head(response.status, response.status_text, response.headers)

    body = response.body
    if isinstance(body, str) and response.body_encoding:
        body = body.encode(response.body_encoding)

    if ignore_body or body is None:
        release_body(response)
        writer.end()
        return

    def on_error(exc: BaseException) -> None:
        logger.error("error while streaming response body", exc_info=exc)
        writer.destroy()

    subscription: Subscription = to_publisher(body).subscribe(next=writer.write, error=on_error, complete=writer.end)
    writer.on_close(lambda _: subscription.unsubscribe())


async def start_server(
    config: Optional[ServerConfig] = None,
    request_handler: Optional[Callable[[Request], Any]] = None,
    cancellation_token: Optional[CancellationToken] = None,
    *,
    signal_bridge: Optional[SignalBridge] = None,
    started_callback: Optional[Callable[..., Any]] = None,
    stopped_callback: Optional[Callable[..., Any]] = None,
    request_waiting_callback: Optional[Callable[[Request, int], Any]] = None,
    server_internal_error_to_response: Callable[..., Any] = internal_error_to_response,
    error_is_cancellation: Optional[Callable[[BaseException], bool]] = None,
    **options: Any,
) -> Server:
    """
    Start a server and return it once it listens.

    Logging is left to the application (see log.setup_logging); the server
    only writes to the "gracefulhttp" loggers.

    Args:
        config: Base configuration (ServerConfig() when omitted).
        request_handler: handler(request) -> Response | NO_RESPONSE | None,
            sync or async. Without one every request gets 501.
        cancellation_token: Stops the server (or abandons the start) when it
            fires.
        signal_bridge: Where signal triggers come from (the process-wide
            bridge by default).
        started_callback: Called with origin=... once listening.
        stopped_callback: Called with reason=... once stopped.
        request_waiting_callback: Called with (request, request_waiting_ms)
            when a handler takes longer than request_waiting_ms.
        server_internal_error_to_response: (error, request, send_details)
            -> Response for handlers that raise.
        error_is_cancellation: error -> bool. Handler errors it accepts drop
            the request like a cancellation instead of answering 500.
        **options: Any ServerConfig field, overriding config.

    Raises:
        ConfigurationError: Invalid options.
        BindError: The port cannot be bound.
        CancelError: cancellation_token fired (or stop() was called) while
            starting.
    """
    config = (config or ServerConfig()).merge(**options)
    config.validate()

    server = Server(
        config,
        request_handler or (lambda request: NO_RESPONSE),
        cancellation_token=cancellation_token,
        signal_bridge=signal_bridge,
        started_callback=started_callback,
        stopped_callback=stopped_callback,
        request_waiting_callback=request_waiting_callback,
        server_internal_error_to_response=server_internal_error_to_response,
        error_is_cancellation=error_is_cancellation,
    )
    await server._start()
    return server
