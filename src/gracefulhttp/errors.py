"""
=============================================================================
ERROR TAXONOMY
=============================================================================

Every failure the server can meet falls into one of these families:

    ┌──────────────────────┬───────────────────────────────────────────────┐
    │ ConfigurationError   │ Bad option combination. start_server() fails, │
    │                      │ no socket is ever opened.                     │
    ├──────────────────────┼───────────────────────────────────────────────┤
    │ BindError            │ Port busy / not allowed. Surfaced to caller   │
    │   AddressInUseError  │ of start_server(), never retried here.        │
    │   PermissionDenied.. │                                               │
    ├──────────────────────┼───────────────────────────────────────────────┤
    │ CancelError          │ Cooperative cancellation. NOT a defect.       │
    ├──────────────────────┼───────────────────────────────────────────────┤
    │ HandlerError         │ Request handler raised. Converted to a 500.   │
    ├──────────────────────┼───────────────────────────────────────────────┤
    │ HTTPParseError       │ Malformed HTTP/1.1 bytes. Answered 400/413/.. │
    └──────────────────────┴───────────────────────────────────────────────┘

A connection that is already gone when we try to destroy it is not an
error at all; is_not_connected_error() recognizes that case.

=============================================================================
"""

import errno
from typing import Any


class ServerError(Exception):
    """Base class for every error raised by gracefulhttp."""


class ConfigurationError(ServerError, ValueError):
    """Invalid combination of startup options."""


class BindError(ServerError, OSError):
    """
    The listening socket could not be bound.

    Attributes:
        port: The port we tried to bind.
        ip: The address we tried to bind.
    """

    def __init__(self, message: str, *, port: int = 0, ip: str = "", errno_code: int = 0):
        OSError.__init__(self, errno_code, message)
        self.port = port
        self.ip = ip

    def __str__(self) -> str:
        return self.strerror or super().__str__()


class AddressInUseError(BindError):
    """Another socket already listens on ip:port."""


class PermissionDeniedError(BindError):
    """The process is not allowed to bind ip:port (e.g. port < 1024)."""


class CancelError(ServerError):
    """
    Raised when an operation is abandoned because its cancellation token fired.

    The reason is whatever value was handed to CancellationSource.cancel().
    Callers should never treat this as a crash.
    """

    def __init__(self, reason: Any = None):
        super().__init__(f"canceled because {reason}")
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CancelError):
            return NotImplemented
        return self.reason == other.reason

    def __hash__(self) -> int:
        return id(self)


class HandlerError(ServerError):
    """
    The request handler raised while producing a response.

    Attributes:
        request: The request being handled.
        original: The exception raised by the handler.
    """

    def __init__(self, original: BaseException, request: Any = None):
        super().__init__(f"request handler failed: {original!r}")
        self.original = original
        self.request = request


class HTTPParseError(ServerError):
    """
    Raised when HTTP/1.1 request bytes cannot be parsed.

    Carries the status the protocol answers with:

        400 Bad Request
        413 Payload Too Large
        505 HTTP Version Not Supported
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def is_cancel_error(error: object) -> bool:
    return isinstance(error, CancelError)


_NOT_CONNECTED_ERRNOS = {
    errno.ENOTCONN,
    errno.ECONNRESET,
    errno.EPIPE,
    errno.EBADF,
}


def is_not_connected_error(error: object) -> bool:
    """
    Tell whether error means "the peer is already gone".

    Destroying a socket that is already dead is the TransportDestroyRace
    case: trackers count it as a successful destroy.
    """
    if isinstance(error, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return True
    if isinstance(error, OSError) and error.errno in _NOT_CONNECTED_ERRNOS:
        return True
    return False
