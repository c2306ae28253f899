"""
TLS setup and protocol selection.

HTTPS servers negotiate the application protocol during the TLS handshake
(ALPN). The client lists what it speaks, we pick:

    client offers ["h2", "http/1.1"], server has http2=True  → "h2"
    client offers ["http/1.1"]                               → "http/1.1"
    client offers ["http/1.1"], http1_allowed=False          → connection closed

ProtocolSelector reads the result in connection_made() and hands the
transport to HTTP2Protocol or HTTP1Protocol. A plaintext transport (plain HTTP
accepted on the https port, see SniffingServer) always goes to HTTP1Protocol.
"""

import asyncio
import logging
import ssl
from typing import TYPE_CHECKING, Optional

from ..errors import ConfigurationError
from .http1 import HTTP1Protocol
from .http2 import HTTP2Protocol

if TYPE_CHECKING:
    from .socket_server import SocketServer

logger = logging.getLogger(__name__)


def create_ssl_context(
    certificate_file: str,
    private_key_file: str,
    http2: bool = False,
    http1_allowed: bool = True,
) -> ssl.SSLContext:
    """
    Server-side SSLContext with ALPN configured.

    Raises:
        ConfigurationError: The certificate or key cannot be loaded.
    """
    context = ssl.create_default_context(purpose=ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certificate_file, private_key_file)
    except (OSError, ssl.SSLError) as exc:
        raise ConfigurationError(f"cannot load certificate {certificate_file!r}: {exc}") from exc

    # CRIME: never compress at the TLS layer
    context.options |= ssl.OP_NO_COMPRESSION

    protocols = []
    if http2:
        protocols.append("h2")
    if http1_allowed or not http2:
        protocols.append("http/1.1")
    context.set_alpn_protocols(protocols)
    return context


class ProtocolSelector(asyncio.Protocol):
    """Delegates a new transport to the protocol ALPN settled on."""

    def __init__(self, server: "SocketServer"):
        self._server = server
        self._delegate: Optional[asyncio.Protocol] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        ssl_object = transport.get_extra_info("ssl_object")
        selected = ssl_object.selected_alpn_protocol() if ssl_object is not None else None

        if selected == "h2" and self._server.http2:
            self._delegate = HTTP2Protocol(self._server)
        elif ssl_object is not None and self._server.http2 and not self._server.http1_allowed:
            logger.debug(f"closing connection without h2 support (ALPN: {selected})")
            transport.close()
            return
        else:
            self._delegate = HTTP1Protocol(self._server)
        self._delegate.connection_made(transport)

    def data_received(self, data: bytes) -> None:
        if self._delegate is not None:
            self._delegate.data_received(data)

    def eof_received(self) -> Optional[bool]:
        if self._delegate is not None:
            return self._delegate.eof_received()
        return None

    def connection_lost(self, exc: Optional[BaseException]) -> None:
        if self._delegate is not None:
            self._delegate.connection_lost(exc)

    def pause_writing(self) -> None:
        if self._delegate is not None:
            self._delegate.pause_writing()

    def resume_writing(self) -> None:
        if self._delegate is not None:
            self._delegate.resume_writing()
