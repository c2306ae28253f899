"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for start_server().

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION SOURCES                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Keyword overrides                                              │
    │      └── start_server(config, port=3000)                           │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── ServerConfig.from_env()   (GRACEFULHTTP_PORT=3000)         │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

validate() runs before anything is opened: a bad combination raises
ConfigurationError and the server never starts.

=============================================================================
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, List, Optional

from .errors import ConfigurationError

DEFAULT_ALLOWED_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
DEFAULT_ALLOWED_HEADERS = ["x-requested-with", "content-type", "accept"]

PROTOCOLS = ("http", "https")
LOG_LEVELS = ("off", "debug", "info", "warn", "warning", "error")


@dataclass
class ServerConfig:
    """
    Configuration for a server started with start_server().

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK        protocol, http2, http1_allowed, ip, port, port_hint,
                   force_port, nagle
    TLS            certificate_file, private_key_file, redirect_http_to_https
    LIFECYCLE      keep_process_alive, stop_on_sigint, stop_on_exit,
                   stop_on_crash, stop_on_internal_error
    CORS           access_control_*
    DIAGNOSTICS    send_server_timing, send_server_internal_error_details,
                   request_waiting_ms, content_negotiation_warnings
    LOGGING        log_level, server_name

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    protocol: str = "http"
    """Either "http" or "https"."""

    http2: bool = False
    """Serve HTTP/2 (negotiated with ALPN). Requires protocol="https"."""

    http1_allowed: bool = True
    """With http2, still accept clients that only speak HTTP/1.1."""

    ip: str = "0.0.0.0"
    """
    Address to bind.
    - "127.0.0.1" - Localhost only
    - "0.0.0.0" - All interfaces; the origin then uses a reachable address
    """

    port: int = 0
    """Port to bind. 0 lets the OS pick any free port."""

    port_hint: Optional[int] = None
    """First port to try when searching for a free one (overrides port)."""

    force_port: bool = False
    """Free the port first by killing whatever process holds it."""

    nagle: bool = True
    """False disables Nagle's algorithm (TCP_NODELAY) on each connection."""

    max_request_size: int = 10 * 1024 * 1024
    """Largest accepted HTTP/1.1 request, headers + body (10 MB)."""

    # ─────────────────────────────────────────────────────────────────────
    # TLS
    # ─────────────────────────────────────────────────────────────────────

    certificate_file: Optional[str] = None
    """PEM certificate chain. Required with private_key_file for https."""

    private_key_file: Optional[str] = None
    """PEM private key matching certificate_file."""

    redirect_http_to_https: Optional[bool] = None
    """
    Answer plain HTTP requests reaching the https port with a 301 to the
    https origin. None means on for https without http2.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LIFECYCLE
    # ─────────────────────────────────────────────────────────────────────

    keep_process_alive: bool = True
    """False lets SSE keep-alive timers and friends not block exit."""

    stop_on_sigint: bool = True
    """Stop gracefully on Ctrl+C."""

    stop_on_exit: bool = True
    """Stop on SIGTERM / SIGHUP / SIGINT / interpreter exit."""

    stop_on_crash: bool = False
    """Stop when an exception escapes the event loop or the main thread."""

    stop_on_internal_error: bool = False
    """Stop when the request handler raises (not when it returns a 500)."""

    # ─────────────────────────────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────────────────────────────

    access_control_allowed_origins: List[str] = field(default_factory=list)
    access_control_allowed_methods: List[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_METHODS)
    )
    access_control_allowed_headers: List[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_HEADERS)
    )
    access_control_allow_request_origin: bool = False
    access_control_allow_request_method: bool = False
    access_control_allow_request_headers: bool = False
    access_control_allow_credentials: bool = False
    access_control_max_age: int = 600
    """Seconds a browser may cache a preflight answer."""

    # ─────────────────────────────────────────────────────────────────────
    # DIAGNOSTICS
    # ─────────────────────────────────────────────────────────────────────

    send_server_timing: bool = False
    """Add a server-timing header (https://www.w3.org/TR/server-timing/)."""

    send_server_internal_error_details: bool = False
    """Put the traceback in 500 bodies. Development only."""

    request_waiting_ms: int = 20000
    """After this long without a response, request_waiting_callback fires."""

    content_negotiation_warnings: bool = True
    """Warn when a response content-type is not accepted by the request."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "info"
    """off, debug, info, warn, error. Applied by the command line, not by start_server()."""

    server_name: str = "server"
    """Name used in log lines ("server started at ...")."""

    @property
    def cors_enabled(self) -> bool:
        return bool(self.access_control_allow_request_origin or self.access_control_allowed_origins)

    @classmethod
    def from_env(cls, **overrides: Any) -> "ServerConfig":
        """
        Build a configuration from environment variables.

        GRACEFULHTTP_PROTOCOL      http / https
        GRACEFULHTTP_IP            bind address
        GRACEFULHTTP_PORT          bind port
        GRACEFULHTTP_HTTP2         1 / 0
        GRACEFULHTTP_CERTIFICATE   certificate file
        GRACEFULHTTP_PRIVATE_KEY   private key file
        GRACEFULHTTP_LOG_LEVEL     log level
        """
        config = cls(
            protocol=os.getenv("GRACEFULHTTP_PROTOCOL", "http"),
            ip=os.getenv("GRACEFULHTTP_IP", "0.0.0.0"),
            port=int(os.getenv("GRACEFULHTTP_PORT", "0")),
            http2=os.getenv("GRACEFULHTTP_HTTP2", "0") in ("1", "true", "yes"),
            certificate_file=os.getenv("GRACEFULHTTP_CERTIFICATE"),
            private_key_file=os.getenv("GRACEFULHTTP_PRIVATE_KEY"),
            log_level=os.getenv("GRACEFULHTTP_LOG_LEVEL", "info"),
        )
        return config.merge(**overrides)

    def merge(self, **overrides: Any) -> "ServerConfig":
        """Copy with some fields replaced; unknown names are rejected."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    def wants_redirect_http_to_https(self) -> bool:
        if self.redirect_http_to_https is None:
            return self.protocol == "https" and not self.http2
        return self.redirect_http_to_https and self.protocol == "https"

    def validate(self) -> None:
        """
        Fail fast on invalid combinations.

        Raises:
            ConfigurationError: On the first problem found.
        """
        if self.protocol not in PROTOCOLS:
            raise ConfigurationError(f"protocol must be http or https, got {self.protocol}")

        if not 0 <= self.port < 65536:
            raise ConfigurationError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.port == 0 and self.force_port:
            raise ConfigurationError("no need to pass force_port when port is 0")

        if self.protocol == "https":
            if not self.certificate_file and not self.private_key_file:
                raise ConfigurationError("missing certificate_file and private_key_file for https server")
            if not self.certificate_file:
                raise ConfigurationError("you passed a private_key_file without certificate_file")
            if not self.private_key_file:
                raise ConfigurationError("you passed a certificate_file without private_key_file")

        if self.http2 and self.protocol != "https":
            raise ConfigurationError(f'http2 needs "https" but protocol is "{self.protocol}"')

        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigurationError(f"unknown log_level: {self.log_level}")

        if self.request_waiting_ms <= 0:
            raise ConfigurationError("request_waiting_ms must be > 0")
