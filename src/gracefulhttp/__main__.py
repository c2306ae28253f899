"""
=============================================================================
COMMAND LINE: SERVE A DIRECTORY
=============================================================================

    # current directory on an OS-chosen port
    python -m gracefulhttp

    # ./public on port 3000, reachable from other machines
    python -m gracefulhttp ./public --port 3000 --ip 0.0.0.0

    # HTTPS + HTTP/2
    python -m gracefulhttp ./public --https --cert cert.pem --key key.pem --http2

    # development: reflect every origin, no caching
    python -m gracefulhttp ./public --cors --cache none

Ctrl+C (or SIGTERM) stops the server gracefully: pending requests get a
503, connections are closed, then the process exits.

=============================================================================
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import ServerConfig
from .errors import ServerError
from .handlers.static import CACHE_STRATEGIES, serve_file
from .http.request import Request
from .http.response import Response
from .log import setup_logging
from .server import start_server


def create_directory_handler(root: Path, cache_strategy: str = "etag"):
    """Handler serving files below root; "/" serves root/index.html."""
    root = root.resolve()

    async def handler(request: Request) -> Optional[Response]:
        relative = request.path.lstrip("/") or "index.html"
        path = (root / relative).resolve()
        if path != root and root not in path.parents:
            return Response(status=403, status_text="outside of served directory")
        return await serve_file(
            path,
            method=request.method,
            headers=request.headers,
            can_read_directory=True,
            cache_strategy=cache_strategy,
        )

    return handler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m gracefulhttp",
        description="Serve a directory over HTTP, HTTPS or HTTP/2",
    )

    parser.add_argument("directory", nargs="?", default=".", help="Directory to serve (default: .)")

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--ip", default="127.0.0.1", help="Address to bind (default: 127.0.0.1)")
    parser.add_argument("--port", "-p", type=int, default=0, help="Port to listen on (default: any free port)")
    parser.add_argument("--force-port", action="store_true", help="Kill whatever process holds --port")

    # ─────────────────────────────────────────────────────────────────────
    # TLS ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--https", action="store_true", help="Serve over TLS")
    parser.add_argument("--cert", help="PEM certificate file (with --https)")
    parser.add_argument("--key", help="PEM private key file (with --https)")
    parser.add_argument("--http2", action="store_true", help="Offer HTTP/2 through ALPN (with --https)")

    # ─────────────────────────────────────────────────────────────────────
    # FEATURE ARGUMENTS
    # ─────────────────────────────────────────────────────────────────────

    parser.add_argument("--cors", action="store_true", help="Allow every origin, method and header")
    parser.add_argument("--cache", choices=CACHE_STRATEGIES, default="etag", help="Cache strategy (default: etag)")
    parser.add_argument("--server-timing", action="store_true", help="Send server-timing headers")
    parser.add_argument(
        "--log-level", "-l",
        choices=["debug", "info", "warn", "error", "off"],
        default="info",
        help="Logging level (default: info)",
    )
    parser.add_argument("--version", "-v", action="version", version=f"gracefulhttp {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        protocol="https" if args.https else "http",
        http2=args.http2,
        ip=args.ip,
        port=args.port,
        force_port=args.force_port,
        certificate_file=args.cert,
        private_key_file=args.key,
        access_control_allow_request_origin=args.cors,
        access_control_allow_request_method=args.cors,
        access_control_allow_request_headers=args.cors,
        send_server_timing=args.server_timing,
        log_level=args.log_level,
    )


async def serve(args: argparse.Namespace) -> None:
    config = config_from_args(args)
    setup_logging(config.log_level)
    server = await start_server(
        config,
        request_handler=create_directory_handler(Path(args.directory), args.cache),
    )
    await server.stopped


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if not Path(args.directory).is_dir():
        print(f"Error: {args.directory} is not a directory", file=sys.stderr)
        return 1
    try:
        asyncio.run(serve(args))
    except ServerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
