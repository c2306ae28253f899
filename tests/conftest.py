"""
pytest configuration and fixtures.
"""

import asyncio
import shutil
import ssl
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import pytest
import pytest_asyncio

from gracefulhttp import ServerConfig, start_server
from gracefulhttp.core.signals import SignalBridge


@pytest.fixture
def sample_get_request() -> bytes:
    """Head of an HTTP GET request."""
    return (
        b"GET /api/users?page=1&limit=10 HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Accept: application/json\r\n"
        b"Connection: keep-alive"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Complete HTTP POST request with a JSON body."""
    body = b'{"name": "John", "email": "john@example.com"}'
    return (
        b"POST /api/users HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"Connection: close\r\n"
        + b"\r\n"
        + body
    )


@pytest.fixture
def config() -> ServerConfig:
    """Test server configuration: localhost, any port, no process signal handlers."""
    return ServerConfig(
        ip="127.0.0.1",
        port=0,
        stop_on_sigint=False,
        stop_on_exit=False,
        log_level="warn",
    )


@pytest.fixture
def signal_bridge() -> SignalBridge:
    """A private bridge, so tests never share handlers with each other."""
    return SignalBridge()


@pytest.fixture
def public_dir(tmp_path: Path) -> Path:
    """A small directory to serve files from."""
    (tmp_path / "index.html").write_text("<h1>hello</h1>")
    (tmp_path / "data.json").write_text('{"answer": 42}')
    (tmp_path / "empty.txt").write_bytes(b"")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "a.css").write_text("body {}")
    return tmp_path


@pytest_asyncio.fixture
async def start(config: ServerConfig, signal_bridge: SignalBridge):
    """start(handler, **options) → running server, stopped after the test."""
    servers = []

    async def start_test_server(request_handler=None, **options):
        server = await start_server(config, request_handler, signal_bridge=signal_bridge, **options)
        servers.append(server)
        return server

    yield start_test_server

    for server in servers:
        await server.stop("test done")


# ─────────────────────────────────────────────────────────────────────────────
# RAW HTTP/1.1 CLIENT
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class RawResponse:
    status: int
    status_text: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")


async def read_response(reader: asyncio.StreamReader, method: str = "GET") -> RawResponse:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    _, status, status_text = (lines[0].split(" ", 2) + [""])[:3]
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if line:
            name, _, value = line.partition(":")
            headers[name.strip().lower()] = value.strip()

    status_code = int(status)
    body = b""
    if method == "HEAD" or status_code in (204, 304):
        pass
    elif "content-length" in headers:
        body = await reader.readexactly(int(headers["content-length"]))
    elif headers.get("transfer-encoding") == "chunked":
        while True:
            size = int((await reader.readuntil(b"\r\n")).strip(), 16)
            if size == 0:
                await reader.readuntil(b"\r\n")
                break
            body += await reader.readexactly(size)
            await reader.readexactly(2)
    else:
        body = await reader.read()
    return RawResponse(status_code, status_text, headers, body)


async def fetch(
    port: int,
    path: str = "/",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    body: bytes = b"",
    ssl_context: Optional[ssl.SSLContext] = None,
    host: str = "127.0.0.1",
) -> RawResponse:
    """One request on a fresh connection (connection: close)."""
    reader, writer = await asyncio.open_connection(host, port, ssl=ssl_context)
    try:
        lines = [f"{method} {path} HTTP/1.1", f"host: {host}:{port}", "connection: close"]
        for name, value in (headers or {}).items():
            lines.append(f"{name}: {value}")
        if body:
            lines.append(f"content-length: {len(body)}")
        writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body)
        await writer.drain()
        return await read_response(reader, method)
    finally:
        writer.close()


async def send_raw(port: int, data: bytes, responses: int = 1, method: str = "GET"):
    """Send raw bytes on one connection, read back a number of responses."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(data)
        await writer.drain()
        return [await read_response(reader, method) for _ in range(responses)]
    finally:
        writer.close()


@pytest.fixture
def http_get():
    """The raw client, as a fixture."""
    return fetch


@pytest.fixture
def http_raw():
    return send_raw


# ─────────────────────────────────────────────────────────────────────────────
# TLS
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def certificate(tmp_path_factory) -> Dict[str, str]:
    """Self-signed certificate for 127.0.0.1, generated with openssl."""
    if shutil.which("openssl") is None:
        pytest.skip("openssl is not installed")
    directory = tmp_path_factory.mktemp("certificate")
    certificate_file = directory / "cert.pem"
    private_key_file = directory / "key.pem"
    result = subprocess.run(
        [
            "openssl", "req", "-x509", "-newkey", "rsa:2048", "-nodes",
            "-keyout", str(private_key_file),
            "-out", str(certificate_file),
            "-days", "1",
            "-subj", "/CN=localhost",
        ],
        capture_output=True,
    )
    if result.returncode != 0:
        pytest.skip(f"openssl failed: {result.stderr.decode(errors='replace')}")
    return {"certificate_file": str(certificate_file), "private_key_file": str(private_key_file)}


@pytest.fixture
def client_ssl_context() -> ssl.SSLContext:
    """Client context accepting the self-signed test certificate."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context
