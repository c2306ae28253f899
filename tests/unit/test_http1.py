"""
HTTP/1.1 wire behavior, exercised through a running server.
"""

import pytest

from gracefulhttp.http.response import Response
from gracefulhttp.publisher import read_body


async def echo(request):
    body = await read_body(request.body)
    return Response(status=200, body=body or request.path.encode())


class TestKeepAlive:
    @pytest.mark.asyncio
    async def test_pipelined_requests_answered_in_order(self, start, http_raw):
        server = await start(echo)

        first, second = await http_raw(
            server.port,
            b"GET /one HTTP/1.1\r\nhost: x\r\n\r\n"
            b"GET /two HTTP/1.1\r\nhost: x\r\nconnection: close\r\n\r\n",
            responses=2,
        )

        assert (first.body, second.body) == (b"/one", b"/two")
        assert first.headers["connection"] == "keep-alive"
        assert second.headers["connection"] == "close"

    @pytest.mark.asyncio
    async def test_http10_closes_by_default(self, start, http_raw):
        server = await start(echo)
        [response] = await http_raw(server.port, b"GET /old HTTP/1.0\r\n\r\n")

        assert response.headers["connection"] == "close"
        assert response.body == b"/old"


class TestRequestBody:
    @pytest.mark.asyncio
    async def test_content_length_body(self, start, http_get):
        server = await start(echo)
        response = await http_get(server.port, "/", method="POST", body=b"hello")
        assert response.body == b"hello"

    @pytest.mark.asyncio
    async def test_chunked_body(self, start, http_raw):
        server = await start(echo)
        [response] = await http_raw(
            server.port,
            b"POST / HTTP/1.1\r\nhost: x\r\ntransfer-encoding: chunked\r\nconnection: close\r\n\r\n"
            b"5\r\nhello\r\n6\r\n world\r\n0\r\n\r\n",
        )
        assert response.body == b"hello world"

    @pytest.mark.asyncio
    async def test_body_too_large(self, start, http_raw):
        server = await start(echo, max_request_size=10)
        [response] = await http_raw(
            server.port,
            b"POST / HTTP/1.1\r\nhost: x\r\ncontent-length: 100\r\n\r\n",
        )
        assert response.status == 413
        assert response.headers["connection"] == "close"


class TestMalformedRequests:
    @pytest.mark.asyncio
    async def test_bad_request_line(self, start, http_raw):
        """The handler never sees it."""
        calls = []

        def handler(request):
            calls.append(request)

        server = await start(handler)
        [response] = await http_raw(server.port, b"NONSENSE\r\n\r\n")

        assert response.status == 400
        assert calls == []

    @pytest.mark.asyncio
    async def test_unsupported_version(self, start, http_raw):
        server = await start(echo)
        [response] = await http_raw(server.port, b"GET / HTTP/3.0\r\n\r\n")
        assert response.status == 505


class TestResponseFraming:
    @pytest.mark.asyncio
    async def test_streamed_body_is_chunked(self, start, http_get):
        """Without content-length HTTP/1.1 bodies are chunked."""

        async def chunks():
            yield "a"
            yield "b"

        server = await start(lambda request: Response(status=200, body=chunks()))
        response = await http_get(server.port)

        assert response.headers["transfer-encoding"] == "chunked"
        assert response.body == b"ab"

    @pytest.mark.asyncio
    async def test_head_drops_body(self, start, http_get):
        server = await start(lambda request: Response(status=200, body="not sent"))
        response = await http_get(server.port, method="HEAD")

        assert response.status == 200
        assert response.body == b""
