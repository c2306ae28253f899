"""
Unit tests for HTTP request parsing and the Request model.
"""

import pytest

from gracefulhttp.errors import HTTPParseError
from gracefulhttp.http.request import Request, RequestParser


class TestRequestParser:
    """Tests for RequestParser.parse_head()."""

    def test_parse_simple_get(self, sample_get_request: bytes):
        """Test parsing a simple GET request head."""
        head = RequestParser().parse_head(sample_get_request)

        assert head.method == "GET"
        assert head.target == "/api/users?page=1&limit=10"
        assert head.version == "HTTP/1.1"

    def test_parse_headers(self, sample_get_request: bytes):
        """Header names are lowercased."""
        head = RequestParser().parse_head(sample_get_request)

        assert head.headers["host"] == "localhost:8080"
        assert head.headers["user-agent"] == "pytest"
        assert head.headers["accept"] == "application/json"

    def test_repeated_headers_are_joined(self):
        """Repeated headers are joined with a comma."""
        head = RequestParser().parse_head(b"GET / HTTP/1.1\r\nAccept: text/html\r\nAccept: application/json")
        assert head.headers["accept"] == "text/html, application/json"

    def test_content_length_and_chunked(self, sample_post_request: bytes):
        """Body framing is read from the head."""
        head_bytes = sample_post_request.split(b"\r\n\r\n")[0]
        head = RequestParser().parse_head(head_bytes)

        assert head.content_length == len(b'{"name": "John", "email": "john@example.com"}')
        assert head.is_chunked is False

        chunked = RequestParser().parse_head(b"POST / HTTP/1.1\r\nTransfer-Encoding: chunked")
        assert chunked.is_chunked is True

    def test_invalid_content_length(self):
        """A non numeric content-length is a 400."""
        head = RequestParser().parse_head(b"POST / HTTP/1.1\r\nContent-Length: abc")
        with pytest.raises(HTTPParseError):
            head.content_length

    def test_invalid_request_line(self):
        """Test that invalid request line raises error."""
        with pytest.raises(HTTPParseError) as info:
            RequestParser().parse_head(b"INVALID")
        assert info.value.status_code == 400

    def test_invalid_method(self):
        """Test that invalid HTTP method raises error."""
        with pytest.raises(HTTPParseError) as info:
            RequestParser().parse_head(b"FOO / HTTP/1.1")
        assert info.value.status_code == 405

    def test_unsupported_version(self):
        """HTTP/2 is never spoken in clear text here."""
        with pytest.raises(HTTPParseError) as info:
            RequestParser().parse_head(b"GET / HTTP/2.0")
        assert info.value.status_code == 505

    def test_path_traversal_rejected(self):
        """Test that path traversal attempts are rejected."""
        with pytest.raises(HTTPParseError):
            RequestParser().parse_head(b"GET /../../../etc/passwd HTTP/1.1")
        with pytest.raises(HTTPParseError):
            RequestParser().parse_head(b"GET /a/%2e%2e/b HTTP/1.1")

    def test_head_too_large(self):
        """Heads above max_head_size get 431."""
        parser = RequestParser(max_head_size=32)
        with pytest.raises(HTTPParseError) as info:
            parser.parse_head(b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 64)
        assert info.value.status_code == 431


class TestRequest:
    """Tests for the Request model handed to handlers."""

    def test_path_and_query(self):
        """path is decoded, query parameters are parsed."""
        request = Request(method="GET", resource="/api/users%20list?page=1&tag=a&tag=b", origin="http://127.0.0.1:8080")

        assert request.path == "/api/users list"
        assert request.get_query("page") == "1"
        assert request.query_params["tag"] == ["a", "b"]
        assert request.get_query("missing") is None
        assert request.get_query("missing", "default") == "default"
        assert request.url == "http://127.0.0.1:8080/api/users%20list?page=1&tag=a&tag=b"

    def test_keep_alive(self):
        """Test keep-alive detection for each version."""
        assert Request(method="GET", resource="/").is_keep_alive is True
        assert Request(method="GET", resource="/", headers={"connection": "close"}).is_keep_alive is False
        assert Request(method="GET", resource="/", http_version="HTTP/1.0").is_keep_alive is False
        assert Request(
            method="GET", resource="/", http_version="HTTP/1.0", headers={"connection": "keep-alive"}
        ).is_keep_alive is True

    def test_get_header_case_insensitive(self):
        """get_header lowercases the name."""
        request = Request(method="GET", resource="/", headers={"content-type": "text/plain"})
        assert request.get_header("Content-Type") == "text/plain"
        assert request.get_header("X-Missing", "none") == "none"

    def test_default_token_not_cancelled(self):
        """A request built without a token gets one that never fires."""
        assert Request(method="GET", resource="/").cancellation_token.cancellation_requested is False
