"""
Unit tests for service composition and server timing.
"""

import re

import pytest

from gracefulhttp.http.request import Request
from gracefulhttp.http.response import NO_RESPONSE, Response
from gracefulhttp.server_timing import time_function, timing_to_server_timing_headers
from gracefulhttp.services import compose_service, compose_service_with_timing


def request(path="/"):
    return Request(method="GET", resource=path)


def serve_api(request):
    if request.path.startswith("/api"):
        return Response(status=200, body="api")
    return NO_RESPONSE


async def serve_files(request):
    if request.path.startswith("/files"):
        return Response(status=200, body="file")
    return None


class TestComposeService:
    """Tests for compose_service()."""

    @pytest.mark.asyncio
    async def test_first_response_wins(self):
        """Services are tried in order, sync or async."""
        handler = compose_service(serve_api, serve_files)

        assert (await handler(request("/api/users"))).body == "api"
        assert (await handler(request("/files/a.txt"))).body == "file"

    @pytest.mark.asyncio
    async def test_no_service_matches(self):
        """None when every service declines."""
        handler = compose_service(serve_api, serve_files)
        assert await handler(request("/other")) is None

    @pytest.mark.asyncio
    async def test_later_services_not_called(self):
        """A matching service stops the chain."""
        calls = []

        def spy(request):
            calls.append(request)

        handler = compose_service(serve_api, spy)
        await handler(request("/api"))

        assert calls == []


class TestComposeServiceWithTiming:
    """Tests for compose_service_with_timing()."""

    @pytest.mark.asyncio
    async def test_timing_names_each_service_tried(self):
        """Each service tried appears in the response timing."""
        handler = compose_service_with_timing({"api service": serve_api, "file service": serve_files})

        response = await handler(request("/files/a.txt"))

        assert response.body == "file"
        assert set(response.timing) == {"api service", "file service"}
        assert all(duration >= 0 for duration in response.timing.values())

    @pytest.mark.asyncio
    async def test_no_match(self):
        handler = compose_service_with_timing({"api service": serve_api})
        assert await handler(request("/other")) is None


class TestServerTiming:
    """Tests for the server-timing header."""

    def test_time_function(self):
        """time_function returns the timing and the value."""
        timing, value = time_function("compute", lambda: 42)

        assert value == 42
        assert list(timing) == ["compute"]
        assert timing["compute"] >= 0

    def test_header_format(self):
        """Entries get single letter names, the readable name goes in desc."""
        headers = timing_to_server_timing_headers({"file service": 1.2, "time to start responding": 3.4})

        assert headers == {
            "server-timing": 'a;desc="file service";dur=1.2, b;desc="time to start responding";dur=3.4'
        }

    def test_many_entries(self):
        """Past the twentieth entry the name is "zz"."""
        header = timing_to_server_timing_headers({f"step {i}": i for i in range(22)})["server-timing"]
        names = re.findall(r"(?:^|, )(\w+);", header)

        assert names[:3] == ["a", "b", "c"]
        assert names[19] == "t"
        assert names[20:] == ["zz", "zz"]
