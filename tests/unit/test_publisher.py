"""
Unit tests for publishers (response bodies, request bodies, server events).
"""

import asyncio
import io

import pytest

from gracefulhttp.http.request import RequestBody
from gracefulhttp.publisher import Broadcaster, Publisher, read_body, read_body_as_string, to_publisher


class TestPublisher:
    """Tests for Publisher adapters."""

    @pytest.mark.asyncio
    async def test_from_value(self):
        """A string body is emitted once."""
        assert await read_body_as_string(Publisher.from_value("hello")) == "hello"

    @pytest.mark.asyncio
    async def test_from_value_empty(self):
        """None completes without emitting anything."""
        values = []
        completed = []
        Publisher.from_value(None).subscribe(next=values.append, complete=lambda: completed.append(True))
        assert values == []
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_from_async_iterable(self):
        """Async generators are pumped in order."""

        async def chunks():
            yield b"a"
            yield b"b"

        assert await read_body(Publisher.from_async_iterable(chunks())) == b"ab"

    @pytest.mark.asyncio
    async def test_from_async_iterable_error(self):
        """An error raised by the iterable reaches the error callback."""

        async def broken():
            yield b"a"
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await read_body(Publisher.from_async_iterable(broken()))

    @pytest.mark.asyncio
    async def test_from_file_closes_file(self):
        """Files are streamed then closed."""
        fileobj = io.BytesIO(b"x" * 100)
        assert await read_body(Publisher.from_file(fileobj, chunk_size=30)) == b"x" * 100
        assert fileobj.closed

    @pytest.mark.asyncio
    async def test_unsubscribe_closes_file(self):
        """Unsubscribing early releases the file."""
        fileobj = io.BytesIO(b"data")
        Publisher.from_file(fileobj).subscribe().unsubscribe()
        assert fileobj.closed

    def test_to_publisher_rejects_unknown(self):
        """Unsupported bodies are refused."""
        with pytest.raises(TypeError):
            to_publisher(42)

    def test_to_publisher_keeps_publishers(self):
        """A Publisher is used as is."""
        publisher = Publisher.from_value("x")
        assert to_publisher(publisher) is publisher


class TestBroadcaster:
    """Tests for the hot Broadcaster."""

    def test_only_current_subscribers_see_values(self):
        """Late subscribers miss earlier values; unsubscribed ones miss later ones."""
        broadcaster = Broadcaster()
        first, second = [], []
        subscription = broadcaster.subscribe(next=first.append)
        broadcaster.emit(1)
        broadcaster.subscribe(next=second.append)
        subscription.unsubscribe()
        broadcaster.emit(2)

        assert first == [1]
        assert second == [2]
        assert broadcaster.subscriber_count == 1


class TestRequestBody:
    """Tests for the request body fed by the protocols."""

    @pytest.mark.asyncio
    async def test_data_fed_before_subscribe_is_kept(self):
        """Bytes arriving before the handler reads are queued."""
        body = RequestBody()
        body.feed(b"hello ")
        body.feed(b"world")
        body.finish()

        assert await read_body(body.publisher) == b"hello world"

    @pytest.mark.asyncio
    async def test_fail_propagates(self):
        """A connection lost mid-body errors the publisher."""
        body = RequestBody()
        body.feed(b"partial")
        body.fail(ConnectionResetError("gone"))

        with pytest.raises(ConnectionResetError):
            await asyncio.wait_for(read_body(body.publisher), 1)
