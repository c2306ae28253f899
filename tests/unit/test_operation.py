"""
Unit tests for cancellable and stoppable operations.
"""

import asyncio

import pytest

from gracefulhttp.cancellation import CancellationSource
from gracefulhttp.errors import CancelError
from gracefulhttp.operation import (
    create_operation,
    create_stoppable_operation,
    first_operation_matching,
)


class TestCreateOperation:
    """Tests for create_operation()."""

    @pytest.mark.asyncio
    async def test_returns_start_value(self):
        """Without cancellation the start value comes back."""

        async def start():
            return 42

        assert await create_operation(None, start) == 42

    @pytest.mark.asyncio
    async def test_token_wins_race(self):
        """A token firing first raises CancelError and cancels the work."""
        source = CancellationSource()
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def start():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        operation = asyncio.ensure_future(create_operation(source.token, start))
        await started.wait()
        source.cancel("stop")

        with pytest.raises(CancelError) as info:
            await operation
        assert info.value.reason == "stop"
        await asyncio.wait_for(cancelled.wait(), 1)

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        """An already cancelled token never calls start."""
        source = CancellationSource()
        source.cancel("early")
        calls = []

        with pytest.raises(CancelError):
            await create_operation(source.token, lambda: calls.append(1))
        assert calls == []


class TestStoppableOperation:
    """Tests for create_stoppable_operation()."""

    @pytest.mark.asyncio
    async def test_stop_called_once_with_value(self):
        """stop(value, reason) runs exactly once however often it is requested."""
        source = CancellationSource()
        stops = []

        async def start():
            return "socket"

        operation = create_stoppable_operation(source.token, start, lambda value, reason: stops.append((value, reason)))
        assert await operation == "socket"

        await asyncio.gather(operation.stop("a"), operation.stop("b"))
        source.cancel("c")
        await asyncio.sleep(0)

        assert stops == [("socket", "a")]

    @pytest.mark.asyncio
    async def test_cancel_during_start_unwinds(self):
        """Token firing while starting: awaiting raises, and stop still runs with the value."""
        source = CancellationSource()
        release = asyncio.Event()
        stops = []

        async def start():
            await release.wait()
            return "socket"

        operation = create_stoppable_operation(source.token, start, lambda value, reason: stops.append((value, reason)))

        async def wait():
            return await operation

        waiter = asyncio.ensure_future(wait())
        await asyncio.sleep(0)
        source.cancel("abort")
        release.set()

        with pytest.raises(CancelError):
            await waiter
        assert stops == [("socket", "abort")]

    @pytest.mark.asyncio
    async def test_no_stop_when_start_fails(self):
        """A failed start is never stopped."""
        stops = []

        async def start():
            raise OSError("bind failed")

        operation = create_stoppable_operation(None, start, lambda value, reason: stops.append(value))
        with pytest.raises(OSError):
            await operation
        await operation.stop("whatever")

        assert stops == []


class TestFirstOperationMatching:
    """Tests for first_operation_matching()."""

    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        """Items are tried in order; later items are not started."""
        started = []

        async def start(item):
            started.append(item)
            return item * 10

        result = await first_operation_matching([1, 2, 3], start, lambda value: value >= 20)

        assert result == 20
        assert started == [1, 2]

    @pytest.mark.asyncio
    async def test_no_match(self):
        """None when nothing matches."""
        assert await first_operation_matching([1, 2], lambda item: item, lambda value: False) is None
