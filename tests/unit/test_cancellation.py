"""
Unit tests for cooperative cancellation.
"""

import asyncio

import pytest

from gracefulhttp.cancellation import (
    CancellationSource,
    compose_cancellation_token,
    create_cancellation_token,
)
from gracefulhttp.errors import CancelError


class TestCancellationSource:
    """Tests for CancellationSource / CancellationToken."""

    def test_callbacks_called_once_in_order(self):
        """Callbacks run once each, in registration order, with the reason."""
        source = CancellationSource()
        calls = []
        source.token.register(lambda reason: calls.append(("a", reason)))
        source.token.register(lambda reason: calls.append(("b", reason)))

        source.cancel("shutdown")
        source.cancel("again")

        assert calls == [("a", "shutdown"), ("b", "shutdown")]
        assert source.token.cancellation_requested is True
        assert source.token.reason == "shutdown"

    def test_same_callback_registered_twice(self):
        """Registering the same callable twice yields one registration."""
        source = CancellationSource()
        calls = []

        def callback(reason):
            calls.append(reason)

        first = source.token.register(callback)
        second = source.token.register(callback)
        source.cancel("x")

        assert first is second
        assert calls == ["x"]

    def test_unregister_is_idempotent(self):
        """An unregistered callback is not called; unregister twice is fine."""
        source = CancellationSource()
        calls = []
        registration = source.token.register(calls.append)
        registration.unregister()
        registration.unregister()

        source.cancel("x")

        assert calls == []
        assert registration.active is False

    def test_register_after_cancel_is_inert(self):
        """A callback registered after cancellation is never invoked."""
        source = CancellationSource()
        source.cancel("done")
        calls = []

        registration = source.token.register(calls.append)

        assert calls == []
        assert registration.active is False

    def test_register_requires_callable(self):
        """Non callables are refused."""
        with pytest.raises(TypeError):
            CancellationSource().token.register("not callable")

    def test_failing_callback_does_not_stop_delivery(self):
        """cancel() never raises; later callbacks still run."""
        source = CancellationSource()
        calls = []

        def broken(reason):
            raise RuntimeError("boom")

        source.token.register(broken)
        source.token.register(calls.append)
        source.cancel("x")

        assert calls == ["x"]

    def test_unregister_during_delivery(self):
        """A callback unregistering a later one does not prevent its delivery."""
        source = CancellationSource()
        calls = []
        later = None

        def first(reason):
            calls.append("first")
            later.unregister()

        source.token.register(first)
        later = source.token.register(lambda reason: calls.append("later"))

        source.cancel("x")
        source.cancel("y")

        assert calls == ["first", "later"]

    def test_throw_if_requested(self):
        """throw_if_requested raises CancelError carrying the reason."""
        source = CancellationSource()
        source.token.throw_if_requested()

        source.cancel("shutdown")
        with pytest.raises(CancelError) as info:
            source.token.throw_if_requested()
        assert info.value.reason == "shutdown"

    def test_default_token_never_cancels(self):
        """create_cancellation_token() gives a token nobody can cancel."""
        token = create_cancellation_token()
        assert token.cancellation_requested is False
        assert token.reason is None

    @pytest.mark.asyncio
    async def test_wait_resolves_with_reason(self):
        """token.wait() resolves once cancel() is called."""
        source = CancellationSource()
        waiter = source.token.wait()
        asyncio.get_running_loop().call_soon(source.cancel, "later")

        assert await asyncio.wait_for(waiter, 1) == "later"


class TestComposedToken:
    """Tests for compose_cancellation_token()."""

    def test_cancelled_when_any_part_is(self):
        """The composed token follows the first cancelled part."""
        a, b = CancellationSource(), CancellationSource()
        token = compose_cancellation_token(a.token, b.token)
        calls = []
        token.register(calls.append)

        assert token.cancellation_requested is False
        b.cancel("client gone")
        a.cancel("server stop")

        assert token.cancellation_requested is True
        assert calls == ["client gone"]

    def test_reason_follows_composition_order(self):
        """With several parts cancelled, the first part in order gives the reason."""
        a, b = CancellationSource(), CancellationSource()
        token = compose_cancellation_token(a.token, b.token)
        b.cancel("second")
        a.cancel("first")

        assert token.reason == "first"

    def test_unregister_drops_every_part(self):
        """Unregistering the composed registration unregisters from all parts."""
        a, b = CancellationSource(), CancellationSource()
        token = compose_cancellation_token(a.token, b.token)
        calls = []
        registration = token.register(calls.append)
        registration.unregister()

        a.cancel("x")
        b.cancel("y")

        assert calls == []

    def test_register_on_already_cancelled(self):
        """A composed token already cancelled does not call new callbacks."""
        a, b = CancellationSource(), CancellationSource()
        a.cancel("x")
        token = compose_cancellation_token(a.token, b.token)
        calls = []
        token.register(calls.append)

        b.cancel("y")

        assert calls == []
        assert token.reason == "x"

    def test_bound_method_registered_twice(self):
        """The same bound method registered twice is delivered once."""

        class Owner:
            def __init__(self):
                self.reasons = []

            def on_cancel(self, reason):
                self.reasons.append(reason)

        a, b = CancellationSource(), CancellationSource()
        token = compose_cancellation_token(a.token, b.token)
        owner = Owner()
        first = token.register(owner.on_cancel)
        second = token.register(owner.on_cancel)

        a.cancel("stop")
        b.cancel("later")

        assert first is second
        assert owner.reasons == ["stop"]

    def test_unregister_during_delivery(self):
        """Composed callbacks present at cancel time are each called once."""
        a, b = CancellationSource(), CancellationSource()
        token = compose_cancellation_token(a.token, b.token)
        calls = []
        later = None

        def first(reason):
            calls.append("first")
            later.unregister()

        token.register(first)
        later = token.register(lambda reason: calls.append("later"))

        a.cancel("x")
        b.cancel("y")

        assert calls == ["first", "later"]

    def test_single_token_returned_as_is(self):
        """Composing one token is the identity."""
        source = CancellationSource()
        assert compose_cancellation_token(source.token) is source.token
