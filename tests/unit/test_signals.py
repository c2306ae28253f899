"""
Unit tests for the signal bridge.
"""

import signal

import pytest

from gracefulhttp.core.signals import SignalBridge


class TestSubscribe:
    """OS handlers are installed with the first subscriber and removed with the last."""

    def test_reference_counting(self):
        bridge = SignalBridge()
        first = bridge.subscribe("exit", lambda value: None)
        second = bridge.subscribe("exit", lambda value: None)

        assert bridge.installed("exit") is True
        assert bridge.listener_count("exit") == 2

        first()
        assert bridge.installed("exit") is True
        second()
        assert bridge.installed("exit") is False

    def test_unsubscribe_twice(self):
        bridge = SignalBridge()
        unsubscribe = bridge.subscribe("exit", lambda value: None)
        unsubscribe()
        unsubscribe()
        assert bridge.listener_count("exit") == 0

    def test_unknown_trigger(self):
        with pytest.raises(ValueError):
            SignalBridge().subscribe("SIGFOO", lambda value: None)

    def test_emit_reaches_listeners(self):
        bridge = SignalBridge()
        received = []
        unsubscribe = bridge.subscribe("crash", received.append)
        try:
            bridge.emit("crash", "boom")
        finally:
            unsubscribe()
        assert received == ["boom"]

    def test_failing_listener_is_logged(self, caplog):
        """One broken listener does not hide the trigger from the others."""
        bridge = SignalBridge()
        received = []

        def broken(value):
            raise RuntimeError("listener bug")

        unsubscribes = [bridge.subscribe("exit", broken), bridge.subscribe("exit", received.append)]
        bridge.emit("exit")
        for unsubscribe in unsubscribes:
            unsubscribe()

        assert received == [None]
        assert "exit listener failed" in caplog.text

    @pytest.mark.skipif(not hasattr(signal, "SIGHUP"), reason="no SIGHUP on this platform")
    @pytest.mark.asyncio
    async def test_signal_handler_restored(self):
        """The loop handler is removed when the last listener leaves."""
        bridge = SignalBridge()
        unsubscribe = bridge.subscribe("SIGHUP", lambda value: None)
        assert bridge.installed("SIGHUP")
        unsubscribe()
        assert not bridge.installed("SIGHUP")


class TestRace:
    """Tests for SignalBridge.race()."""

    def test_first_trigger_wins(self):
        """Only the first trigger calls back; every subscription is dropped."""
        bridge = SignalBridge()
        calls = []
        bridge.race(lambda trigger, value: calls.append(trigger), ["exit", "crash"])

        bridge.emit("crash", "boom")
        bridge.emit("exit")

        assert calls == ["crash"]
        assert bridge.listener_count("exit") == 0
        assert bridge.listener_count("crash") == 0
        assert bridge.installed("exit") is False

    def test_teardown(self):
        """The returned function removes the subscriptions without calling back."""
        bridge = SignalBridge()
        calls = []
        teardown = bridge.race(lambda trigger, value: calls.append(trigger), ["exit"])
        teardown()
        bridge.emit("exit")

        assert calls == []
        assert bridge.installed("exit") is False

    def test_two_races_share_handlers(self):
        """Two servers in one process both hear the trigger."""
        bridge = SignalBridge()
        calls = []
        bridge.race(lambda trigger, value: calls.append("a"), ["exit"])
        bridge.race(lambda trigger, value: calls.append("b"), ["exit"])

        bridge.emit("exit")

        assert calls == ["a", "b"]
