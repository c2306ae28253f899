"""
=============================================================================
PROCESS SIGNALS → SERVER STOP
=============================================================================

SignalBridge turns process-level events into plain callbacks. It knows five
triggers:

    SIGINT    Ctrl+C                      loop.add_signal_handler()
    SIGTERM   `kill <pid>`, orchestrators loop.add_signal_handler()
    SIGHUP    terminal closed             loop.add_signal_handler()
    crash     unhandled exception         loop exception handler + sys.excepthook
    exit      interpreter exit            atexit

exit only has something to stop while the event loop is still open: a
loop left open (run_until_complete) is run once more to finish the stop;
after asyncio.run() the loop is closed and the process exit closes the
sockets.

OS-level handlers are reference counted: the first subscriber to a trigger
installs the handler, the last one to leave removes it (and restores
whatever was there before). Two servers in one process share the handlers.

race() is what a server uses: subscribe to several triggers, the first one
that fires wins, and all the subscriptions are dropped right away:

    unsubscribe = bridge.race(on_trigger, ["SIGHUP", "SIGTERM", "SIGINT", "exit"])
    # SIGTERM arrives → on_trigger("SIGTERM", None), once

=============================================================================
"""

import asyncio
import atexit
import logging
import signal
import sys
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

SIGNAL_TRIGGERS = ("SIGINT", "SIGTERM", "SIGHUP")
TRIGGERS = SIGNAL_TRIGGERS + ("crash", "exit")

# named subscriptions used by the server
TEARDOWN_TRIGGERS = ("SIGHUP", "SIGTERM", "SIGINT", "exit")
CRASH_TRIGGERS = ("crash",)
SIGINT_TRIGGERS = ("SIGINT",)

Listener = Callable[[Any], None]
Uninstall = Callable[[], None]


def _noop() -> None:
    return None


class SignalBridge:
    """Reference-counted fan-out of process triggers to listeners."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {trigger: [] for trigger in TRIGGERS}
        self._uninstallers: Dict[str, Uninstall] = {}

    def installed(self, trigger: str) -> bool:
        return trigger in self._uninstallers

    def listener_count(self, trigger: str) -> int:
        return len(self._listeners[trigger])

    def subscribe(self, trigger: str, listener: Listener) -> Callable[[], None]:
        """
        Call listener(value) each time trigger fires. Returns unsubscribe.

        Raises:
            ValueError: Unknown trigger name.
        """
        if trigger not in self._listeners:
            raise ValueError(f"unknown trigger {trigger!r}, expected one of {TRIGGERS}")
        listeners = self._listeners[trigger]
        listeners.append(listener)
        if len(listeners) == 1:
            self._uninstallers[trigger] = self._install(trigger)

        def unsubscribe() -> None:
            for index, candidate in enumerate(listeners):
                if candidate is listener:
                    del listeners[index]
                    break
            else:
                return
            if not listeners:
                self._uninstallers.pop(trigger, _noop)()

        return unsubscribe

    def emit(self, trigger: str, value: Any = None) -> None:
        """Deliver trigger to the current listeners (the OS handlers call this)."""
        for listener in list(self._listeners[trigger]):
            try:
                listener(value)
            except Exception:
                logger.exception(f"{trigger} listener failed")

    def race(self, callback: Callable[[str, Any], None], triggers: Iterable[str]) -> Callable[[], None]:
        """
        Subscribe callback to every trigger; only the first to fire calls it.

        Returns a function removing all remaining subscriptions.
        """
        unsubscribes: List[Callable[[], None]] = []
        fired = False

        def teardown() -> None:
            while unsubscribes:
                unsubscribes.pop()()

        for trigger in triggers:

            def listener(value: Any, trigger: str = trigger) -> None:
                nonlocal fired
                if fired:
                    return
                fired = True
                teardown()
                callback(trigger, value)

            unsubscribes.append(self.subscribe(trigger, listener))
        return teardown

    # ─────────────────────────────────────────────────────────────────────
    # OS HANDLERS
    # ─────────────────────────────────────────────────────────────────────

    def _install(self, trigger: str) -> Uninstall:
        logger.debug(f"installing {trigger} handler")
        if trigger in SIGNAL_TRIGGERS:
            return self._install_signal(trigger)
        if trigger == "crash":
            return self._install_crash()
        return self._install_exit()

    def _install_signal(self, trigger: str) -> Uninstall:
        signum = getattr(signal, trigger, None)
        if signum is None:
            # e.g. no SIGHUP on Windows
            return _noop
        try:
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signum, self.emit, trigger, None)
        except (RuntimeError, NotImplementedError):
            # no running loop, or a loop without signal support (Windows)
            return self._install_signal_fallback(trigger, signum)

        def uninstall() -> None:
            if not loop.is_closed():
                loop.remove_signal_handler(signum)

        return uninstall

    def _install_signal_fallback(self, trigger: str, signum: int) -> Uninstall:
        def handler(_signum: int, _frame: Any) -> None:
            self.emit(trigger)

        try:
            previous = signal.signal(signum, handler)
        except ValueError:
            logger.warning(f"cannot install {trigger} handler outside the main thread")
            return _noop

        def uninstall() -> None:
            if signal.getsignal(signum) is handler:
                signal.signal(signum, previous)

        return uninstall

    def _install_crash(self) -> Uninstall:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        previous_handler = loop.get_exception_handler() if loop is not None else None

        def exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
            self.emit("crash", context.get("exception") or context.get("message"))
            if previous_handler is not None:
                previous_handler(loop, context)
            else:
                loop.default_exception_handler(context)

        if loop is not None:
            loop.set_exception_handler(exception_handler)

        previous_hook = sys.excepthook

        def excepthook(exc_type: Any, exc: BaseException, traceback: Any) -> None:
            self.emit("crash", exc)
            previous_hook(exc_type, exc, traceback)

        sys.excepthook = excepthook

        def uninstall() -> None:
            if loop is not None and not loop.is_closed() and loop.get_exception_handler() is exception_handler:
                loop.set_exception_handler(previous_handler)
            if sys.excepthook is excepthook:
                sys.excepthook = previous_hook

        return uninstall

    def _install_exit(self) -> Uninstall:
        def on_exit() -> None:
            self.emit("exit")

        atexit.register(on_exit)
        return lambda: atexit.unregister(on_exit)


_default_bridge: Optional[SignalBridge] = None


def default_signal_bridge() -> SignalBridge:
    """The process-wide bridge shared by servers that are not given one."""
    global _default_bridge
    if _default_bridge is None:
        _default_bridge = SignalBridge()
    return _default_bridge
