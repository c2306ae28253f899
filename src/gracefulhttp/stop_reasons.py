"""
Why a server stopped.

A reason is an opaque value flowing through the cancellation chain. The
built-in ones below are tagged so the request tracker can pick a status:
a stop caused by INTERNAL_ERROR answers pending requests with 500, every
other reason with 503. Callers are free to pass their own values
(``server.stop("shutdown")``).
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class StopReason:
    kind: str
    description: str

    def __str__(self) -> str:
        return self.description


INTERNAL_ERROR = StopReason("internal_error", "internal error")
PROCESS_SIGINT = StopReason("signal", "process sigint")
PROCESS_SIGTERM = StopReason("signal", "process sigterm")
PROCESS_SIGHUP = StopReason("signal", "process sighup")
PROCESS_EXIT = StopReason("exit", "process exit")
PROCESS_CRASH = StopReason("crash", "process crash")
NOT_SPECIFIED = StopReason("unspecified", "not specified")

# trigger name (see core.signals) -> reason
TRIGGER_REASONS = {
    "SIGINT": PROCESS_SIGINT,
    "SIGTERM": PROCESS_SIGTERM,
    "SIGHUP": PROCESS_SIGHUP,
    "exit": PROCESS_EXIT,
    "crash": PROCESS_CRASH,
}


def status_for_reason(reason: Any) -> int:
    """Status written to requests still pending when the server stops."""
    return 500 if reason is INTERNAL_ERROR else 503
