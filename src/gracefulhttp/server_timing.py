"""
Server-Timing response header.

Handlers (or compose_service_with_timing) collect durations in a timing
mapping, name -> milliseconds; when send_server_timing is on the server
turns it into a header browsers show in their network panel:

    {"file service": 1.2, "time to start responding": 3.4}
    →  server-timing: a;desc="file service";dur=1.2, b;desc="time to start responding";dur=3.4

Entry names are single letters because devtools sort metrics
alphabetically; the readable name goes into desc.
"""

import inspect
import string
import time
from typing import Any, Callable, Dict, Mapping, Tuple

Timing = Dict[str, float]


def time_start(name: str) -> Callable[[], Timing]:
    """Start a measure; calling the returned function ends it."""
    start = time.perf_counter()

    def time_end() -> Timing:
        return {name: (time.perf_counter() - start) * 1000}

    return time_end


def time_function(name: str, fn: Callable[[], Any]) -> Tuple[Timing, Any]:
    """Run fn() and return (timing, value). Synchronous functions only."""
    time_end = time_start(name)
    value = fn()
    return time_end(), value


async def time_async_function(name: str, fn: Callable[[], Any]) -> Tuple[Timing, Any]:
    """Like time_function, awaiting fn()'s result when it is awaitable."""
    time_end = time_start(name)
    value = fn()
    if inspect.isawaitable(value):
        value = await value
    return time_end(), value


def _metric_name(index: int) -> str:
    letters = string.ascii_lowercase[:20]
    return letters[index] if index < len(letters) else "zz"


def timing_to_server_timing_headers(timing: Mapping[str, float]) -> Dict[str, str]:
    value = ", ".join(
        f'{_metric_name(index)};desc="{name}";dur={duration}'
        for index, (name, duration) in enumerate(timing.items())
    )
    return {"server-timing": value}
