"""Wall-clock sources used for window indexing.

Engines that compute windows on the client (fixed window) read the time
through a ``Clock`` so tests can freeze it. Engines whose logic runs inside a
Lua script read the store's ``TIME`` instead, which keeps every caller on the
same clock.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Callable returning the current Unix time in milliseconds."""

    def __call__(self) -> int: ...


def now_ms() -> int:
    """Return the current Unix time in milliseconds."""
    return time.time_ns() // 1_000_000
