"""
Freshness window for signed upload messages.

A message is fresh when ``0 <= now - timestamp <= window``. Timestamps in the
future are rejected as well, which also catches clock manipulation.
"""

import time
from typing import Callable

DEFAULT_WINDOW_SECONDS = 300


class FreshnessGuard:
    """Rejects replayed or future-dated messages."""

    def __init__(
        self,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds < 0:
            raise ValueError("window_seconds must be non-negative")
        self.window_seconds = window_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def age(self, timestamp: int) -> int:
        """Seconds since ``timestamp`` (negative if in the future)."""
        return self.now() - timestamp

    def is_fresh(self, timestamp: int) -> bool:
        diff = self.age(timestamp)
        return 0 <= diff <= self.window_seconds
