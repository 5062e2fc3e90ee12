"""Per-agent sliding-window rate limiting for suggestion ingestion."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class SlidingWindowLimiter:
    """
    Two nested windows per key: a short burst window and a longer one.

    A hit is denied when either window is already full; denied hits are not
    recorded.
    """

    def __init__(
        self,
        burst_limit: int = 5,
        burst_window_s: float = 10.0,
        window_limit: int = 30,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.burst_limit = burst_limit
        self.burst_window_s = burst_window_s
        self.window_limit = window_limit
        self.window_s = window_s
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a hit for ``key`` if it fits; returns whether it was allowed."""
        with self._lock:
            now = self._clock()
            horizon = max(self.window_s, self.burst_window_s)
            hits = [t for t in self._hits.get(key, []) if now - t < horizon]
            windowed = [t for t in hits if now - t < self.window_s]
            burst = [t for t in hits if now - t < self.burst_window_s]
            if len(burst) >= self.burst_limit or len(windowed) >= self.window_limit:
                self._hits[key] = hits
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
