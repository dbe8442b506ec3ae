"""
Scheduling primitives: start-rate limiting and retry backoff.
"""

import time
from collections import deque
from typing import Callable, Deque


def backoff_delay(base: float, attempt: int, max_delay: float = float("inf")) -> float:
    """Exponential backoff delay before a retried job becomes eligible.

    Args:
        base: Delay for the first retry, in seconds
        attempt: Number of attempts made before this failure (0 for the first)
        max_delay: Upper bound for the delay

    Returns:
        ``base * 2 ** attempt`` capped at ``max_delay``
    """
    return min(base * (2 ** max(attempt, 0)), max_delay)


class RateLimiter:
    """Bounds job starts to ``max_starts`` per rolling ``window_seconds``.

    Not thread-safe on its own; the JobStore calls it under its lock.
    """

    def __init__(
        self,
        max_starts: int,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self.clock = clock
        self._starts: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_seconds:
            self._starts.popleft()

    def try_acquire(self) -> bool:
        """Record a start if the window has room."""
        now = self.clock()
        self._evict(now)
        if len(self._starts) >= self.max_starts:
            return False
        self._starts.append(now)
        return True

    def seconds_until_available(self) -> float:
        now = self.clock()
        self._evict(now)
        if len(self._starts) < self.max_starts:
            return 0.0
        return max(0.0, self._starts[0] + self.window_seconds - now)

    def in_window(self) -> int:
        self._evict(self.clock())
        return len(self._starts)
