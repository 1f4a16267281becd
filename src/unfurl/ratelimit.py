from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Hashable

from .errors import RateLimitExceeded

Clock = Callable[[], float]


class SlidingWindowLimiter:
    """Allow at most ``limit`` hits per identity inside a rolling window."""

    def __init__(self, limit: int = 60, window_seconds: float = 60, clock: Clock = time.monotonic) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._hits: dict[Hashable, deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, identity: Hashable) -> int:
        """Record one request and return how many remain in the window.

        Raises RateLimitExceeded without recording the request when the
        identity is already at its limit.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(identity, deque())
            cutoff = now - self.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                retry_after = max(hits[0] + self.window_seconds - now, 0.0)
                raise RateLimitExceeded(identity, retry_after)
            hits.append(now)
            return self.limit - len(hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class CooldownGate:
    """Per-feed minimum interval between manual runs."""

    def __init__(self, interval_seconds: float = 5, clock: Clock = time.monotonic) -> None:
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._last_run: dict[int, float] = {}
        self._lock = threading.Lock()

    def can_proceed(self, feed_id: int) -> bool:
        with self._lock:
            last = self._last_run.get(feed_id)
        if last is None:
            return True
        return self._clock() - last >= self.interval_seconds

    def remaining(self, feed_id: int) -> float:
        with self._lock:
            last = self._last_run.get(feed_id)
        if last is None:
            return 0.0
        return max(self.interval_seconds - (self._clock() - last), 0.0)

    def mark(self, feed_id: int, timestamp: float | None = None) -> None:
        with self._lock:
            self._last_run[feed_id] = self._clock() if timestamp is None else timestamp

    def try_acquire(self, feed_id: int) -> bool:
        """Atomic can_proceed + mark."""
        now = self._clock()
        with self._lock:
            last = self._last_run.get(feed_id)
            if last is not None and now - last < self.interval_seconds:
                return False
            self._last_run[feed_id] = now
            return True

    def reset(self) -> None:
        with self._lock:
            self._last_run.clear()
