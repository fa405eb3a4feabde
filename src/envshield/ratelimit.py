"""Sliding-window rate limiter for command execution."""

import threading
import time
from collections import deque
from typing import Callable, Deque


class RateLimiter:
    """
    Allow at most ``max_requests`` admissions within ``window_ms``.

    Prune, compare and append happen under one lock, so concurrent callers
    cannot both take the last slot. ``clock`` returns seconds and defaults
    to time.monotonic.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def check(self) -> bool:
        """Admit and record a request, or return False without recording it."""
        with self._lock:
            now = self._now_ms()
            self._prune(now)
            if len(self._timestamps) >= self.max_requests:
                return False
            self._timestamps.append(now)
            return True

    def get_wait_time(self) -> float:
        """Milliseconds until a request would be admitted (0 if now)."""
        with self._lock:
            now = self._now_ms()
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                return 0.0
            return max(0.0, self.window_ms - (now - self._timestamps[0]))

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_ms:
            self._timestamps.popleft()
