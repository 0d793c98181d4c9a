"""In-memory sliding window rate limiter implementation."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from collections.abc import Callable
from threading import Lock
from typing import Protocol


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter keyed by caller-chosen strings."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: defaultdict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` when the request is within the configured rate limit."""
        now = self._clock()
        with self._lock:
            window = self._events[key]
            while window and now - window[0] >= self._window:
                window.popleft()
            if len(window) >= self._max_requests:
                return False
            window.append(now)
            return True
