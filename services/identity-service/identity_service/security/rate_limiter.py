"""In-memory sliding window rate limiter implementation."""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, DefaultDict, Protocol


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Result of counting one request against a key's window."""

    allowed: bool
    retry_after: int = 0


class RateLimiter(Protocol):
    def hit(self, key: str) -> RateLimitDecision: ...


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter for a single process."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Record a request for ``key`` unless its window is already full."""
        now = self._clock()
        with self._lock:
            queue = self._events[key]
            while queue and now - queue[0] >= self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                retry_after = max(1, math.ceil(self._window - (now - queue[0])))
                return RateLimitDecision(allowed=False, retry_after=retry_after)
            queue.append(now)
            return RateLimitDecision(allowed=True)
