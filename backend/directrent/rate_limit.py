from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable

from directrent.errors import TooManyRequests


class RateLimiter:
    """
    Sliding-window limiter keyed by caller (per-process).

    For multi-instance deployments, back this with Redis instead.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def hit(self, *, key: str, limit: int, window_seconds: int, detail: str = "Too many requests") -> None:
        now = self._clock()
        win_start = now - float(window_seconds)
        with self._lock:
            q = self._events[key]
            while q and q[0] <= win_start:
                q.popleft()
            if len(q) >= int(limit):
                raise TooManyRequests(detail)
            q.append(now)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


limiter = RateLimiter()
