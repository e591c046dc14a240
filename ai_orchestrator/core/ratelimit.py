"""
In-process sliding window rate limiting per provider.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0


class SlidingWindowLimiter:
    """Allow at most `limit` acquisitions per rolling window for each key."""

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.window_seconds = window_seconds
        self._clock = clock
        self._limits: Dict[str, int] = {}
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def set_limit(self, key: str, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        with self._lock:
            self._limits[key] = limit
            self._events.setdefault(key, deque())

    def try_acquire(self, key: str) -> Tuple[bool, int]:
        """Record one call for key if the window has room.

        Returns:
            (allowed, remaining) tuple. Keys without a limit are always allowed.
        """
        with self._lock:
            limit = self._limits.get(key)
            if limit is None:
                return True, -1

            now = self._clock()
            events = self._events[key]
            cutoff = now - self.window_seconds
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= limit:
                logger.warning("rate_limit_exceeded", provider_id=key, limit=limit,
                               window_seconds=self.window_seconds)
                return False, 0

            events.append(now)
            return True, limit - len(events)
