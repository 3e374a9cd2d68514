"""
Rate limiting for the Veri-Charm gateway.

Sliding window limiter keyed by "<endpoint group>:<client id>". Mutations
and queries get separate limiters so a burst of lookups cannot starve
mints and transfers.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; one deque of hit timestamps per key.
    """

    def __init__(self, rpm: int, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        """
        Args:
            rpm: Maximum requests per window
            window_seconds: Window size in seconds (default 60)
            clock: Time source (injectable for tests)
        """
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self._limit

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Record a hit for `key` unless the window is full."""
        now = self._clock()
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]
            while q and q[0] < window_start:
                q.popleft()

            count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)
            return RateLimitResult(allowed=True, remaining=self._limit - count - 1, reset_at=reset_at)

    def reset(self, key: Optional[str] = None) -> None:
        """Reset counters for one key, or all keys."""
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """
        Drop expired hits from every key.

        Returns:
            Number of hits removed
        """
        window_start = self._clock() - self._window
        removed = 0

        with self._lock:
            empty_keys = []
            for key, q in self._hits.items():
                while q and q[0] < window_start:
                    q.popleft()
                    removed += 1
                if not q:
                    empty_keys.append(key)
            for key in empty_keys:
                del self._hits[key]

        return removed
