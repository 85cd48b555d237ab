"""
Fixed-window rate limiting for the send path.

The limiter is an ordinary object handed to the components that need it,
so tests and separate app instances never share counters.

Usage:
    limiter = FixedWindowRateLimiter(limit=30, window_seconds=60)
    result = limiter.hit(f"messages:{sender_id}")
    if not result.allowed:
        ...
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float = 0.0


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Allows `limit` hits per identifier in each window of `window_seconds`."""

    def __init__(self, limit: int = 30, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, identifier: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            window = self._windows.get(identifier)
            if window is None:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[identifier] = window

            if window.count >= self.limit:
                logger.info(f"Rate limit reached for {identifier}")
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_at,
                    retry_after=max(0.0, window.reset_at - now),
                )

            window.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.limit - window.count,
                reset_at=window.reset_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            del self._windows[key]
