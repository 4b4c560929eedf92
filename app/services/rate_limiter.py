"""
Sliding-window rate limiter (process-local).
"""
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.services.clock import utcnow


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: Optional[datetime] = None


class SlidingWindowRateLimiter:
    """
    Keeps the timestamps of recent attempts per key. Attempts older than the
    window are pruned when the key is next checked, and keys with nothing
    left in the window are dropped by a sweep that runs at most once per
    window; there is no background sweeper.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.clock = clock
        self._attempts: dict[str, deque[datetime]] = {}
        self._next_sweep: Optional[datetime] = None
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitDecision:
        """Record an attempt for `key` if allowed."""
        now = self.clock()
        with self._lock:
            self._sweep(now)
            attempts = self._attempts.setdefault(key, deque())
            self._prune(attempts, now)

            if len(attempts) >= self.max_attempts:
                if not attempts:
                    del self._attempts[key]
                    return RateLimitDecision(allowed=False, remaining=0, reset_at=now + self.window)
                return RateLimitDecision(allowed=False, remaining=0, reset_at=attempts[0] + self.window)

            attempts.append(now)
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_attempts - len(attempts),
                reset_at=attempts[0] + self.window,
            )

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def __len__(self) -> int:
        return len(self._attempts)

    def _prune(self, attempts: deque, now: datetime) -> None:
        while attempts and now - attempts[0] >= self.window:
            attempts.popleft()

    def _sweep(self, now: datetime) -> None:
        if self._next_sweep is not None and now < self._next_sweep:
            return
        self._next_sweep = now + self.window
        for key in list(self._attempts):
            attempts = self._attempts[key]
            self._prune(attempts, now)
            if not attempts:
                del self._attempts[key]
