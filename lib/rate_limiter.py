import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, NamedTuple

class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    reset_in: float  # seconds until the window resets

class RateLimiter(ABC):
    @abstractmethod
    def check(self, key: str) -> RateLimitResult:
        """Count one request against `key` and report whether it may proceed"""

class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counter per key. Process local, lost on restart."""

    MAX_KEYS = 10000

    def __init__(self, max_requests: int = 100, window_seconds: float = 60,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.limits: Dict[str, Dict[str, float]] = {}

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()

        if len(self.limits) > self.MAX_KEYS:
            self._prune(now)

        record = self.limits.get(key)
        if not record or record['reset_time'] < now:
            self.limits[key] = {'count': 1, 'reset_time': now + self.window_seconds}
            return RateLimitResult(True, self.max_requests - 1, self.window_seconds)

        if record['count'] >= self.max_requests:
            return RateLimitResult(False, 0, record['reset_time'] - now)

        record['count'] += 1
        return RateLimitResult(
            True,
            self.max_requests - int(record['count']),
            record['reset_time'] - now
        )

    def _prune(self, now: float) -> None:
        expired = [k for k, v in self.limits.items() if v['reset_time'] < now]
        for k in expired:
            del self.limits[k]
