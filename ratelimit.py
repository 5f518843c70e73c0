"""Fixed-window rate limiting with a pluggable counter store."""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)

FIFTEEN_MINUTES = 15 * 60


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float

    def retry_after(self, now: float) -> int:
        return max(0, int(round(self.reset_time - now)))


class RateLimitStore(ABC):
    """Counter storage. Implementations must make incr atomic per key."""

    @abstractmethod
    def incr(self, key: str, window_seconds: float, now: float) -> Tuple[int, float]:
        """Count one hit for key and return (count in current window, window reset time)."""

    @abstractmethod
    def peek(self, key: str, now: float) -> Tuple[int, float]:
        """Return (count, reset time) of the current window without counting a hit."""

    @abstractmethod
    def reset(self, key: str) -> None:
        ...


class MemoryRateLimitStore(RateLimitStore):
    """Process-local store. Not shared between instances and lost on restart."""

    def __init__(self, max_keys: int = 10000):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self.max_keys = max_keys

    def __len__(self):
        return len(self._windows)

    def _prune(self, now):
        expired = [k for k, (_, reset_time) in self._windows.items() if now > reset_time]
        for k in expired:
            del self._windows[k]

    def incr(self, key, window_seconds, now):
        with self._lock:
            if key not in self._windows and len(self._windows) >= self.max_keys:
                self._prune(now)
            count, reset_time = self._windows.get(key, (0, 0.0))
            if now > reset_time:
                count, reset_time = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_time)
            return count, reset_time

    def peek(self, key, now):
        with self._lock:
            count, reset_time = self._windows.get(key, (0, 0.0))
            if now > reset_time:
                return 0, 0.0
            return count, reset_time

    def reset(self, key):
        with self._lock:
            self._windows.pop(key, None)


class RateLimiter:
    def __init__(self, store: RateLimitStore = None, clock: Callable[[], float] = time.time):
        self.store = store or MemoryRateLimitStore()
        self.clock = clock

    def check(self, key: str, max_requests: int, window_seconds: float = FIFTEEN_MINUTES) -> RateLimitResult:
        count, reset_time = self.store.incr(key, window_seconds, self.clock())
        if count > max_requests:
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, count, max_requests)
            return RateLimitResult(allowed=False, remaining=0, reset_time=reset_time)
        return RateLimitResult(allowed=True, remaining=max_requests - count, reset_time=reset_time)

    def peek(self, key: str, max_requests: int) -> RateLimitResult:
        """Report whether key is still under max_requests without counting a hit."""
        count, reset_time = self.store.peek(key, self.clock())
        return RateLimitResult(allowed=count < max_requests, remaining=max(0, max_requests - count), reset_time=reset_time)

    def reset(self, key: str) -> None:
        self.store.reset(key)

    def now(self) -> float:
        return self.clock()


rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return rate_limiter
