"""Per-key access rate limiting for the cache store."""
import time
from typing import Callable, Dict, List

import structlog

logger = structlog.get_logger()

class KeyRateLimiter:
    """
    Sliding-window rate limiter keyed by cache key.

    Stops a runaway caller from hammering a single key. Timestamps older than
    the window are dropped lazily on each check and by ``cleanup()``.
    """

    def __init__(self, max_requests: int = 100, window_size: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize a new rate limiter.

        Args:
            max_requests: Accesses allowed per key inside one window; 0 disables limiting
            window_size: Size of the sliding window in seconds
            clock: Time source in seconds
        """
        self.max_requests = max_requests
        self.window_size = window_size
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def check_rate_limit(self, key: str) -> bool:
        """
        Record an access to ``key``.

        Args:
            key: Sanitized cache key

        Returns:
            True if the access is within limits, False otherwise
        """
        if not self.enabled:
            return True

        now = self._clock()
        recent = [t for t in self._requests.get(key, []) if now - t < self.window_size]

        if len(recent) >= self.max_requests:
            self._requests[key] = recent
            logger.warning("cache_key_rate_limited", key=key, requests=len(recent),
                           window=self.window_size)
            return False

        recent.append(now)
        self._requests[key] = recent
        return True

    def cleanup(self) -> int:
        """Drop keys with no access inside the window. Returns the number dropped."""
        now = self._clock()
        dropped = 0
        for key in list(self._requests):
            recent = [t for t in self._requests[key] if now - t < self.window_size]
            if recent:
                self._requests[key] = recent
            else:
                del self._requests[key]
                dropped += 1
        return dropped

    def reset_key(self, key: str) -> None:
        self._requests.pop(key, None)

    def reset(self) -> None:
        self._requests.clear()
