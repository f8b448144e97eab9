import logging
import math
import threading
import time
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger("uvicorn.error")


class RateLimiter:
    """Sliding one-minute window per identifier, e.g. ``chat:<user_id>``."""

    def __init__(
        self,
        requests_per_minute: int = 10,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = requests_per_minute
        self.window_s = window_s
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.RLock()
        self._last_cleanup = clock()

    def is_allowed(self, identifier: str) -> Tuple[bool, int, int]:
        """Record a request; returns (allowed, remaining, seconds until a slot frees up)."""
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            recent = [t for t in self._requests.get(identifier, []) if t > now - self.window_s]
            if len(recent) >= self.limit:
                self._requests[identifier] = recent
                reset_after = max(1, math.ceil(recent[0] + self.window_s - now))
                logger.warning("Rate limit exceeded for: %s...", identifier[:13])
                return False, 0, reset_after
            recent.append(now)
            self._requests[identifier] = recent
            reset_after = max(1, math.ceil(recent[0] + self.window_s - now))
            return True, self.limit - len(recent), reset_after

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._requests.pop(identifier, None)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self.window_s * 5:
            return
        cutoff = now - self.window_s
        for key in list(self._requests):
            self._requests[key] = [t for t in self._requests[key] if t > cutoff]
            if not self._requests[key]:
                del self._requests[key]
        self._last_cleanup = now
