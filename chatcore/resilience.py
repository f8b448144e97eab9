import asyncio
import logging
import math
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import CancelledFailure, CircuitOpenFailure

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

RETRY_DELAY_S = 1.0


async def sleep_unless_cancelled(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds; returns True if the cancel event fired first."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str = "model call",
    *,
    delay: float = RETRY_DELAY_S,
    cancel_event: Optional[asyncio.Event] = None,
) -> T:
    """Await ``fn`` and retry it exactly once after ``delay`` seconds.

    The second failure propagates unchanged. Cancellation (task cancellation,
    ``CancelledFailure`` or a set ``cancel_event``) is never retried.
    """
    try:
        return await fn()
    except CancelledFailure:
        raise
    except Exception as exc:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledFailure(f"{label} cancelled") from exc
        logger.warning("%s failed, retrying in %.1fs: %s", label, delay, exc)
    if await sleep_unless_cancelled(delay, cancel_event):
        raise CancelledFailure(f"{label} cancelled during backoff")
    return await fn()


class CircuitBreaker:
    """Consecutive-failure breaker shared by every request hitting one dependency."""

    def __init__(
        self,
        name: str,
        threshold: int = 3,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._last_error: Optional[str] = None

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def _check(self) -> bool:
        """Admit a call or raise CircuitOpenFailure; returns True for the half-open trial."""
        with self._lock:
            if self._opened_at is None:
                return False
            elapsed = self._clock() - self._opened_at
            if elapsed >= self.cooldown and not self._trial_in_flight:
                # Half-open: exactly one trial, everyone else keeps failing fast.
                self._trial_in_flight = True
                return True
            retry_after = max(1, math.ceil(self.cooldown - elapsed))
            last_error = self._last_error
        raise CircuitOpenFailure(self.name, retry_after, last_error)

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False
            self._last_error = None

    def record_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._failures += 1
            self._last_error = str(exc) or exc.__class__.__name__
            self._trial_in_flight = False
            if self._failures >= self.threshold:
                if self._opened_at is None:
                    logger.error(
                        "%s circuit opened after %s consecutive failures: %s",
                        self.name,
                        self._failures,
                        self._last_error,
                    )
                self._opened_at = self._clock()

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        trial = self._check()
        try:
            result = await fn()
        except (CancelledFailure, asyncio.CancelledError):
            # Not a verdict on the dependency; the next caller gets the trial.
            if trial:
                self._release_trial()
            raise
        except Exception as exc:
            self.record_failure(exc)
            raise
        self.record_success()
        return result

    def status(self) -> Dict[str, Any]:
        with self._lock:
            circuit_open = self._opened_at is not None and (self._clock() - self._opened_at) < self.cooldown
            return {
                "healthy": not circuit_open,
                "circuit_open": circuit_open,
                "consecutive_failures": self._failures,
                "last_error": self._last_error,
            }
