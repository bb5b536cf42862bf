"""Token-bucket throttle shared by every call to the speech service."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from podcast_engine.errors import RateLimitError

logger = logging.getLogger(__name__)


class TokenBucket:
    """Process-wide token bucket refilled in whole tokens from elapsed time.

    Construct one per process and hand the same instance to every
    synthesizer. ``clock`` and ``sleep`` are injectable so tests can drive
    time explicitly.
    """

    def __init__(
        self,
        capacity: int = 50,
        refill_rate: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        to_add = int((now - self._last_refill) * self.refill_rate)
        if to_add > 0:
            self._tokens = min(float(self.capacity), self._tokens + to_add)
            self._last_refill = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self, cost: int = 1) -> bool:
        """Take ``cost`` tokens if they are available right now."""
        if cost > self.capacity:
            raise ValueError(f"cost {cost} exceeds bucket capacity {self.capacity}")
        with self._lock:
            self._refill()
            if self._tokens >= cost:
                self._tokens -= cost
                return True
            return False

    def acquire(
        self,
        cost: int = 1,
        *,
        poll_interval: float = 1.0,
        timeout: float | None = None,
    ) -> None:
        """Block until ``cost`` tokens are taken, re-checking every ``poll_interval``.

        Raises:
            RateLimitError: ``timeout`` seconds passed without enough tokens.
        """
        started = self._clock()
        while not self.try_acquire(cost):
            if timeout is not None and self._clock() - started >= timeout:
                raise RateLimitError(f"Timed out after {timeout:.1f}s waiting for {cost} token(s)")
            logger.debug("Rate limiting in effect, waiting for %d token(s)", cost)
            self._sleep(poll_interval)

    def drain(self, amount: int) -> None:
        """Forcibly remove tokens after the upstream service pushed back."""
        with self._lock:
            self._refill()
            self._tokens = max(0.0, self._tokens - amount)
        logger.info("Drained %d rate limiter token(s)", amount)
