"""Token bucket shared by every caller of one provider gateway instance."""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Async token bucket.

    Refills ``rate_per_minute`` tokens per minute up to ``capacity``. acquire()
    waits until a token is available, so concurrent workers share the quota
    instead of each assuming the whole allowance.
    """

    def __init__(
        self,
        rate_per_minute: int,
        capacity: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = float(capacity if capacity is not None else max(1, rate_per_minute // 6))
        self._tokens = self.capacity
        self._clock = clock
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
            self._updated_at = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, tokens: float = 1.0) -> float:
        """Take tokens, sleeping as needed. Returns the total seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                wait = (tokens - self._tokens) / self.rate_per_second
                await asyncio.sleep(wait)
                waited += wait

    def penalize(self, seconds: float) -> None:
        """Drain the bucket after a 429 so every worker backs off, not just the caller."""
        self._refill()
        self._tokens = min(self._tokens, -seconds * self.rate_per_second)
        logger.warning(f"[PROVIDER] Rate limit penalty: bucket drained for ~{seconds:.1f}s")
