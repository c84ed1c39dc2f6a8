"""
Token-bucket rate limiter for asyncio workers.

Tokens are added at a fixed rate up to capacity. Bursts up to capacity
pass immediately, after which acquisition is paced at the configured rate.
One limiter instance is shared by every worker in a pool; the bucket is
guarded by an asyncio.Lock.

Usage:
    limiter = TokenBucketRateLimiter(rate=10, capacity=20)
    if await limiter.acquire(cancel=shutdown_event):
        await process()
"""

import asyncio
import math
import time
from typing import Callable, Optional


class TokenBucketRateLimiter:
    """
    Async token bucket.

    Attributes:
        rate: Tokens added per second
        capacity: Maximum tokens (burst size)
    """

    def __init__(
        self,
        rate: float,
        capacity: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity is None:
            capacity = max(1.0, float(math.ceil(rate)))
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = self.capacity
        self._last_update = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_update = now

    @property
    def available_tokens(self) -> float:
        """Tokens currently in the bucket."""
        self._refill()
        return self._tokens

    def get_wait_time(self, tokens: float = 1) -> float:
        """Seconds until `tokens` would be available (0 if available now)."""
        self._refill()
        if self._tokens >= tokens:
            return 0.0
        return (tokens - self._tokens) / self.rate

    def try_acquire(self, tokens: float = 1) -> bool:
        """Take tokens without waiting. Returns False if not enough are available."""
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than bucket capacity")
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(
        self,
        tokens: float = 1,
        cancel: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Wait until tokens are available and take them.

        Args:
            tokens: Number of tokens to take
            cancel: Optional event; if it fires while waiting, give up

        Returns:
            True if tokens were acquired, False if cancelled first
        """
        if tokens > self.capacity:
            raise ValueError("cannot acquire more tokens than bucket capacity")

        while True:
            if cancel is not None and cancel.is_set():
                return False

            async with self._lock:
                if self.try_acquire(tokens):
                    return True
                wait_time = self.get_wait_time(tokens)

            # Sleep outside the lock so other workers can refill-check
            if cancel is None:
                await asyncio.sleep(wait_time)
                continue

            try:
                await asyncio.wait_for(cancel.wait(), timeout=wait_time)
            except asyncio.TimeoutError:
                continue
            return False
