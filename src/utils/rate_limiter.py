"""Token bucket rate limiter for third-party APIs with per-second quotas."""

import asyncio
import time
from typing import Callable


class RateLimiter:
    """
    Token bucket shared by every coroutine calling one upstream API.

    Used for the RapidAPI TikTok download endpoint, which allows 9 requests
    per second across all concurrently running pipelines.
    """

    def __init__(
        self,
        max_requests_per_second: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests_per_second <= 0:
            raise ValueError("max_requests_per_second must be positive")
        self.max_tokens = float(max_requests_per_second)
        self.refill_interval = 1.0 / max_requests_per_second
        self._clock = clock
        self._tokens = self.max_tokens
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.max_tokens, self._tokens + elapsed / self.refill_interval)
            self._last_refill = now

    async def acquire(self) -> None:
        """Take one token, sleeping until one is available."""
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                await asyncio.sleep((1 - self._tokens) * self.refill_interval)
                self._refill()
            self._tokens -= 1

    def try_acquire(self) -> bool:
        """Take one token without waiting; False when rate limited."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    @property
    def available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)
