"""
Token bucket rate limiter shared by every LLM caller.

Analytics workers run on separate threads with their own event loops, so
the bucket state is guarded by a threading lock and waits are plain
``asyncio.sleep`` calls on the caller's loop.
"""

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from ..models.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenBucket:
    """Token bucket with reservations, safe to share across threads."""

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize token bucket.

        Args:
            capacity: Maximum tokens in bucket
            refill_rate: Tokens added per second
            min_interval: Minimum seconds between two granted requests
            clock: Monotonic time source
        """
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.min_interval = min_interval
        self._clock = clock
        self.tokens = float(capacity)
        self.last_refill = clock()
        self._next_start = 0.0
        self._lock = threading.Lock()

    def reserve(self) -> float:
        """
        Reserve one token.

        Returns:
            Seconds the caller must wait before using the reservation
        """
        with self._lock:
            now = self._clock()
            self._refill(now)

            start_at = max(now, self._next_start)
            if self.tokens < 1:
                start_at = max(start_at, now + (1 - self.tokens) / self.refill_rate)

            self.tokens -= 1
            self._next_start = start_at + self.min_interval
            return start_at - now

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now


class RateLimiter:
    """
    Schedules calls at no more than ``requests_per_minute``.

    Mirrors the Bottleneck settings the LLM endpoint was tuned for:
    ``maxConcurrent = rpm`` and ``minTime = 60 / rpm`` seconds.
    """

    def __init__(
        self,
        requests_per_minute: int,
        max_wait: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")

        self.requests_per_minute = requests_per_minute
        self.max_concurrent = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute
        self.max_wait = max_wait
        self._sleep = sleep
        self._bucket = TokenBucket(
            capacity=requests_per_minute,
            refill_rate=requests_per_minute / 60.0,
            min_interval=self.min_interval,
            clock=clock,
        )
        self._active = 0
        self._active_lock = threading.Lock()
        self.stats = {"scheduled": 0, "total_wait_time": 0.0, "max_wait_time": 0.0}

    async def acquire(self) -> float:
        """Wait for a token; returns the time waited."""
        wait_time = self._bucket.reserve()
        if wait_time > self.max_wait:
            raise RateLimitError(
                f"Rate limiter backlog of {wait_time:.0f}s exceeds {self.max_wait:.0f}s"
            )
        if wait_time > 0:
            logger.debug(f"Rate limiter delaying request by {wait_time:.2f}s")
            await self._sleep(wait_time)

        with self._active_lock:
            self.stats["scheduled"] += 1
            self.stats["total_wait_time"] += wait_time
            self.stats["max_wait_time"] = max(self.stats["max_wait_time"], wait_time)
        return wait_time

    @asynccontextmanager
    async def _concurrency_slot(self) -> AsyncIterator[None]:
        while True:
            with self._active_lock:
                if self._active < self.max_concurrent:
                    self._active += 1
                    break
            await self._sleep(0.05)
        try:
            yield
        finally:
            with self._active_lock:
                self._active -= 1

    async def schedule(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` once a token and a concurrency slot are available."""
        async with self._concurrency_slot():
            await self.acquire()
            return await func()

    def get_stats(self) -> Dict[str, Any]:
        with self._active_lock:
            stats = dict(self.stats)
            stats["active"] = self._active
        stats["requests_per_minute"] = self.requests_per_minute
        return stats


_shared_limiters: Dict[int, RateLimiter] = {}
_shared_lock = threading.Lock()


def get_shared_rate_limiter(requests_per_minute: int) -> RateLimiter:
    """Process-wide limiter for a given rate, created on first use."""
    with _shared_lock:
        limiter: Optional[RateLimiter] = _shared_limiters.get(requests_per_minute)
        if limiter is None:
            limiter = RateLimiter(requests_per_minute)
            _shared_limiters[requests_per_minute] = limiter
        return limiter
