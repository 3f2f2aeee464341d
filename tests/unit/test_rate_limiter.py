"""
Unit tests for the shared LLM rate limiter.
"""

import pytest

from ecfr_analyzer.core.rate_limiter import RateLimiter, TokenBucket, get_shared_rate_limiter
from ecfr_analyzer.models.errors import RateLimitError


class FakeClock:
    """Monotonic clock advanced only by the recorded sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestTokenBucket:
    def test_first_reservation_is_free(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=2, refill_rate=1.0, min_interval=0.0, clock=clock)
        assert bucket.reserve() == 0.0
        assert bucket.reserve() == 0.0

    def test_empty_bucket_waits_for_refill(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=1, refill_rate=0.5, clock=clock)
        bucket.reserve()
        assert bucket.reserve() == pytest.approx(2.0)

    def test_min_interval_spaces_reservations(self):
        clock = FakeClock()
        bucket = TokenBucket(capacity=10, refill_rate=10.0, min_interval=3.0, clock=clock)
        waits = [bucket.reserve() for _ in range(3)]
        assert waits == [0.0, 3.0, 6.0]


class TestRateLimiter:
    """Test request pacing."""

    @pytest.mark.asyncio
    async def test_six_rpm_paces_twelve_requests(self):
        """Test 12 requests at 6 per minute span at least 110 seconds."""
        clock = FakeClock()
        limiter = RateLimiter(6, clock=clock, sleep=clock.sleep)

        for _ in range(12):
            await limiter.acquire()

        assert clock.now >= 110.0
        assert limiter.get_stats()["scheduled"] == 12

    @pytest.mark.asyncio
    async def test_schedule_runs_function(self):
        clock = FakeClock()
        limiter = RateLimiter(60, clock=clock, sleep=clock.sleep)

        async def call():
            return "ok"

        assert await limiter.schedule(call) == "ok"
        assert await limiter.schedule(call) == "ok"
        assert clock.sleeps == [pytest.approx(1.0)]
        assert limiter.get_stats()["active"] == 0

    @pytest.mark.asyncio
    async def test_backlog_beyond_max_wait(self):
        """Test a reservation further out than max_wait is refused."""
        clock = FakeClock()
        limiter = RateLimiter(1, max_wait=30.0, clock=clock, sleep=clock.sleep)

        await limiter.acquire()
        with pytest.raises(RateLimitError):
            await limiter.acquire()

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(0)

    def test_shared_limiter_per_rate(self):
        assert get_shared_rate_limiter(7) is get_shared_rate_limiter(7)
        assert get_shared_rate_limiter(7) is not get_shared_rate_limiter(8)
