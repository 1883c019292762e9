"""
Tests for XeroRateLimiter: moving window, concurrency ceiling, call spacing,
429 retries and the Redis daily counter. Uses short windows so the suite
stays fast.
"""
import asyncio
import time

import pytest
from limits.aio.storage import MemoryStorage

from xerosync.services.rate_limiter import DailyLimitExceededError, XeroRateLimiter, window_storage_uri
from xerosync.services.xero_client import XeroRateLimitError


def _limiter(**overrides) -> XeroRateLimiter:
    options = {
        "rate": "100/second",
        "storage": "async+memory://",
        "max_concurrent": 5,
        "min_interval": 0,
        "max_retries": 2,
    }
    options.update(overrides)
    return XeroRateLimiter("tenant-1", **options)


# ── moving window ────────────────────────────────────────────────────────────

class TestMovingWindow:
    @pytest.mark.asyncio
    async def test_never_more_than_n_starts_in_any_window(self):
        limiter = _limiter(rate="5/second")
        starts: list[float] = []

        async def call():
            starts.append(time.monotonic())
            return len(starts)

        results = await asyncio.gather(*(limiter.execute(call) for _ in range(12)))

        assert len(results) == 12
        starts.sort()
        for i in range(len(starts) - 5):
            # the 6th start after any start must fall outside its 1s window
            assert starts[i + 5] - starts[i] >= 0.9

    @pytest.mark.asyncio
    async def test_calls_under_the_limit_are_not_delayed(self):
        limiter = _limiter(rate="10/second")
        began = time.monotonic()

        async def call():
            return "ok"

        await asyncio.gather(*(limiter.execute(call) for _ in range(5)))
        assert time.monotonic() - began < 0.5

    @pytest.mark.asyncio
    async def test_tenants_have_separate_windows(self):
        first = XeroRateLimiter("tenant-a", rate="2/second", min_interval=0)
        second = XeroRateLimiter("tenant-b", rate="2/second", min_interval=0)

        async def call():
            return None

        began = time.monotonic()
        await asyncio.gather(*(first.execute(call) for _ in range(2)), *(second.execute(call) for _ in range(2)))
        assert time.monotonic() - began < 0.5


# ── shared window ────────────────────────────────────────────────────────────

class TestSharedWindow:
    @pytest.mark.asyncio
    async def test_instances_on_one_storage_share_the_window(self):
        # e.g. a retried run building a fresh limiter for the same tenant
        storage = MemoryStorage()
        first = _limiter(rate="3/second", storage=storage)
        second = _limiter(rate="3/second", storage=storage)
        starts: list[float] = []

        async def call():
            starts.append(time.monotonic())

        await asyncio.gather(*(first.execute(call) for _ in range(3)))
        await asyncio.gather(*(second.execute(call) for _ in range(3)))

        starts.sort()
        assert starts[3] - starts[0] >= 0.9

    def test_window_defaults_to_app_redis(self):
        assert window_storage_uri("", "redis://redis:6379/0") == "async+redis://redis:6379/0"
        assert window_storage_uri("", "rediss://cache:6380/1") == "async+rediss://cache:6380/1"

    def test_configured_storage_wins(self):
        assert window_storage_uri("async+memory://", "redis://redis:6379/0") == "async+memory://"


# ── concurrency and spacing ──────────────────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_calls_capped(self):
        limiter = _limiter(max_concurrent=2)
        in_flight = 0
        peak = 0

        async def call():
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1

        await asyncio.gather(*(limiter.execute(call) for _ in range(6)))
        assert peak == 2

    @pytest.mark.asyncio
    async def test_min_interval_between_starts(self):
        limiter = _limiter(min_interval=0.05)
        starts: list[float] = []

        async def call():
            starts.append(time.monotonic())

        await asyncio.gather(*(limiter.execute(call) for _ in range(4)))
        starts.sort()
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.045 for gap in gaps)


# ── 429 handling ─────────────────────────────────────────────────────────────

class TestRetryAfter:
    @pytest.mark.asyncio
    async def test_retries_after_429(self):
        limiter = _limiter()
        attempts = 0

        async def call():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise XeroRateLimitError(retry_after=0.01, problem="minute")
            return "ok"

        assert await limiter.execute(call) == "ok"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        limiter = _limiter(max_retries=2)
        attempts = 0

        async def call():
            nonlocal attempts
            attempts += 1
            raise XeroRateLimitError(retry_after=0.01, problem="minute")

        with pytest.raises(XeroRateLimitError):
            await limiter.execute(call)
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_other_errors_propagate_without_retry(self):
        limiter = _limiter()
        attempts = 0

        async def call():
            nonlocal attempts
            attempts += 1
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await limiter.execute(call)
        assert attempts == 1


# ── daily limit ──────────────────────────────────────────────────────────────

class TestDailyLimit:
    @pytest.mark.asyncio
    async def test_blocks_once_daily_limit_reached(self, fake_redis):
        limiter = XeroRateLimiter("tenant-1", fake_redis, rate="100/second", min_interval=0, daily_limit=2)
        calls = 0

        async def call():
            nonlocal calls
            calls += 1

        await limiter.execute(call)
        await limiter.execute(call)
        with pytest.raises(DailyLimitExceededError):
            await limiter.execute(call)

        assert calls == 2
        (key,) = [k for k in fake_redis.data if k.startswith("xero:daily:tenant-1:")]
        # the rejected call does not count against the day
        assert fake_redis.data[key] == 2
        assert fake_redis.ttls[key] == 86400

    @pytest.mark.asyncio
    async def test_no_redis_means_no_daily_limit(self):
        limiter = _limiter(daily_limit=1)

        async def call():
            return "ok"

        assert await limiter.execute(call) == "ok"
        assert await limiter.execute(call) == "ok"
