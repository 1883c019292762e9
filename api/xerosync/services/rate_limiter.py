"""
Per-tenant throttle for outbound Xero calls.

Xero allows 60 calls per minute, 5 concurrent calls and 5000 calls per day
for each tenant. Every call the historical sync makes goes through
`XeroRateLimiter.execute`, which layers:

  - a moving-window limit (`limits`), so no sliding window of the configured
    duration ever sees more than N call starts. The window lives in Redis by
    default, so every run and worker process for a tenant shares it
  - a concurrency ceiling and a minimum spacing between call starts
  - a Redis day counter shared by all processes for the tenant
  - a bounded retry on HTTP 429, honouring Retry-After
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

import redis.asyncio as aioredis
from limits import parse
from limits.aio.storage import Storage
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from xerosync.core.config import settings
from xerosync.services.xero_client import XeroRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DAILY_KEY_PREFIX = "xero:daily:"
_DAY_SECONDS = 24 * 60 * 60


def window_storage_uri(configured: str = settings.xero_rate_limit_storage, redis_url: str = settings.redis_url) -> str:
    """`limits` storage URI for the per-tenant window: the configured one, else the app Redis."""
    return configured or f"async+{redis_url}"


class DailyLimitExceededError(Exception):
    def __init__(self, tenant_id: str, limit: int):
        super().__init__(f"Xero daily call limit ({limit}) reached for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.limit = limit


class XeroRateLimiter:
    def __init__(
        self,
        tenant_id: str,
        redis: aioredis.Redis | None = None,
        *,
        rate: str = settings.xero_rate_limit,
        storage: str | Storage | None = None,
        max_concurrent: int = settings.xero_max_concurrent,
        min_interval: float = settings.xero_min_interval_seconds,
        daily_limit: int = settings.xero_daily_limit,
        max_retries: int = settings.xero_rate_limit_retries,
    ):
        self.tenant_id = tenant_id
        self.min_interval = min_interval
        self.daily_limit = daily_limit
        self.max_retries = max_retries

        self._redis = redis
        self._item = parse(rate)
        if storage is None:
            storage = window_storage_uri()
        if isinstance(storage, str):
            storage = storage_from_string(storage)
        self._window = MovingWindowRateLimiter(storage)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._start_lock = asyncio.Lock()
        self._last_start = 0.0

    async def execute(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run `call()` once a slot is free; retry it after a 429."""
        attempt = 0
        while True:
            await self._count_daily_call()
            try:
                async with self._semaphore:
                    await self._wait_for_slot()
                    return await call()
            except XeroRateLimitError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Xero 429 for tenant %s after %d retries (%s)",
                        self.tenant_id, attempt, e.problem,
                    )
                    raise
                attempt += 1
                logger.warning(
                    "Xero 429 for tenant %s (%s), retrying in %.1fs (attempt %d/%d)",
                    self.tenant_id, e.problem, e.retry_after, attempt, self.max_retries,
                )
                await asyncio.sleep(e.retry_after)

    async def _wait_for_slot(self) -> None:
        # Serialised so spacing and window checks see call starts in order
        async with self._start_lock:
            wait = self._last_start + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)

            while not await self._window.hit(self._item, self.tenant_id):
                reset_time, _ = await self._window.get_window_stats(self._item, self.tenant_id)
                await asyncio.sleep(max(reset_time - time.time(), 0.01))

            self._last_start = time.monotonic()

    async def _count_daily_call(self) -> None:
        if self._redis is None:
            return
        key = f"{_DAILY_KEY_PREFIX}{self.tenant_id}:{datetime.now(timezone.utc):%Y-%m-%d}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, _DAY_SECONDS)
        if count > self.daily_limit:
            await self._redis.decr(key)
            raise DailyLimitExceededError(self.tenant_id, self.daily_limit)
