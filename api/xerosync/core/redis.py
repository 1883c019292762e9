import redis.asyncio as aioredis

from xerosync.core.config import settings

# Shared async Redis client for the API process (created once, reused across requests).
# Celery tasks build their own client per event loop, see services.historical_sync.
_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def create_redis() -> aioredis.Redis:
    """Return a fresh client; caller owns it and must close it."""
    return aioredis.from_url(settings.redis_url, decode_responses=True)


# ─── Enqueue lock ──────────────────────────────────────────────────────────────

_ENQUEUE_LOCK_PREFIX = "sync:lock:"


async def acquire_enqueue_lock(r: aioredis.Redis, sync_id: str, ttl_seconds: int) -> bool:
    """Claim the right to enqueue `sync_id`. Returns False if it is already held."""
    return bool(await r.set(f"{_ENQUEUE_LOCK_PREFIX}{sync_id}", "1", ex=ttl_seconds, nx=True))


async def release_enqueue_lock(r: aioredis.Redis, sync_id: str) -> None:
    """Drop the enqueue lock so the same sync id can be queued again."""
    await r.delete(f"{_ENQUEUE_LOCK_PREFIX}{sync_id}")
