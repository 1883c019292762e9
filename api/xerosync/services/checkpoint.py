import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import ValidationError

from xerosync.core.config import settings
from xerosync.schemas.sync import SyncCheckpoint

logger = logging.getLogger(__name__)

_CHECKPOINT_PREFIX = "sync:checkpoint:"


def checkpoint_key(sync_id) -> str:
    return f"{_CHECKPOINT_PREFIX}{sync_id}"


class CheckpointStore:
    """Redis-backed resume state for historical syncs, one record per sync id.

    A record survives a failed run (until its TTL lapses) so a retry with the
    same sync id picks up where the failed run stopped.
    """

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = settings.sync_checkpoint_ttl_seconds):
        self._redis = redis
        self.ttl_seconds = ttl_seconds

    async def load(self, sync_id) -> SyncCheckpoint | None:
        raw = await self._redis.get(checkpoint_key(sync_id))
        if raw is None:
            return None
        try:
            return SyncCheckpoint.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable checkpoint for sync %s", sync_id)
            return None

    async def save(self, sync_id, checkpoint: SyncCheckpoint) -> SyncCheckpoint:
        stamped = checkpoint.model_copy(update={"saved_at": datetime.now(timezone.utc)}, deep=True)
        await self._redis.setex(checkpoint_key(sync_id), self.ttl_seconds, stamped.model_dump_json())
        logger.debug(
            "Checkpoint saved for sync %s: last_completed=%s pages=%s",
            sync_id, stamped.last_completed_entity, stamped.last_pages,
        )
        return stamped

    async def clear(self, sync_id) -> None:
        await self._redis.delete(checkpoint_key(sync_id))
