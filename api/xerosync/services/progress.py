"""
Externally visible progress of a historical sync.

The worker owns the record: `ProgressReporter` keeps it in memory and writes
the whole document on every change. The API only reads it (`load_progress`).
"""

import logging
import uuid
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import ValidationError

from xerosync.core.config import settings
from xerosync.schemas.sync import (
    CheckpointInfo,
    StepProgress,
    StepStatus,
    SyncCheckpoint,
    SyncEntity,
    SyncProgress,
    SyncStatus,
    SyncSummary,
)

logger = logging.getLogger(__name__)

_PROGRESS_PREFIX = "sync:progress:"


def progress_key(sync_id) -> str:
    return f"{_PROGRESS_PREFIX}{sync_id}"


async def load_progress(redis: aioredis.Redis, sync_id) -> SyncProgress | None:
    raw = await redis.get(progress_key(sync_id))
    if raw is None:
        return None
    try:
        return SyncProgress.model_validate_json(raw)
    except ValidationError:
        logger.warning("Unreadable progress record for sync %s", sync_id)
        return None


class ProgressReporter:
    def __init__(
        self,
        redis: aioredis.Redis,
        sync_id: uuid.UUID,
        ttl_seconds: int = settings.sync_progress_ttl_seconds,
    ):
        self._redis = redis
        self.ttl_seconds = ttl_seconds
        self.progress = SyncProgress(sync_id=sync_id)

    async def start(self, plan: list[SyncEntity]) -> None:
        self.progress.steps = {entity: StepProgress() for entity in plan}
        self.progress.percentage = 5
        self.progress.current_step = "Starting historical sync"
        await self._write()

    async def restored(self, checkpoint: SyncCheckpoint) -> None:
        completed = checkpoint.completed_entities
        for entity, step in self.progress.steps.items():
            step.count = checkpoint.processed_counts.get(entity, 0)
            if entity in completed:
                step.status = StepStatus.COMPLETED
        self.progress.checkpoint = CheckpointInfo(
            last_saved=checkpoint.saved_at,
            restored_from=checkpoint.saved_at,
            completed_entities=completed,
        )
        self.progress.current_step = "Resuming from checkpoint"
        await self._write()

    async def phase_started(self, entity: SyncEntity, step: str) -> None:
        self.progress.steps[entity].status = StepStatus.IN_PROGRESS
        self.progress.current_step = step
        await self._write()

    async def phase_progress(
        self,
        entity: SyncEntity,
        count: int,
        percentage: float,
        step: str | None = None,
    ) -> None:
        self.progress.steps[entity].count = count
        self.progress.percentage = round(percentage, 1)
        if step:
            self.progress.current_step = step
        await self._write()

    async def phase_completed(self, entity: SyncEntity, count: int, percentage: float) -> None:
        self.progress.steps[entity] = StepProgress(status=StepStatus.COMPLETED, count=count)
        self.progress.percentage = round(percentage, 1)
        self.progress.current_step = f"Synced {count} {entity.value}"
        await self._write()

    async def checkpoint_saved(self, checkpoint: SyncCheckpoint) -> None:
        info = self.progress.checkpoint or CheckpointInfo()
        info.last_saved = checkpoint.saved_at
        info.completed_entities = checkpoint.completed_entities
        self.progress.checkpoint = info
        await self._write()

    async def complete(self, summary: SyncSummary) -> None:
        self.progress.status = SyncStatus.COMPLETED
        self.progress.percentage = 100
        self.progress.current_step = "Historical sync completed"
        self.progress.summary = dict(summary.counts)
        await self._write()

    async def fail(self, message: str) -> None:
        self.progress.status = SyncStatus.FAILED
        self.progress.current_step = "Historical sync failed"
        self.progress.error = message
        await self._write()

    async def _write(self) -> None:
        self.progress.updated_at = datetime.now(timezone.utc)
        await self._redis.setex(
            progress_key(self.progress.sync_id),
            self.ttl_seconds,
            self.progress.model_dump_json(),
        )
