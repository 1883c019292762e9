import uuid

import pytest

from xerosync.schemas.sync import (
    StepStatus,
    SyncCheckpoint,
    SyncEntity,
    SyncStatus,
    SyncSummary,
)
from xerosync.services.progress import ProgressReporter, load_progress, progress_key

PLAN = [SyncEntity.ACCOUNTS, SyncEntity.TRANSACTIONS]


@pytest.fixture
def sync_id():
    return uuid.uuid4()


@pytest.fixture
def reporter(fake_redis, sync_id):
    return ProgressReporter(fake_redis, sync_id)


class TestProgressReporter:
    @pytest.mark.asyncio
    async def test_start_publishes_pending_steps(self, reporter, fake_redis, sync_id):
        await reporter.start(PLAN)
        progress = await load_progress(fake_redis, sync_id)

        assert progress.status is SyncStatus.IN_PROGRESS
        assert progress.percentage == 5
        assert set(progress.steps) == set(PLAN)
        assert all(step.status is StepStatus.PENDING for step in progress.steps.values())
        assert fake_redis.ttls[progress_key(sync_id)] == 3600

    @pytest.mark.asyncio
    async def test_phase_lifecycle(self, reporter, fake_redis, sync_id):
        await reporter.start(PLAN)
        await reporter.phase_started(SyncEntity.TRANSACTIONS, "Syncing transactions")
        await reporter.phase_progress(SyncEntity.TRANSACTIONS, 100, 60.0)

        progress = await load_progress(fake_redis, sync_id)
        assert progress.steps[SyncEntity.TRANSACTIONS].status is StepStatus.IN_PROGRESS
        assert progress.steps[SyncEntity.TRANSACTIONS].count == 100
        assert progress.current_step == "Syncing transactions"

        await reporter.phase_completed(SyncEntity.TRANSACTIONS, 250, 95.0)
        progress = await load_progress(fake_redis, sync_id)
        assert progress.steps[SyncEntity.TRANSACTIONS].status is StepStatus.COMPLETED
        assert progress.steps[SyncEntity.TRANSACTIONS].count == 250
        assert progress.percentage == 95

    @pytest.mark.asyncio
    async def test_restored_marks_completed_phases(self, reporter, fake_redis, sync_id):
        await reporter.start(PLAN)
        checkpoint = SyncCheckpoint(
            planned_entities=PLAN,
            last_completed_entity=SyncEntity.ACCOUNTS,
            last_pages={SyncEntity.TRANSACTIONS: 2},
            processed_counts={SyncEntity.ACCOUNTS: 3, SyncEntity.TRANSACTIONS: 200},
        )
        await reporter.restored(checkpoint)

        progress = await load_progress(fake_redis, sync_id)
        assert progress.steps[SyncEntity.ACCOUNTS].status is StepStatus.COMPLETED
        assert progress.steps[SyncEntity.TRANSACTIONS].status is StepStatus.PENDING
        assert progress.steps[SyncEntity.TRANSACTIONS].count == 200
        assert SyncEntity.ACCOUNTS in progress.checkpoint.completed_entities

    @pytest.mark.asyncio
    async def test_complete(self, reporter, fake_redis, sync_id):
        await reporter.start(PLAN)
        summary = SyncSummary(
            sync_id=sync_id,
            counts={SyncEntity.ACCOUNTS: 3, SyncEntity.TRANSACTIONS: 250},
            duration_seconds=1.5,
        )
        await reporter.complete(summary)

        progress = await load_progress(fake_redis, sync_id)
        assert progress.status is SyncStatus.COMPLETED
        assert progress.percentage == 100
        assert progress.summary == {SyncEntity.ACCOUNTS: 3, SyncEntity.TRANSACTIONS: 250}

    @pytest.mark.asyncio
    async def test_fail_records_error(self, reporter, fake_redis, sync_id):
        await reporter.start(PLAN)
        await reporter.fail("Xero API error 500: boom")

        progress = await load_progress(fake_redis, sync_id)
        assert progress.status is SyncStatus.FAILED
        assert progress.error == "Xero API error 500: boom"

    @pytest.mark.asyncio
    async def test_load_missing_progress(self, fake_redis):
        assert await load_progress(fake_redis, uuid.uuid4()) is None
