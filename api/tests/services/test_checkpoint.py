import uuid

import pytest

from xerosync.schemas.sync import SYNC_ORDER, SyncCheckpoint, SyncEntity
from xerosync.services.checkpoint import CheckpointStore, checkpoint_key


@pytest.fixture
def store(fake_redis):
    return CheckpointStore(fake_redis)


class TestCheckpointStore:
    @pytest.mark.asyncio
    async def test_missing_checkpoint_loads_as_none(self, store):
        assert await store.load(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, store, fake_redis):
        sync_id = uuid.uuid4()
        checkpoint = SyncCheckpoint(
            planned_entities=list(SYNC_ORDER),
            last_completed_entity=SyncEntity.ACCOUNTS,
            last_pages={SyncEntity.TRANSACTIONS: 2},
            processed_counts={SyncEntity.ACCOUNTS: 3, SyncEntity.TRANSACTIONS: 200},
        )
        saved = await store.save(sync_id, checkpoint)
        loaded = await store.load(sync_id)

        assert saved.saved_at is not None
        assert loaded == saved
        assert loaded.completed_entities == [SyncEntity.CONTACTS, SyncEntity.ACCOUNTS]
        assert fake_redis.ttls[checkpoint_key(sync_id)] == 86400

    @pytest.mark.asyncio
    async def test_save_does_not_mutate_argument(self, store):
        checkpoint = SyncCheckpoint()
        await store.save(uuid.uuid4(), checkpoint)
        assert checkpoint.saved_at is None

    @pytest.mark.asyncio
    async def test_save_overwrites_wholesale(self, store):
        sync_id = uuid.uuid4()
        await store.save(sync_id, SyncCheckpoint(last_pages={SyncEntity.CONTACTS: 4}))
        await store.save(sync_id, SyncCheckpoint(last_completed_entity=SyncEntity.CONTACTS))

        loaded = await store.load(sync_id)
        assert loaded.last_pages == {}
        assert loaded.last_completed_entity is SyncEntity.CONTACTS

    @pytest.mark.asyncio
    async def test_clear_removes_checkpoint(self, store):
        sync_id = uuid.uuid4()
        await store.save(sync_id, SyncCheckpoint())
        await store.clear(sync_id)
        assert await store.load(sync_id) is None

    @pytest.mark.asyncio
    async def test_unreadable_record_treated_as_absent(self, store, fake_redis):
        sync_id = uuid.uuid4()
        fake_redis.data[checkpoint_key(sync_id)] = "{not json"
        assert await store.load(sync_id) is None

    def test_completed_entities_only_include_planned_phases(self):
        checkpoint = SyncCheckpoint(
            planned_entities=[SyncEntity.ACCOUNTS, SyncEntity.TRANSACTIONS],
            last_completed_entity=SyncEntity.ACCOUNTS,
        )
        # contacts precede accounts in sync order but were never part of this run
        assert checkpoint.completed_entities == [SyncEntity.ACCOUNTS]
