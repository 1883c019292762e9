"""
Upsert primitive and batcher against in-memory SQLite (ON CONFLICT DO UPDATE).
"""
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from fakes import make_contact
from xerosync.models.xero import Contact
from xerosync.services.upsert import UpsertBatcher, upsert_rows
from xerosync.services.xero_mapping import map_contact

TENANT = "tenant-1"


def _contact_row(n: int, **changes) -> dict:
    row = map_contact(make_contact(n), TENANT)
    row.update(changes)
    return row


async def _contacts(session_factory) -> list[Contact]:
    async with session_factory() as session:
        result = await session.execute(select(Contact).order_by(Contact.xero_contact_id))
        return list(result.scalars().all())


async def _contact_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Contact))


# ── upsert_rows ──────────────────────────────────────────────────────────────

class TestUpsertRows:
    @pytest.mark.asyncio
    async def test_inserts_new_rows(self, session_factory):
        async with session_factory() as session, session.begin():
            written = await upsert_rows(session, Contact, [_contact_row(1), _contact_row(2)], "xero_contact_id")

        assert written == 2
        assert [c.name for c in await _contacts(session_factory)] == ["Contact 1", "Contact 2"]

    @pytest.mark.asyncio
    async def test_conflict_updates_in_place(self, session_factory):
        async with session_factory() as session, session.begin():
            await upsert_rows(session, Contact, [_contact_row(1)], "xero_contact_id")
        (original,) = await _contacts(session_factory)

        async with session_factory() as session, session.begin():
            await upsert_rows(session, Contact, [_contact_row(1, name="Renamed Ltd")], "xero_contact_id")
        (updated,) = await _contacts(session_factory)

        assert updated.id == original.id
        assert updated.name == "Renamed Ltd"

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, session_factory):
        async with session_factory() as session, session.begin():
            assert await upsert_rows(session, Contact, [], "xero_contact_id") == 0

    @pytest.mark.asyncio
    async def test_failed_batch_persists_nothing(self, session_factory):
        rows = [_contact_row(1), _contact_row(2, name=None), _contact_row(3)]

        with pytest.raises(IntegrityError):
            async with session_factory() as session, session.begin():
                await upsert_rows(session, Contact, rows, "xero_contact_id")

        assert await _contact_count(session_factory) == 0


# ── UpsertBatcher ────────────────────────────────────────────────────────────

class TestUpsertBatcher:
    @pytest.mark.asyncio
    async def test_flushes_when_threshold_reached(self, session_factory):
        batcher = UpsertBatcher(session_factory, Contact, "xero_contact_id", batch_size=3)
        for n in range(1, 5):
            await batcher.add(_contact_row(n))

        assert await _contact_count(session_factory) == 3
        assert len(batcher) == 1

        assert await batcher.flush_remaining() == 1
        assert await _contact_count(session_factory) == 4
        assert batcher.flushed == 4

    @pytest.mark.asyncio
    async def test_duplicate_ids_collapse_to_latest(self, session_factory):
        batcher = UpsertBatcher(session_factory, Contact, "xero_contact_id", batch_size=10)
        await batcher.add(_contact_row(1, name="First"))
        await batcher.add(_contact_row(1, name="Second"))

        assert await batcher.flush_remaining() == 1
        (contact,) = await _contacts(session_factory)
        assert contact.name == "Second"

    @pytest.mark.asyncio
    async def test_flush_remaining_with_empty_buffer(self, session_factory):
        batcher = UpsertBatcher(session_factory, Contact, "xero_contact_id")
        assert await batcher.flush_remaining() == 0

    @pytest.mark.asyncio
    async def test_flush_error_propagates_and_rolls_back(self, session_factory):
        batcher = UpsertBatcher(session_factory, Contact, "xero_contact_id", batch_size=10)
        await batcher.add(_contact_row(1))
        await batcher.add(_contact_row(2, updated_date_utc=None))

        with pytest.raises(IntegrityError):
            await batcher.flush_remaining()
        assert await _contact_count(session_factory) == 0
