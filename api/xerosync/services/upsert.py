import logging
import uuid
from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.core.config import settings
from xerosync.core.database import Base

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


async def upsert_rows(
    session: AsyncSession,
    model: type[Base],
    rows: list[dict[str, Any]],
    key: str,
) -> int:
    """INSERT … ON CONFLICT (key) DO UPDATE for every row in one statement.

    Existing rows keep their primary key; every other supplied column is
    overwritten. Returns the number of rows written.
    """
    if not rows:
        return 0

    dialect = session.get_bind().dialect.name
    try:
        insert = _INSERTS[dialect]
    except KeyError:
        raise ValueError(f"upsert is not supported on {dialect}") from None

    stmt = insert(model).values([{"id": uuid.uuid4(), **row} for row in rows])
    stmt = stmt.on_conflict_do_update(
        index_elements=[key],
        set_={col: stmt.excluded[col] for col in rows[0] if col not in (key, "id")},
    )
    await session.execute(stmt)
    return len(rows)


class UpsertBatcher:
    """Buffers mapped rows for one table and writes them in atomic batches.

    Rows are keyed by their external id, so a record seen twice before a flush
    is written once, in its latest form. Callers must `flush_remaining()` at the
    end of every page before recording it as done.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        model: type[Base],
        key: str,
        batch_size: int = settings.sync_batch_size,
    ):
        self._session_factory = session_factory
        self.model = model
        self.key = key
        self.batch_size = batch_size
        self.flushed = 0
        self._buffer: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._buffer)

    async def add(self, row: dict[str, Any]) -> None:
        self._buffer[row[self.key]] = row
        if len(self._buffer) >= self.batch_size:
            await self._flush()

    async def flush_remaining(self) -> int:
        return await self._flush()

    async def _flush(self) -> int:
        if not self._buffer:
            return 0
        rows = list(self._buffer.values())
        async with self._session_factory() as session, session.begin():
            written = await upsert_rows(session, self.model, rows, self.key)
        self._buffer.clear()
        self.flushed += written
        logger.debug("Upserted %d %s rows", written, self.model.__tablename__)
        return written
