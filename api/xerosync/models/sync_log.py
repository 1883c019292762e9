import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from xerosync.core.database import Base


class SyncLog(Base):
    """One row per sync attempt; `id` is the sync id shared with checkpoint and progress."""
    __tablename__ = "sync_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    sync_type: Mapped[str] = mapped_column(String(30), default="historical")
    status: Mapped[str] = mapped_column(String(20), default="in_progress")  # in_progress | success | failed
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    parameters: Mapped[str | None] = mapped_column(Text)  # JSON: planned entities, sync_from_date, limits
    details: Mapped[str | None] = mapped_column(Text)  # JSON
    error_message: Mapped[str | None] = mapped_column(Text)
