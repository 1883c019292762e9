import uuid
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SyncEntity(str, Enum):
    """Entity phases, declared in the fixed foreign-key-safe sync order."""
    CONTACTS = "contacts"
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    INVOICES = "invoices"
    BILLS = "bills"

    @property
    def ordinal(self) -> int:
        return SYNC_ORDER.index(self)


SYNC_ORDER: list[SyncEntity] = list(SyncEntity)

# Parent phase that must have been synced before a child phase may run
PHASE_DEPENDENCIES: dict[SyncEntity, SyncEntity] = {
    SyncEntity.TRANSACTIONS: SyncEntity.ACCOUNTS,
    SyncEntity.INVOICES: SyncEntity.CONTACTS,
    SyncEntity.BILLS: SyncEntity.CONTACTS,
}

DEFAULT_LIMITS: dict[SyncEntity, int] = {
    SyncEntity.TRANSACTIONS: 10_000,
    SyncEntity.INVOICES: 5_000,
    SyncEntity.BILLS: 5_000,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ─── Job payload ───────────────────────────────────────────────────────────

class SyncJob(BaseModel):
    """Everything the worker needs for one historical sync. Immutable once queued."""
    model_config = ConfigDict(frozen=True)

    sync_id: uuid.UUID
    user_id: str
    tenant_id: str
    entities: tuple[SyncEntity, ...]
    sync_from_date: date
    limits: dict[SyncEntity, int] = Field(default_factory=dict)
    encrypted_access_token: str

    def limit_for(self, entity: SyncEntity) -> int | None:
        return self.limits.get(entity, DEFAULT_LIMITS.get(entity))


# ─── Checkpoint ────────────────────────────────────────────────────────────

class SyncCheckpoint(BaseModel):
    """Resume state for one sync id.

    `planned_entities` and `sync_from_date` describe the run that wrote the
    checkpoint; a run with a different plan or date boundary must not use it.
    `last_completed_entity` names the last phase whose pages were all fetched
    and flushed; every planned phase up to it is durable.
    `last_pages` holds the last flushed page of each paginated phase.
    """
    planned_entities: list[SyncEntity] = Field(default_factory=list)
    sync_from_date: date | None = None
    last_completed_entity: SyncEntity | None = None
    last_pages: dict[SyncEntity, int] = Field(default_factory=dict)
    processed_counts: dict[SyncEntity, int] = Field(default_factory=dict)
    saved_at: datetime | None = None

    @property
    def completed_entities(self) -> list[SyncEntity]:
        if self.last_completed_entity is None:
            return []
        last = self.last_completed_entity.ordinal
        return [e for e in self.planned_entities if e.ordinal <= last]


# ─── Progress ──────────────────────────────────────────────────────────────

class StepProgress(BaseModel):
    status: StepStatus = StepStatus.PENDING
    count: int = 0
    details: str | None = None


class CheckpointInfo(BaseModel):
    last_saved: datetime | None = None
    restored_from: datetime | None = None
    completed_entities: list[SyncEntity] = Field(default_factory=list)


class SyncProgress(BaseModel):
    sync_id: uuid.UUID
    status: SyncStatus = SyncStatus.IN_PROGRESS
    percentage: float = 0
    current_step: str = ""
    steps: dict[SyncEntity, StepProgress] = Field(default_factory=dict)
    checkpoint: CheckpointInfo | None = None
    summary: dict[SyncEntity, int] | None = None
    error: str | None = None
    updated_at: datetime | None = None


class SyncSummary(BaseModel):
    sync_id: uuid.UUID
    counts: dict[SyncEntity, int]
    duration_seconds: float

    @property
    def total_records(self) -> int:
        return sum(self.counts.values())


# ─── API ───────────────────────────────────────────────────────────────────

class HistoricalSyncRequest(BaseModel):
    user_id: str
    tenant_id: str
    access_token: str
    entities: list[SyncEntity] = Field(default_factory=lambda: list(SYNC_ORDER))
    sync_from_date: date
    limits: dict[SyncEntity, int] = Field(default_factory=dict)
    sync_id: uuid.UUID | None = None  # set to retry/resume an earlier sync

    @field_validator("entities")
    @classmethod
    def _entities_not_empty(cls, v: list[SyncEntity]) -> list[SyncEntity]:
        if not v:
            raise ValueError("at least one entity type is required")
        return v

    @field_validator("limits")
    @classmethod
    def _limits_positive(cls, v: dict[SyncEntity, int]) -> dict[SyncEntity, int]:
        for entity, limit in v.items():
            if limit <= 0:
                raise ValueError(f"limit for {entity.value} must be positive")
        return v


class SyncEnqueueResponse(BaseModel):
    sync_id: uuid.UUID
    job_id: str
    status: str = "queued"
    entities: list[SyncEntity]


class CheckpointStatusResponse(BaseModel):
    exists: bool
    checkpoint: SyncCheckpoint | None = None


class JobStatusResponse(BaseModel):
    id: str
    state: str
    result: dict | None = None
    failed_reason: str | None = None
