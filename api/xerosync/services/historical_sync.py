"""
Historical Xero sync.

Imports a tenant's contacts, accounts, bank transactions, invoices and bills
into the local database, in that order, so that every child row can resolve
its parent. The run is checkpointed after every page: a crashed or failed run
that is retried with the same sync id skips the phases it already finished and
resumes the interrupted phase at the page after the last one it flushed.
Re-processing at most one page is harmless because every write is an upsert.

Runs as a Celery task on a dedicated queue served with concurrency 1.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.core.config import settings
from xerosync.core.database import create_engine_from_settings, create_session_factory
from xerosync.core.redis import create_redis, release_enqueue_lock
from xerosync.core.security import decrypt_value
from xerosync.models.sync_log import SyncLog
from xerosync.models.xero import BankAccount, BankTransaction, Contact, GLAccount, Invoice
from xerosync.schemas.sync import (
    PHASE_DEPENDENCIES,
    SYNC_ORDER,
    SyncCheckpoint,
    SyncEntity,
    SyncJob,
    SyncSummary,
)
from xerosync.services.checkpoint import CheckpointStore
from xerosync.services.pagination import paginate
from xerosync.services.progress import ProgressReporter
from xerosync.services.rate_limiter import XeroRateLimiter
from xerosync.services.upsert import UpsertBatcher, upsert_rows
from xerosync.services.xero_client import PageResult, XeroClient
from xerosync.services.xero_mapping import (
    is_bank_account,
    map_bank_account,
    map_bank_transaction,
    map_contact,
    map_gl_account,
    map_invoice,
)
from xerosync.worker import celery_app

logger = logging.getLogger(__name__)

_INVOICE_TYPES = {
    SyncEntity.INVOICES: "ACCREC",
    SyncEntity.BILLS: "ACCPAY",
}


class MissingCredentialsError(Exception):
    pass


def plan_phases(entities: Iterable[SyncEntity]) -> list[SyncEntity]:
    """Requested entities plus the parents they depend on, in sync order."""
    wanted = set(entities)
    for entity in list(wanted):
        parent = PHASE_DEPENDENCIES.get(entity)
        if parent is not None:
            wanted.add(parent)
    return [entity for entity in SYNC_ORDER if entity in wanted]


class HistoricalSyncOrchestrator:
    def __init__(
        self,
        job: SyncJob,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        client: XeroClient,
        rate_limiter: XeroRateLimiter,
        checkpoints: CheckpointStore,
        progress: ProgressReporter,
        batch_size: int = settings.sync_batch_size,
        transaction_batch_size: int = settings.sync_transaction_batch_size,
        page_size: int = settings.sync_page_size,
        page_delay: float = settings.sync_page_delay_seconds,
    ):
        self.job = job
        self.session_factory = session_factory
        self.client = client
        self.rate_limiter = rate_limiter
        self.checkpoints = checkpoints
        self.progress = progress
        self.batch_size = batch_size
        self.transaction_batch_size = transaction_batch_size
        self.page_size = page_size
        self.page_delay = page_delay

        self.plan = plan_phases(job.entities)
        self.counts: dict[SyncEntity, int] = {entity: 0 for entity in self.plan}
        self.current_phase: SyncEntity | None = None
        self._checkpoint = SyncCheckpoint(planned_entities=list(self.plan), sync_from_date=job.sync_from_date)

    async def run(self) -> SyncSummary:
        sync_id = self.job.sync_id
        started = time.monotonic()
        logger.info(
            "Historical sync %s starting for tenant %s: %s from %s",
            sync_id, self.job.tenant_id,
            ", ".join(e.value for e in self.plan), self.job.sync_from_date,
        )

        try:
            await self._mark_started()
            await self.progress.start(self.plan)

            checkpoint = await self.checkpoints.load(sync_id)
            if checkpoint is not None and not self._matches_job(checkpoint):
                logger.warning(
                    "Historical sync %s: discarding checkpoint written for %s from %s",
                    sync_id, ", ".join(e.value for e in checkpoint.planned_entities) or "an unknown plan",
                    checkpoint.sync_from_date,
                )
                await self.checkpoints.clear(sync_id)
                checkpoint = None
            if checkpoint is not None:
                self._restore(checkpoint)
                await self.progress.restored(checkpoint)

            await self.rate_limiter.execute(self.client.ensure_tenant)

            for index, entity in enumerate(self.plan):
                if self._is_completed(entity):
                    continue
                self.current_phase = entity
                await self.progress.phase_started(entity, f"Syncing {entity.value}")
                await self._run_phase(entity, index)
                await self._complete_phase(entity, index)
            self.current_phase = None

            summary = SyncSummary(
                sync_id=sync_id,
                counts=dict(self.counts),
                duration_seconds=round(time.monotonic() - started, 2),
            )
            await self._mark_finished(
                "success",
                records_created=summary.total_records,
                details=json.dumps({e.value: c for e, c in summary.counts.items()}),
            )
            await self.checkpoints.clear(sync_id)
            await self.progress.complete(summary)
            logger.info(
                "Historical sync %s completed in %.1fs: %s",
                sync_id, summary.duration_seconds, self._counts_text(),
            )
            return summary

        except Exception as exc:
            logger.exception(
                "Historical sync %s failed during %s (counts: %s)",
                sync_id, self.current_phase.value if self.current_phase else "setup", self._counts_text(),
            )
            message = str(exc) or type(exc).__name__
            try:
                await self.progress.fail(message)
            except Exception:
                logger.exception("Could not write failure progress for sync %s", sync_id)
            try:
                await self._mark_finished("failed", error_message=message)
            except Exception:
                logger.exception("Could not record failure in sync log for %s", sync_id)
            raise

    # ─── Phase bookkeeping ─────────────────────────────────────────

    def _restore(self, checkpoint: SyncCheckpoint) -> None:
        self._checkpoint = checkpoint
        for entity in self.plan:
            self.counts[entity] = checkpoint.processed_counts.get(entity, 0)
        logger.info(
            "Historical sync %s resuming from checkpoint saved at %s (last completed: %s, pages: %s)",
            self.job.sync_id, checkpoint.saved_at,
            checkpoint.last_completed_entity.value if checkpoint.last_completed_entity else "none",
            {e.value: p for e, p in checkpoint.last_pages.items()},
        )

    def _matches_job(self, checkpoint: SyncCheckpoint) -> bool:
        return (
            checkpoint.planned_entities == self.plan
            and checkpoint.sync_from_date == self.job.sync_from_date
        )

    def _is_completed(self, entity: SyncEntity) -> bool:
        return entity in self._checkpoint.completed_entities

    async def _run_phase(self, entity: SyncEntity, index: int) -> None:
        if entity is SyncEntity.CONTACTS:
            await self._sync_contacts(index)
        elif entity is SyncEntity.ACCOUNTS:
            await self._sync_accounts()
        elif entity is SyncEntity.TRANSACTIONS:
            await self._sync_transactions(index)
        else:
            await self._sync_invoices(entity, index)

    async def _complete_phase(self, entity: SyncEntity, index: int) -> None:
        self._checkpoint.last_completed_entity = entity
        self._checkpoint.processed_counts[entity] = self.counts[entity]
        await self._save_checkpoint()
        await self.progress.phase_completed(entity, self.counts[entity], self._percentage(index + 1))
        logger.info("Historical sync %s: %s done (%d records)", self.job.sync_id, entity.value, self.counts[entity])

    async def _save_checkpoint(self) -> None:
        self._checkpoint = await self.checkpoints.save(self.job.sync_id, self._checkpoint)
        await self.progress.checkpoint_saved(self._checkpoint)

    def _percentage(self, index: int, fraction: float = 0.0) -> float:
        # 0-5% is setup and 95-100% is finalisation; phases share the rest evenly
        return 5 + 90 * (index + fraction) / len(self.plan)

    def _counts_text(self) -> str:
        return ", ".join(f"{e.value}={c}" for e, c in self.counts.items())

    # ─── Phases ────────────────────────────────────────────────────

    async def _sync_contacts(self, index: int) -> None:
        batcher = UpsertBatcher(self.session_factory, Contact, "xero_contact_id", self.batch_size)
        await self._sync_pages(
            SyncEntity.CONTACTS,
            index,
            fetch_page=lambda page: self.client.get_contacts(
                page, order="Name ASC", include_archived=True, page_size=self.page_size
            ),
            map_item=lambda raw: map_contact(raw, self.job.tenant_id),
            batcher=batcher,
        )

    async def _sync_accounts(self) -> None:
        """One unpaginated call; BANK accounts and ledger accounts land in one transaction."""
        raw_accounts = await self.rate_limiter.execute(lambda: self.client.get_accounts(order="Code ASC"))

        bank_rows: dict[str, dict] = {}
        gl_rows: dict[str, dict] = {}
        for raw in raw_accounts:
            if is_bank_account(raw):
                row = map_bank_account(raw, self.job.tenant_id)
                target = bank_rows
            else:
                row = map_gl_account(raw, self.job.tenant_id)
                target = gl_rows
            if row is not None:
                target[row["xero_account_id"]] = row

        async with self.session_factory() as session, session.begin():
            written = await upsert_rows(session, BankAccount, list(bank_rows.values()), "xero_account_id")
            written += await upsert_rows(session, GLAccount, list(gl_rows.values()), "xero_account_id")

        self.counts[SyncEntity.ACCOUNTS] = written
        logger.info(
            "Historical sync %s: %d bank accounts, %d ledger accounts",
            self.job.sync_id, len(bank_rows), len(gl_rows),
        )

    async def _sync_transactions(self, index: int) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BankAccount.xero_account_id, BankAccount.id)
                .where(BankAccount.tenant_id == self.job.tenant_id)
            )
            account_ids = {xero_id: local_id for xero_id, local_id in result.all()}

        def map_item(raw: dict) -> dict | None:
            account_id = account_ids.get((raw.get("BankAccount") or {}).get("AccountID"))
            if account_id is None:
                return None
            return map_bank_transaction(raw, self.job.tenant_id, account_id)

        batcher = UpsertBatcher(
            self.session_factory, BankTransaction, "xero_transaction_id", self.transaction_batch_size
        )
        await self._sync_pages(
            SyncEntity.TRANSACTIONS,
            index,
            fetch_page=lambda page: self.client.get_bank_transactions(
                page,
                modified_since=self.job.sync_from_date,
                order="Date ASC",
                page_size=self.page_size,
            ),
            map_item=map_item,
            batcher=batcher,
        )

    async def _sync_invoices(self, entity: SyncEntity, index: int) -> None:
        """Invoices (ACCREC) and bills (ACCPAY) share the Invoices endpoint and table."""
        invoice_type = _INVOICE_TYPES[entity]
        async with self.session_factory() as session:
            result = await session.execute(
                select(Contact.xero_contact_id, Contact.id)
                .where(Contact.tenant_id == self.job.tenant_id)
            )
            contact_ids = {xero_id: local_id for xero_id, local_id in result.all()}

        def map_item(raw: dict) -> dict | None:
            if raw.get("Type") != invoice_type:
                return None
            contact_id = contact_ids.get((raw.get("Contact") or {}).get("ContactID"))
            return map_invoice(raw, self.job.tenant_id, contact_id)

        batcher = UpsertBatcher(self.session_factory, Invoice, "xero_invoice_id", self.batch_size)
        await self._sync_pages(
            entity,
            index,
            fetch_page=lambda page: self.client.get_invoices(
                page,
                modified_since=self.job.sync_from_date,
                where=f'Type=="{invoice_type}"',
                order="UpdatedDateUTC ASC",
                page_size=self.page_size,
            ),
            map_item=map_item,
            batcher=batcher,
        )

    async def _sync_pages(
        self,
        entity: SyncEntity,
        index: int,
        *,
        fetch_page: Callable[[int], Awaitable[PageResult]],
        map_item: Callable[[dict], dict[str, Any] | None],
        batcher: UpsertBatcher,
    ) -> None:
        """Drive one paginated phase, checkpointing after every flushed page."""
        limit = self.job.limit_for(entity)
        count = self.counts[entity]
        if limit is not None and count >= limit:
            return

        start_page = self._checkpoint.last_pages.get(entity, 0) + 1
        if start_page > 1:
            logger.info("Historical sync %s: resuming %s at page %d", self.job.sync_id, entity.value, start_page)

        def limited_fetch(page: int) -> Awaitable[PageResult]:
            return self.rate_limiter.execute(lambda: fetch_page(page))

        skipped = 0
        written: set[str] = set()
        async with aclosing(paginate(limited_fetch, start_page, self.page_delay)) as pages:
            async for page in pages:
                for raw in page.items:
                    if limit is not None and count >= limit:
                        break
                    row = map_item(raw)
                    if row is None:
                        skipped += 1
                        continue
                    await batcher.add(row)
                    # repeated ids collapse into one upserted row
                    if row[batcher.key] not in written:
                        written.add(row[batcher.key])
                        count += 1

                await batcher.flush_remaining()
                self.counts[entity] = count
                self._checkpoint.last_pages[entity] = page.number
                self._checkpoint.processed_counts[entity] = count
                await self._save_checkpoint()

                fraction = min(count / limit, 1.0) if limit else page.number / (page.number + 1)
                await self.progress.phase_progress(
                    entity,
                    count,
                    self._percentage(index, fraction),
                    f"Syncing {entity.value}: {count} records (page {page.number})",
                )

                if limit is not None and count >= limit:
                    logger.info(
                        "Historical sync %s: %s limit of %d reached", self.job.sync_id, entity.value, limit
                    )
                    break

        if skipped:
            logger.warning(
                "Historical sync %s: skipped %d %s records (missing id or unmapped parent)",
                self.job.sync_id, skipped, entity.value,
            )

    # ─── Sync log ──────────────────────────────────────────────────

    async def _get_or_create_log(self, session: AsyncSession) -> SyncLog:
        log = await session.get(SyncLog, self.job.sync_id)
        if log is None:
            log = SyncLog(id=self.job.sync_id, user_id=self.job.user_id, tenant_id=self.job.tenant_id)
            session.add(log)
        return log

    async def _mark_started(self) -> None:
        async with self.session_factory() as session, session.begin():
            log = await self._get_or_create_log(session)
            log.status = "in_progress"
            log.error_message = None
            log.completed_at = None

    async def _mark_finished(
        self,
        status: str,
        *,
        records_created: int | None = None,
        details: str | None = None,
        error_message: str | None = None,
    ) -> None:
        async with self.session_factory() as session, session.begin():
            log = await self._get_or_create_log(session)
            log.status = status
            log.completed_at = datetime.now(timezone.utc)
            if records_created is not None:
                log.records_created = records_created
            if details is not None:
                log.details = details
            log.error_message = error_message[:2000] if error_message else None


# ─── Celery task ─────────────────────────────────────────────────────────────

async def _run(job: SyncJob, access_token: str) -> SyncSummary:
    # Celery workers are sync; build everything inside this event loop
    engine = create_engine_from_settings()
    redis = create_redis()
    client = XeroClient(access_token, job.tenant_id)
    try:
        orchestrator = HistoricalSyncOrchestrator(
            job,
            session_factory=create_session_factory(engine),
            client=client,
            rate_limiter=XeroRateLimiter(job.tenant_id, redis),
            checkpoints=CheckpointStore(redis),
            progress=ProgressReporter(redis, job.sync_id),
        )
        summary = await orchestrator.run()
        await release_enqueue_lock(redis, str(job.sync_id))
        return summary
    finally:
        await client.aclose()
        await redis.aclose()
        await engine.dispose()


@celery_app.task(
    name="xerosync.services.historical_sync.run_historical_sync",
    bind=True,
    autoretry_for=(Exception,),
    dont_autoretry_for=(MissingCredentialsError, ValidationError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=settings.historical_sync_max_retries,
)
def run_historical_sync(self, payload: dict) -> dict:
    """Run one historical sync. Retries re-deliver the same sync id, so they resume."""
    job = SyncJob.model_validate(payload)
    access_token = decrypt_value(job.encrypted_access_token) if job.encrypted_access_token else ""
    if not access_token:
        raise MissingCredentialsError(f"Sync {job.sync_id} has no Xero access token")

    logger.info("Historical sync task %s, attempt %d", job.sync_id, self.request.retries + 1)
    summary = asyncio.run(_run(job, access_token))
    return summary.model_dump(mode="json")
