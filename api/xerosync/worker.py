import logging

from celery import Celery
from celery.signals import task_failure, task_retry

from xerosync.core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

celery_app = Celery(
    "xerosync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A job whose worker dies mid-run goes back on the queue and resumes from its checkpoint
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # One historical sync at a time; start the worker with -Q historical-sync
    worker_concurrency=1,
    broker_transport_options={"visibility_timeout": settings.broker_visibility_timeout_seconds},
    task_routes={
        "xerosync.services.historical_sync.run_historical_sync": {
            "queue": settings.historical_sync_queue,
        },
    },
)

# Explicitly include task modules so the worker registers them on startup.
celery_app.conf.include = [
    "xerosync.services.historical_sync",
]


# ─── Signal handlers ──────────────────────────
# Log and carry on: a failed sync must never take the worker down with it.

@task_failure.connect
def _log_task_failure(sender=None, task_id=None, exception=None, **kwargs):
    logger.error(
        "Task %s [%s] failed: %s",
        getattr(sender, "name", sender), task_id, exception,
    )


@task_retry.connect
def _log_task_retry(sender=None, request=None, reason=None, **kwargs):
    logger.warning(
        "Task %s [%s] will retry: %s",
        getattr(sender, "name", sender), getattr(request, "id", None), reason,
    )
