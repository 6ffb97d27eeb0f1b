"""Celery worker configuration and maintenance tasks."""

import asyncio
import logging
from datetime import timedelta

from celery import Celery, Task

from studygen.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "study_guide_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    beat_schedule={
        "sweep-stale-generations": {
            "task": "studygen.worker.sweep_stale_generations",
            "schedule": 60.0,  # Every minute
        },
        "purge-terminal-generations": {
            "task": "studygen.worker.purge_terminal_generations",
            "schedule": 3600.0,  # Every hour
        },
    },
)


class BaseTask(Task):
    """Base task with retry configuration."""

    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = 3


async def sweep_stale() -> int:
    from studygen.db.session import async_session_maker, engine
    from studygen.services.inflight import InFlightRegistry

    async with async_session_maker() as db:
        count = await InFlightRegistry(settings).sweep_stale(db)
        await db.commit()
    # Pooled connections are bound to this event loop
    await engine.dispose()
    return count


async def purge_terminal() -> int:
    from studygen.db.session import async_session_maker, engine
    from studygen.services.inflight import InFlightRegistry

    async with async_session_maker() as db:
        count = await InFlightRegistry(settings).purge_terminal(
            db, timedelta(hours=settings.terminal_retention_hours)
        )
        await db.commit()
    # Pooled connections are bound to this event loop
    await engine.dispose()
    return count


@celery_app.task(bind=True, base=BaseTask, name="studygen.worker.sweep_stale_generations")
def sweep_stale_generations(self) -> int:
    """
    Mark running generations without a recent heartbeat as failed (TIMEOUT).

    Requests also do this lazily when they meet a stale attempt; the sweep
    keeps the registry tidy for fingerprints nobody asks for again.
    """
    count = asyncio.run(sweep_stale())
    if count:
        logger.warning(f"Marked {count} stale generation(s) as failed")
    return count


@celery_app.task(bind=True, base=BaseTask, name="studygen.worker.purge_terminal_generations")
def purge_terminal_generations(self) -> int:
    """Delete completed/failed generation records past the retention window."""
    count = asyncio.run(purge_terminal())
    logger.info(f"Purged {count} finished generation record(s)")
    return count
