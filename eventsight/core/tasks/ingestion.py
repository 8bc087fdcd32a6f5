"""
Celery tasks for PostHog event ingestion.

Each task builds a short-lived service container (NullPool engine, fresh
vector store client) and runs the pipeline under ``asyncio.run``. Outcomes are
recorded in the ingestion ledger by the pipeline itself; an exception that
escapes the pipeline was never recorded and is re-raised so Celery sees it.
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from eventsight.celery_app import app as celery_app
from eventsight.core.queue.constants import EventSyncJob, PosthogEventsJob

logger = logging.getLogger("eventsight.tasks.ingestion")


async def _with_container(fn):
    from eventsight.config import settings
    from eventsight.dependencies import build_container

    container = build_container(settings, celery_app=celery_app, use_null_pool=True)
    try:
        return await fn(container)
    finally:
        await container.close()


@celery_app.task(
    name=PosthogEventsJob.FIND_USERS,
    bind=True,
    max_retries=2,
    default_retry_delay=30,
)
def find_users_task(self, batch_size: Optional[int] = None, attempt_id: Optional[str] = None) -> Dict[str, Any]:
    """Celery task: discover persons with un-ingested events and fan out per-user jobs."""
    logger.info("Starting user discovery: batch_size=%s attempt=%s", batch_size, attempt_id)
    try:
        result = asyncio.run(
            _with_container(
                lambda c: c.pipeline.find_users(batch_size=batch_size, attempt_id=attempt_id)
            )
        )
    except Exception as exc:
        logger.exception("User discovery failed: %s", exc)
        raise
    return asdict(result)


@celery_app.task(
    name=PosthogEventsJob.FIND_UNIQUE_USERS,
    bind=True,
    max_retries=2,
    default_retry_delay=30,
)
def find_unique_users_task(self, batch_size: Optional[int] = None, attempt_id: Optional[str] = None) -> Dict[str, Any]:
    """Celery task: discovery variant that carries person properties into each job."""
    logger.info("Starting unique user discovery: batch_size=%s", batch_size)
    try:
        result = asyncio.run(
            _with_container(
                lambda c: c.pipeline.find_users(
                    batch_size=batch_size, attempt_id=attempt_id, unique_only=True
                )
            )
        )
    except Exception as exc:
        logger.exception("Unique user discovery failed: %s", exc)
        raise
    return asdict(result)


@celery_app.task(
    name=PosthogEventsJob.PROCESS_USER,
    bind=True,
    max_retries=2,
    default_retry_delay=30,
)
def process_user_task(
    self,
    person_id: str,
    person_properties: Optional[Dict[str, Any]] = None,
    attempt_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Celery task: summarize, embed and upsert one person's profile.

    The pipeline records success/partial/failed itself; failures do not
    escape, so Celery never double-retries what the retry sweep re-drives.
    """
    logger.info("Processing user %s (attempt=%s)", person_id, attempt_id)
    try:
        result = asyncio.run(
            _with_container(
                lambda c: c.pipeline.process_user(
                    person_id, person_properties=person_properties, attempt_id=attempt_id
                )
            )
        )
    except Exception as exc:
        logger.exception("Processing user %s failed: %s", person_id, exc)
        raise
    return asdict(result)


@celery_app.task(name=PosthogEventsJob.RETRY_FAILED, bind=True)
def retry_failed_task(self) -> Dict[str, int]:
    """Celery beat task: re-drive failed attempts whose backoff has elapsed."""
    try:
        return asyncio.run(_with_container(lambda c: c.pipeline.retry_failed()))
    except Exception as exc:
        logger.exception("Retry sweep failed: %s", exc)
        raise


@celery_app.task(
    name=EventSyncJob.SYNC_EVENTS,
    bind=True,
    max_retries=2,
    default_retry_delay=30,
)
def sync_events_task(self, batch_size: Optional[int] = None) -> Dict[str, int]:
    """Celery task: embed legacy raw events one point per event."""
    logger.info("Starting raw event sync: batch_size=%s", batch_size)
    try:
        processed = asyncio.run(
            _with_container(lambda c: c.pipeline.sync_raw_events(batch_size=batch_size))
        )
    except Exception as exc:
        logger.exception("Raw event sync failed: %s", exc)
        raise
    return {"processed": processed}
