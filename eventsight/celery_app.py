"""
Celery application setup for Eventsight.

Workers and the API share the broker/result backend from settings. Tasks live
in ``eventsight.core.tasks`` and are registered under their job names.

Queue Architecture:
- posthog-events: discovery, per-user processing and retry sweeps.
  Run its worker with ``--concurrency=1`` so embedding/LLM/vector-store calls
  are serialized and one person's profile is never written by two jobs at once.
- event-sync: legacy raw event sync

    celery -A eventsight.celery_app worker -Q posthog-events --concurrency=1
    celery -A eventsight.celery_app worker -Q event-sync
    celery -A eventsight.celery_app beat
"""
import logging

from celery import Celery
from celery.signals import after_setup_logger
from kombu import Queue

from eventsight.config import settings
from eventsight.core.queue.constants import (
    EVENT_SYNC_QUEUE,
    POSTHOG_EVENTS_QUEUE,
    EventSyncJob,
    PosthogEventsJob,
)

app = Celery(
    "eventsight",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["eventsight.core.tasks"],
)

app.conf.task_queues = (
    Queue(POSTHOG_EVENTS_QUEUE, routing_key=POSTHOG_EVENTS_QUEUE),
    Queue(EVENT_SYNC_QUEUE, routing_key=EVENT_SYNC_QUEUE),
)

app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=1,
    worker_max_tasks_per_child=50,
    task_soft_time_limit=600,
    task_time_limit=900,
    result_expires=259200,  # 3 days
    task_default_queue=POSTHOG_EVENTS_QUEUE,
    task_routes={
        PosthogEventsJob.FIND_USERS: {"queue": POSTHOG_EVENTS_QUEUE},
        PosthogEventsJob.FIND_UNIQUE_USERS: {"queue": POSTHOG_EVENTS_QUEUE},
        PosthogEventsJob.PROCESS_USER: {"queue": POSTHOG_EVENTS_QUEUE},
        PosthogEventsJob.RETRY_FAILED: {"queue": POSTHOG_EVENTS_QUEUE},
        EventSyncJob.SYNC_EVENTS: {"queue": EVENT_SYNC_QUEUE},
    },
)

# ============================================================================
# Celery Beat Schedule (for periodic tasks)
# ============================================================================

app.conf.beat_schedule = {
    "retry-failed-ingestion-attempts": {
        "task": PosthogEventsJob.RETRY_FAILED,
        "schedule": settings.retry_sweep_interval_seconds,
        "options": {"queue": POSTHOG_EVENTS_QUEUE},
    },
}

app.conf.timezone = "UTC"


@after_setup_logger.connect
def on_after_setup_logger(logger, *args, **kwargs):
    logging.getLogger("eventsight").setLevel(settings.log_level.upper())
