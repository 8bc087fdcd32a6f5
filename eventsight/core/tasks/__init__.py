"""
Celery tasks package for Eventsight.

Celery discovers tasks via the include= list in celery_app.py.
"""

from eventsight.core.tasks.ingestion import (
    find_unique_users_task,
    find_users_task,
    process_user_task,
    retry_failed_task,
    sync_events_task,
)

__all__ = [
    "find_unique_users_task",
    "find_users_task",
    "process_user_task",
    "retry_failed_task",
    "sync_events_task",
]
