from .constants import EVENT_SYNC_QUEUE, POSTHOG_EVENTS_QUEUE, EventSyncJob, PosthogEventsJob
from .job_queue import EnqueuedJob, JobQueue, spacing_delays

__all__ = [
    "EVENT_SYNC_QUEUE",
    "POSTHOG_EVENTS_QUEUE",
    "EnqueuedJob",
    "EventSyncJob",
    "JobQueue",
    "PosthogEventsJob",
    "spacing_delays",
]
