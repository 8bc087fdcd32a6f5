"""Queue and job names shared by producers and Celery task registrations."""

POSTHOG_EVENTS_QUEUE = "posthog-events"
EVENT_SYNC_QUEUE = "event-sync"


class PosthogEventsJob:
    FIND_USERS = "posthog-events.find.users"
    FIND_UNIQUE_USERS = "posthog-events.find.unique.users"
    PROCESS_USER = "posthog-events.process.user"
    RETRY_FAILED = "posthog-events.retry.failed"


class EventSyncJob:
    SYNC_EVENTS = "event-sync.sync.events"


DEFAULT_INGEST_BATCH_SIZE = 3
DEFAULT_SYNC_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000
