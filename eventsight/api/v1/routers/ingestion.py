# eventsight/api/v1/routers/ingestion.py
"""
Ingestion job and ledger endpoints.

Endpoints:
    POST /ingestion/jobs                          - enqueue a discovery sweep
    POST /ingestion/raw-sync                      - enqueue the legacy raw event sync
    POST /ingestion/retry                         - run the retry sweep now
    GET  /ingestion/stats                         - ledger totals per status
    GET  /ingestion/attempts/recent               - most recent attempts
    GET  /ingestion/attempts/failed               - most recent failed attempts
    GET  /ingestion/attempts/failed/{person_id}   - failed attempts for one person
    GET  /ingestion/users/stats                   - ingested/un-ingested users and events
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, status

from eventsight.api.v1.models import (
    AttemptListResponse,
    AttemptResponse,
    EnqueuedJobResponse,
    IngestJobRequest,
    RawSyncRequest,
    RetrySweepResponse,
)
from eventsight.core.database.models import IngestionAttempt
from eventsight.core.events.event_store import EventStore
from eventsight.core.ingestion.attempt_service import AttemptService
from eventsight.core.ingestion.pipeline import IngestionPipeline
from eventsight.core.queue.constants import (
    EVENT_SYNC_QUEUE,
    POSTHOG_EVENTS_QUEUE,
    EventSyncJob,
    PosthogEventsJob,
)
from eventsight.dependencies import ServiceContainer, get_container, get_event_store, get_ledger, get_pipeline

router = APIRouter(prefix="/ingestion", tags=["Ingestion"])

logger = logging.getLogger("eventsight.api.ingestion")


def _attempt_list(attempts: List[IngestionAttempt]) -> AttemptListResponse:
    return AttemptListResponse(
        attempts=[AttemptResponse(**a.to_dict()) for a in attempts],
        total=len(attempts),
    )


@router.post("/jobs", response_model=EnqueuedJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_ingestion_job(
    request: IngestJobRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Enqueue a FIND_USERS discovery sweep."""
    job = container.job_queue.enqueue(
        POSTHOG_EVENTS_QUEUE,
        PosthogEventsJob.FIND_USERS,
        {"batch_size": request.batch_size},
    )
    logger.info("Ingestion sweep requested: batch_size=%d job=%s", request.batch_size, job.job_id)
    return EnqueuedJobResponse(
        job_id=job.job_id,
        queue_name=job.queue_name,
        job_name=job.job_name,
        batch_size=request.batch_size,
    )


@router.post("/raw-sync", response_model=EnqueuedJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_raw_sync(
    request: RawSyncRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Enqueue the legacy raw event sync."""
    job = container.job_queue.enqueue(
        EVENT_SYNC_QUEUE,
        EventSyncJob.SYNC_EVENTS,
        {"batch_size": request.batch_size},
    )
    return EnqueuedJobResponse(
        job_id=job.job_id,
        queue_name=job.queue_name,
        job_name=job.job_name,
        batch_size=request.batch_size,
    )


@router.post("/retry", response_model=RetrySweepResponse)
async def run_retry_sweep(pipeline: IngestionPipeline = Depends(get_pipeline)):
    """Re-drive failed attempts whose backoff has elapsed."""
    return RetrySweepResponse(**await pipeline.retry_failed())


@router.get("/stats")
async def get_ingestion_stats(ledger: AttemptService = Depends(get_ledger)) -> Dict[str, Any]:
    return await ledger.get_stats()


@router.get("/attempts/recent", response_model=AttemptListResponse)
async def get_recent_attempts(
    limit: int = Query(20, ge=1, le=500),
    ledger: AttemptService = Depends(get_ledger),
):
    return _attempt_list(await ledger.get_recent_attempts(limit))


@router.get("/attempts/failed", response_model=AttemptListResponse)
async def get_failed_attempts(
    limit: int = Query(50, ge=1, le=500),
    ledger: AttemptService = Depends(get_ledger),
):
    return _attempt_list(await ledger.get_failed_attempts(limit))


@router.get("/attempts/failed/{person_id}", response_model=AttemptListResponse)
async def get_failed_attempts_for_person(
    person_id: str,
    ledger: AttemptService = Depends(get_ledger),
):
    return _attempt_list(await ledger.get_failed_attempts_by_person(person_id))


@router.get("/users/stats")
async def get_user_stats(event_store: EventStore = Depends(get_event_store)) -> Dict[str, int]:
    return await event_store.get_user_ingestion_stats()
