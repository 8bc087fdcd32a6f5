# ============================================================================
# eventsight/core/ingestion/pipeline.py
# ============================================================================
"""
Ingestion Pipeline - PostHog events into per-user profiles.

Two phases, each recorded against exactly one ledger row:

Discovery (``find_users``):
    1. Query the event store for up to ``batch_size`` eligible persons
    2. Fan out one PROCESS_USER job per person, spaced ``process_user_spacing_ms`` apart
    3. Mark the sweep ``success`` with ``events_processed`` = users found

Processing (``process_user``):
    1. Re-fetch the person's un-ingested events (empty → success with 0)
    2. Render the events (counts, traits, sessions, recent timeline)
    3. Summarize with the LLM, or with the deterministic fallback if it fails
    4. Embed the summary
    5. Upsert the profile point keyed by person_id
    6. Stamp every processed event as ingested

"Ingested" means "confirmed embedded": when the upsert fails the events stay
un-ingested (unless ``mark_ingested_on_upsert_failure`` is set), the attempt
is recorded as ``failed`` with ``qdrant_upsert_failed``, and the retry sweep
re-drives it.

A failure after some events were already stamped records ``partial``; a
failure before any were stamped records ``failed``. Neither escapes: the job
reports completion and recovery is driven by ``retry_failed``.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eventsight.config import Settings
from eventsight.core.database.models import (
    FailureReason,
    IngestionStatus,
    JobType,
    PosthogEvent,
)
from eventsight.core.events.event_store import EventStore
from eventsight.core.events.sessions import EventSession, sort_chronologically, split_into_sessions
from eventsight.core.events.summarizer import (
    build_activity_rendering,
    build_fallback_summary,
    build_profile_payload,
)
from eventsight.core.exceptions import InvalidEventDataError, VectorStoreUpsertError
from eventsight.core.ingestion.attempt_service import AttemptService
from eventsight.core.ingestion.failures import error_details_for, failure_reason_for
from eventsight.core.llm.llm_service import LLMService
from eventsight.core.llm.prompts import render_user_summary_prompt
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.queue.constants import POSTHOG_EVENTS_QUEUE, PosthogEventsJob
from eventsight.core.queue.job_queue import JobQueue
from eventsight.core.search.embedding_service import EmbeddingService
from eventsight.core.search.vector_store import VectorStore, point_id_for
from eventsight.core.utils.text_utils import extract_json_object

logger = logging.getLogger("eventsight.ingestion.pipeline")


@dataclass
class DiscoveryResult:
    attempt_id: Optional[str]
    status: str
    users_found: int = 0
    person_ids: List[str] = field(default_factory=list)
    delays_ms: List[int] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ProcessResult:
    attempt_id: Optional[str]
    person_id: str
    status: str
    events_total: int = 0
    events_processed: int = 0
    summary_source: Optional[str] = None
    failure_reason: Optional[str] = None
    error: Optional[str] = None


class IngestionPipeline:
    """
    Discovery, per-user processing, retry re-drive and legacy raw-event sync.

    Every collaborator is injected; nothing here reads the environment.
    """

    def __init__(
        self,
        settings: Settings,
        event_store: EventStore,
        ledger: AttemptService,
        llm: LLMService,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        job_queue: JobQueue,
    ):
        self._settings = settings
        self._store = event_store
        self._ledger = ledger
        self._llm = llm
        self._embeddings = embeddings
        self._vectors = vector_store
        self._queue = job_queue

    def clamp_batch_size(self, batch_size: Optional[int]) -> int:
        size = batch_size or self._settings.default_batch_size
        return max(1, min(int(size), self._settings.max_batch_size))

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    async def find_users(
        self,
        batch_size: Optional[int] = None,
        attempt_id: Optional[str] = None,
        unique_only: bool = False,
    ) -> DiscoveryResult:
        """
        Discover persons with pending events and fan out PROCESS_USER jobs.

        ``unique_only`` uses the lighter query that does not load events; the
        fanned-out jobs re-fetch them anyway.
        """
        batch_size = self.clamp_batch_size(batch_size)
        started = time.monotonic()

        if attempt_id is None:
            attempt_id = await self._ledger.create_attempt(
                job_type=JobType.FIND_USERS,
                metadata={"batch_size": batch_size, "unique_only": unique_only},
            )
        await self._ledger.mark_as_processing(attempt_id)

        try:
            if unique_only:
                users = await self._store.find_unique_users_with_uningested_events(batch_size)
                payloads = [
                    {"person_id": u["person_id"], "person_properties": u["person_properties"]}
                    for u in users
                ]
            else:
                groups = await self._store.find_uningested_events_grouped_by_user(batch_size)
                payloads = [
                    {"person_id": person_id, "person_properties": group.person_properties}
                    for person_id, group in groups.items()
                ]

            jobs = self._queue.enqueue_spaced(
                POSTHOG_EVENTS_QUEUE,
                PosthogEventsJob.PROCESS_USER,
                payloads,
                spacing_ms=self._settings.process_user_spacing_ms,
            )

            await self._ledger.mark_as_success(
                attempt_id,
                events_processed=len(payloads),
                events_total=len(payloads),
                processing_time_ms=int((time.monotonic() - started) * 1000),
                metadata={"users_found": len(payloads)},
            )
            logger.info("Discovery found %d users (batch_size=%d)", len(payloads), batch_size)
            return DiscoveryResult(
                attempt_id=str(attempt_id),
                status=IngestionStatus.SUCCESS.value,
                users_found=len(payloads),
                person_ids=[p["person_id"] for p in payloads],
                delays_ms=[job.delay_ms for job in jobs],
            )

        except Exception as exc:
            logger.exception("Discovery failed: %s", exc)
            await self._ledger.mark_as_failed(
                attempt_id,
                failure_reason=failure_reason_for(exc),
                error_message=str(exc),
                error_details=error_details_for(exc, step="discovery"),
            )
            return DiscoveryResult(
                attempt_id=str(attempt_id),
                status=IngestionStatus.FAILED.value,
                error=str(exc),
            )

    # =========================================================================
    # PROCESSING
    # =========================================================================

    async def process_user(
        self,
        person_id: str,
        person_properties: Optional[Dict[str, Any]] = None,
        attempt_id: Optional[str] = None,
    ) -> ProcessResult:
        started = time.monotonic()
        if attempt_id is None:
            attempt_id = await self._ledger.create_attempt(
                job_type=JobType.PROCESS_USER,
                person_id=person_id,
                metadata={"collection": self._settings.profiles_collection},
            )
        await self._ledger.mark_as_processing(attempt_id)

        total = 0
        marked = 0
        step = "fetch_events"
        try:
            events = await self._store.find_uningested_events_for_user(person_id)
            total = len(events)
            if not events:
                await self._ledger.mark_as_success(
                    attempt_id,
                    events_processed=0,
                    events_total=0,
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                )
                logger.info("No un-ingested events for %s", person_id)
                return ProcessResult(
                    attempt_id=str(attempt_id),
                    person_id=person_id,
                    status=IngestionStatus.SUCCESS.value,
                )

            step = "validate"
            events = self._validated(person_id, events)
            properties = person_properties or next(
                (e.person_properties for e in events if e.person_properties), {}
            )
            sessions = split_into_sessions(events, self._settings.session_window_minutes)

            step = "summarize"
            summary, summary_source, llm_metadata = await self._summarize(
                person_id, events, properties, sessions
            )

            step = "embed"
            vector = await self._embeddings.embed(summary)

            step = "upsert"
            payload = build_profile_payload(
                person_id,
                events,
                summary,
                person_properties=properties,
                max_events=self._settings.max_events_per_user,
            )
            payload["session_count"] = len(sessions)
            payload["summary_source"] = summary_source
            if llm_metadata:
                payload["llm_metadata"] = llm_metadata

            upsert_error: Optional[VectorStoreUpsertError] = None
            try:
                await self._vectors.upsert(
                    self._settings.profiles_collection,
                    point_id_for(person_id),
                    vector,
                    payload,
                )
            except VectorStoreUpsertError as e:
                upsert_error = e

            step = "mark_ingested"
            if upsert_error is None or self._settings.mark_ingested_on_upsert_failure:
                for event in events:
                    await self._store.mark_as_ingested(event.id)
                    marked += 1

            if upsert_error is not None:
                await self._ledger.mark_as_failed(
                    attempt_id,
                    failure_reason=FailureReason.QDRANT_UPSERT_FAILED,
                    error_message=str(upsert_error),
                    error_details=error_details_for(upsert_error, step="upsert"),
                    events_processed=marked,
                )
                return ProcessResult(
                    attempt_id=str(attempt_id),
                    person_id=person_id,
                    status=IngestionStatus.FAILED.value,
                    events_total=total,
                    events_processed=marked,
                    summary_source=summary_source,
                    failure_reason=FailureReason.QDRANT_UPSERT_FAILED.value,
                    error=str(upsert_error),
                )

            await self._ledger.mark_as_success(
                attempt_id,
                events_processed=marked,
                events_total=total,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                metadata={
                    "embedding_size": len(vector),
                    "collection": self._settings.profiles_collection,
                    "summary_source": summary_source,
                    "session_count": len(sessions),
                },
            )
            logger.info(
                "Processed %d events for %s (summary=%s)", marked, person_id, summary_source
            )
            return ProcessResult(
                attempt_id=str(attempt_id),
                person_id=person_id,
                status=IngestionStatus.SUCCESS.value,
                events_total=total,
                events_processed=marked,
                summary_source=summary_source,
            )

        except Exception as exc:
            reason = failure_reason_for(exc)
            details = error_details_for(exc, step=step)
            if 0 < marked < total:
                logger.exception(
                    "Processing %s failed after %d/%d events were ingested", person_id, marked, total
                )
                await self._ledger.mark_as_partial(
                    attempt_id,
                    events_processed=marked,
                    events_total=total,
                    failure_reason=reason,
                    error_message=str(exc),
                    error_details=details,
                )
                status = IngestionStatus.PARTIAL.value
            else:
                logger.exception("Processing %s failed at step %s", person_id, step)
                await self._ledger.mark_as_failed(
                    attempt_id,
                    failure_reason=reason,
                    error_message=str(exc),
                    error_details=details,
                    events_processed=marked,
                )
                status = IngestionStatus.FAILED.value

            return ProcessResult(
                attempt_id=str(attempt_id),
                person_id=person_id,
                status=status,
                events_total=total,
                events_processed=marked,
                failure_reason=reason.value,
                error=str(exc),
            )

    @staticmethod
    def _validated(person_id: str, events: List[PosthogEvent]) -> List[PosthogEvent]:
        foreign = [e for e in events if e.person_id != person_id]
        if foreign:
            raise InvalidEventDataError(
                f"{len(foreign)} events returned for person {person_id} belong to another person"
            )
        if not any(e.event for e in events):
            raise InvalidEventDataError(f"Events for person {person_id} have no event names")
        return sort_chronologically(events)

    async def _summarize(
        self,
        person_id: str,
        events: List[PosthogEvent],
        person_properties: Dict[str, Any],
        sessions: List[EventSession],
    ) -> Tuple[str, str, Optional[Dict[str, Any]]]:
        """LLM summary, else the deterministic fallback. Never raises for LLM failures."""
        if self._llm.is_available:
            activity = build_activity_rendering(
                events,
                person_properties,
                sessions=sessions,
                timeline_max_entries=self._settings.timeline_max_entries,
            )
            try:
                reply = await self._llm.complete(
                    render_user_summary_prompt(person_id, activity),
                    task_type=LLMTaskType.SUMMARY,
                )
                summary, metadata = self._parse_summary_reply(reply or "")
                if summary:
                    return summary, "llm", metadata
                logger.warning("Empty LLM summary for %s; using fallback", person_id)
            except Exception as e:
                logger.warning("LLM summarization failed for %s, using fallback: %s", person_id, e)
        else:
            logger.warning("LLM not configured; using fallback summary for %s", person_id)

        fallback = build_fallback_summary(
            person_id,
            events,
            person_properties,
            max_chars=self._settings.summary_fallback_max_chars,
        )
        return fallback, "fallback", None

    @staticmethod
    def _parse_summary_reply(reply: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        parsed = extract_json_object(reply)
        if isinstance(parsed, dict) and parsed.get("summary"):
            metadata = parsed.get("metadata") if isinstance(parsed.get("metadata"), dict) else None
            text = str(parsed["summary"]).strip()
            if metadata:
                text = f"{text}\n\nMetadata: {json.dumps(metadata, default=str)}"
            return text, metadata
        return reply.strip(), None

    # =========================================================================
    # RETRY
    # =========================================================================

    async def retry_failed(self) -> Dict[str, int]:
        """
        Re-drive failed attempts whose backoff has elapsed.

        Each row's retry count is bumped first; rows still under the limit are
        re-enqueued against the same attempt id, the rest stay terminal.
        """
        attempts = await self._ledger.get_retryable_attempts()
        requeued = 0
        exhausted = 0
        for attempt in attempts:
            updated = await self._ledger.increment_retry_count(attempt.id)
            if updated is None or updated.status != IngestionStatus.PENDING.value:
                exhausted += 1
                continue

            if updated.job_type == JobType.PROCESS_USER.value and updated.person_id:
                self._queue.enqueue(
                    POSTHOG_EVENTS_QUEUE,
                    PosthogEventsJob.PROCESS_USER,
                    {"person_id": updated.person_id, "attempt_id": str(updated.id)},
                )
            elif updated.job_type == JobType.FIND_USERS.value:
                metadata = updated.attempt_metadata or {}
                self._queue.enqueue(
                    POSTHOG_EVENTS_QUEUE,
                    PosthogEventsJob.FIND_USERS,
                    {"batch_size": metadata.get("batch_size"), "attempt_id": str(updated.id)},
                )
            else:
                logger.warning("No re-drive route for %s attempt %s", updated.job_type, updated.id)
                exhausted += 1
                continue
            requeued += 1

        if attempts:
            logger.info(
                "Retry sweep: %d retryable, %d requeued, %d exhausted",
                len(attempts), requeued, exhausted,
            )
        return {"retryable": len(attempts), "requeued": requeued, "exhausted": exhausted}

    # =========================================================================
    # LEGACY RAW EVENT SYNC
    # =========================================================================

    async def sync_raw_events(self, batch_size: Optional[int] = None) -> int:
        """
        Embed un-ingested legacy events one point per event.

        Per-event failures are logged and skipped; the event stays un-ingested.
        """
        batch_size = max(1, min(int(batch_size or 100), self._settings.max_batch_size))
        started = time.monotonic()
        attempt_id = await self._ledger.create_attempt(
            job_type=JobType.SYNC_EVENTS,
            metadata={"batch_size": batch_size, "collection": self._settings.raw_events_collection},
        )
        await self._ledger.mark_as_processing(attempt_id)

        try:
            events = await self._store.find_uningested_raw_events(batch_size)
        except Exception as exc:
            logger.exception("Raw event sync could not load events")
            await self._ledger.mark_as_failed(
                attempt_id,
                failure_reason=failure_reason_for(exc),
                error_message=str(exc),
                error_details=error_details_for(exc, step="fetch_events"),
            )
            return 0

        processed = 0
        for event in events:
            try:
                payload = {
                    "event_id": str(event.id),
                    "user_id": event.user_id,
                    "event_type": event.event_type,
                    "event_data": event.event_data or {},
                    "event_timestamp": event.event_timestamp.isoformat() if event.event_timestamp else None,
                }
                vector = await self._embeddings.embed(json.dumps(payload, default=str))
                await self._vectors.upsert(
                    self._settings.raw_events_collection, str(event.id), vector, payload
                )
                await self._store.mark_raw_event_ingested(event.id)
                processed += 1
            except Exception as e:
                logger.error("Failed to sync raw event %s: %s", event.id, e)

        await self._ledger.mark_as_success(
            attempt_id,
            events_processed=processed,
            events_total=len(events),
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info("Synced %d/%d raw events", processed, len(events))
        return processed
