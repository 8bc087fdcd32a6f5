"""
Attempt Ledger Service.

Records one ``IngestionAttempt`` row per ingestion job execution and drives its
lifecycle:

    pending → processing → success | failed | partial

Failed rows carry a ``next_retry_at`` computed with exponential backoff
(``2^retry_count`` minutes). The retry sweep selects rows whose backoff has
elapsed, calls ``increment_retry_count`` and re-drives those that went back to
``pending``. Once ``retry_count`` reaches the limit the row stays ``failed``.

Usage:
    ledger = AttemptService(database_service)

    attempt_id = await ledger.create_attempt(
        job_type=JobType.PROCESS_USER, person_id="p-1", events_total=12,
    )
    await ledger.mark_as_processing(attempt_id)
    await ledger.mark_as_success(attempt_id, events_processed=12, processing_time_ms=840)
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import and_, func, select

from eventsight.core.database.models import (
    FailureReason,
    IngestionAttempt,
    IngestionStatus,
    JobType,
)
from eventsight.core.shared.database_service import DatabaseService
from eventsight.core.utils.time_utils import utc_now

logger = logging.getLogger("eventsight.ingestion.ledger")

AttemptId = Union[UUID, str]


def compute_backoff(retry_count: int) -> timedelta:
    """Delay before the next re-drive: ``2^retry_count`` minutes."""
    return timedelta(minutes=2 ** retry_count)


def _as_uuid(attempt_id: AttemptId) -> UUID:
    return attempt_id if isinstance(attempt_id, UUID) else UUID(str(attempt_id))


def _value(enum_or_str) -> Optional[str]:
    if enum_or_str is None:
        return None
    return getattr(enum_or_str, "value", enum_or_str)


class AttemptService:
    """
    Service for managing IngestionAttempt records.

    Each mutating call opens its own short session. A job owns exactly one
    attempt row, so no two jobs update the same row concurrently.
    """

    def __init__(self, database: DatabaseService, max_retries: int = 3):
        self._db = database
        self.max_retries = max_retries

    # =========================================================================
    # CREATE OPERATIONS
    # =========================================================================

    async def create_attempt(
        self,
        job_type: Union[JobType, str],
        person_id: Optional[str] = None,
        events_total: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UUID:
        """
        Create a ``pending`` attempt row.

        Args:
            job_type: JobType of the job being executed
            person_id: Person processed (omit for sweep-level jobs)
            events_total: Units expected, when known up front
            metadata: Free-form context (batch size, collection, ...)

        Returns:
            The new attempt id
        """
        attempt = IngestionAttempt(
            person_id=person_id,
            job_type=_value(job_type),
            status=IngestionStatus.PENDING.value,
            events_total=events_total,
            events_processed=0,
            attempt_metadata=dict(metadata or {}),
            retry_count=0,
        )
        async with self._db.get_session() as session:
            session.add(attempt)
            await session.flush()
            attempt_id = attempt.id

        logger.debug("Created %s attempt %s (person=%s)", attempt.job_type, attempt_id, person_id)
        return attempt_id

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    async def mark_as_processing(self, attempt_id: AttemptId) -> Optional[IngestionAttempt]:
        async with self._db.get_session() as session:
            attempt = await session.get(IngestionAttempt, _as_uuid(attempt_id))
            if not attempt:
                logger.warning("Attempt %s not found (mark_as_processing)", attempt_id)
                return None
            attempt.status = IngestionStatus.PROCESSING.value
            attempt.started_at = utc_now()
            attempt.completed_at = None
            return attempt

    async def mark_as_success(
        self,
        attempt_id: AttemptId,
        events_processed: int,
        processing_time_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        events_total: Optional[int] = None,
    ) -> Optional[IngestionAttempt]:
        """
        Record a successful run.

        ``processing_time_ms`` and ``metadata`` are merged into the row's
        existing metadata. Failure fields left over from earlier runs are cleared.
        """
        async with self._db.get_session() as session:
            attempt = await session.get(IngestionAttempt, _as_uuid(attempt_id))
            if not attempt:
                logger.warning("Attempt %s not found (mark_as_success)", attempt_id)
                return None

            merged = dict(attempt.attempt_metadata or {})
            merged.update(metadata or {})
            if processing_time_ms is not None:
                merged["processing_time_ms"] = processing_time_ms

            attempt.status = IngestionStatus.SUCCESS.value
            attempt.events_processed = events_processed
            if events_total is not None:
                attempt.events_total = events_total
            attempt.attempt_metadata = merged
            attempt.completed_at = utc_now()
            attempt.failure_reason = None
            attempt.error_message = None
            attempt.error_details = None
            attempt.next_retry_at = None
            return attempt

    async def mark_as_failed(
        self,
        attempt_id: AttemptId,
        failure_reason: Union[FailureReason, str],
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        events_processed: Optional[int] = None,
    ) -> Optional[IngestionAttempt]:
        """
        Record a failed run and schedule its next re-drive.

        ``next_retry_at`` is ``now + 2^retry_count`` minutes while the row is
        still under the retry limit, otherwise null (terminal).
        """
        async with self._db.get_session() as session:
            attempt = await session.get(IngestionAttempt, _as_uuid(attempt_id))
            if not attempt:
                logger.warning("Attempt %s not found (mark_as_failed)", attempt_id)
                return None

            now = utc_now()
            attempt.status = IngestionStatus.FAILED.value
            attempt.failure_reason = _value(failure_reason)
            attempt.error_message = error_message
            attempt.error_details = error_details
            if events_processed is not None:
                attempt.events_processed = events_processed
            attempt.completed_at = now
            attempt.next_retry_at = (
                now + compute_backoff(attempt.retry_count)
                if attempt.retry_count < self.max_retries
                else None
            )

        logger.warning(
            "Attempt %s failed (%s): %s", attempt_id, _value(failure_reason), error_message
        )
        return attempt

    async def mark_as_partial(
        self,
        attempt_id: AttemptId,
        events_processed: int,
        events_total: int,
        failure_reason: Union[FailureReason, str],
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> Optional[IngestionAttempt]:
        """
        Record a run that failed after part of its work was committed.

        Raises:
            ValueError: unless ``0 < events_processed < events_total``
        """
        if not 0 < events_processed < events_total:
            raise ValueError(
                f"partial requires 0 < events_processed < events_total "
                f"(got {events_processed}/{events_total})"
            )

        async with self._db.get_session() as session:
            attempt = await session.get(IngestionAttempt, _as_uuid(attempt_id))
            if not attempt:
                logger.warning("Attempt %s not found (mark_as_partial)", attempt_id)
                return None

            attempt.status = IngestionStatus.PARTIAL.value
            attempt.events_processed = events_processed
            attempt.events_total = events_total
            attempt.failure_reason = _value(failure_reason)
            attempt.error_message = error_message
            attempt.error_details = error_details
            attempt.completed_at = utc_now()

        logger.warning(
            "Attempt %s partial %d/%d (%s): %s",
            attempt_id, events_processed, events_total, _value(failure_reason), error_message,
        )
        return attempt

    # =========================================================================
    # RETRY SCHEDULING
    # =========================================================================

    async def get_retryable_attempts(self, limit: Optional[int] = None) -> List[IngestionAttempt]:
        """Failed rows under the retry limit whose backoff has elapsed, oldest first."""
        query = (
            select(IngestionAttempt)
            .where(
                and_(
                    IngestionAttempt.status == IngestionStatus.FAILED.value,
                    IngestionAttempt.retry_count < self.max_retries,
                    IngestionAttempt.next_retry_at.is_not(None),
                    IngestionAttempt.next_retry_at <= utc_now(),
                )
            )
            .order_by(IngestionAttempt.next_retry_at.asc())
        )
        if limit:
            query = query.limit(limit)
        async with self._db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def increment_retry_count(self, attempt_id: AttemptId) -> Optional[IngestionAttempt]:
        """
        Bump ``retry_count`` and either re-arm or retire the row.

        Below the limit the row flips to ``pending`` with
        ``next_retry_at = now + 2^retry_count`` minutes; at the limit it stays
        ``failed`` with no further ``next_retry_at``.
        """
        async with self._db.get_session() as session:
            attempt = await session.get(IngestionAttempt, _as_uuid(attempt_id))
            if not attempt:
                logger.warning("Attempt %s not found (increment_retry_count)", attempt_id)
                return None

            new_count = attempt.retry_count + 1
            attempt.retry_count = new_count
            if new_count < self.max_retries:
                attempt.status = IngestionStatus.PENDING.value
                attempt.next_retry_at = utc_now() + compute_backoff(new_count)
            else:
                attempt.status = IngestionStatus.FAILED.value
                attempt.next_retry_at = None

            metadata = dict(attempt.attempt_metadata or {})
            metadata["retry_count"] = new_count
            attempt.attempt_metadata = metadata

        logger.info(
            "Attempt %s retry_count=%d status=%s", attempt_id, new_count, attempt.status
        )
        return attempt

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_attempt(self, attempt_id: AttemptId) -> Optional[IngestionAttempt]:
        async with self._db.get_session() as session:
            return await session.get(IngestionAttempt, _as_uuid(attempt_id))

    async def get_failed_attempts(self, limit: int = 50) -> List[IngestionAttempt]:
        query = (
            select(IngestionAttempt)
            .where(IngestionAttempt.status == IngestionStatus.FAILED.value)
            .order_by(IngestionAttempt.created_at.desc())
            .limit(limit)
        )
        async with self._db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_failed_attempts_by_person(self, person_id: str) -> List[IngestionAttempt]:
        query = (
            select(IngestionAttempt)
            .where(
                and_(
                    IngestionAttempt.person_id == person_id,
                    IngestionAttempt.status == IngestionStatus.FAILED.value,
                )
            )
            .order_by(IngestionAttempt.created_at.desc())
        )
        async with self._db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_recent_attempts(self, limit: int = 20) -> List[IngestionAttempt]:
        query = select(IngestionAttempt).order_by(IngestionAttempt.created_at.desc()).limit(limit)
        async with self._db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_stats(self) -> Dict[str, Any]:
        """
        Ledger totals.

        Returns:
            {"total": int, "pending": int, "processing": int, "success": int,
             "failed": int, "partial": int, "by_failure_reason": {reason: count}}
        """
        async with self._db.get_session() as session:
            by_status = await session.execute(
                select(IngestionAttempt.status, func.count(IngestionAttempt.id)).group_by(
                    IngestionAttempt.status
                )
            )
            by_reason = await session.execute(
                select(IngestionAttempt.failure_reason, func.count(IngestionAttempt.id))
                .where(IngestionAttempt.status == IngestionStatus.FAILED.value)
                .group_by(IngestionAttempt.failure_reason)
            )
            status_counts = {status: count for status, count in by_status.all()}
            reason_counts = {
                (reason or FailureReason.UNKNOWN.value): count for reason, count in by_reason.all()
            }

        stats: Dict[str, Any] = {s.value: status_counts.get(s.value, 0) for s in IngestionStatus}
        stats["total"] = sum(status_counts.values())
        stats["by_failure_reason"] = reason_counts
        return stats
