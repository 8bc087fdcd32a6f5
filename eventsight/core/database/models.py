# eventsight/core/database/models.py
"""
SQLAlchemy ORM models for Eventsight persistence.

Models:
    - PosthogEvent: Raw PostHog analytics event with person traits and ingestion marker
    - RawEvent: Legacy first-party event row synced into the raw-event collection
    - IngestionAttempt: Ledger row for one ingestion job execution

Enums:
    - JobType: FIND_USERS | PROCESS_USER (+ SYNC_EVENTS for raw sync)
    - IngestionStatus: pending | processing | success | failed | partial
    - FailureReason: classification recorded on failed/partial attempts

All timestamps are naive UTC.
"""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from eventsight.core.utils.time_utils import utc_now

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# =========================================================================
# ENUMS
# =========================================================================


class JobType(str, Enum):
    FIND_USERS = "FIND_USERS"
    PROCESS_USER = "PROCESS_USER"
    SYNC_EVENTS = "SYNC_EVENTS"


class IngestionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class FailureReason(str, Enum):
    EMBEDDING_GENERATION_FAILED = "embedding_generation_failed"
    QDRANT_UPSERT_FAILED = "qdrant_upsert_failed"
    DATABASE_ERROR = "database_error"
    INVALID_DATA = "invalid_data"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# =========================================================================
# EVENTS
# =========================================================================


class PosthogEvent(Base):
    """
    PostHog analytics event as exported into the warehouse table.

    Rows are created upstream. This system only ever stamps ``ingested_at``.

    Attributes:
        id: Row identifier
        event: Event name (e.g. ``$pageview``, ``add_to_cart``)
        properties: Event property bag (nested JSON)
        person_properties: Person trait bag captured with the event (email, name, ...)
        elements_chain: Autocapture element chain
        set_: ``$set`` payload
        set_once: ``$set_once`` payload
        distinct_id: PostHog distinct id
        person_id: PostHog person id, the unit of aggregation
        uuid: PostHog event uuid
        created_at: When the event row was created upstream
        inserted_at: ``_inserted_at`` warehouse column
        ip: Client IP
        timestamp: When the event happened
        vendor_id: Tenant/vendor the event belongs to
        shop_domain: Storefront domain
        ingested_at: Set once the event is folded into a profile
    """

    __tablename__ = "posthog_events"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    event = Column(String(255), nullable=False)
    properties = Column(JSON, nullable=True)
    person_properties = Column(JSON, nullable=True)
    elements_chain = Column(Text, nullable=True)
    set_ = Column("set", JSON, nullable=True)
    set_once = Column(JSON, nullable=True)
    distinct_id = Column(String(255), nullable=True)
    person_id = Column(String(255), nullable=True, index=True)
    uuid = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=True)
    inserted_at = Column("_inserted_at", DateTime, nullable=True)
    ip = Column(String(64), nullable=True)
    timestamp = Column(DateTime, nullable=True)
    record_created_at = Column("createdAt", DateTime, default=utc_now, nullable=False)
    record_updated_at = Column(
        "updatedAt", DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )
    vendor_id = Column(String(255), nullable=True, index=True)
    shop_domain = Column("shopDomain", String(255), nullable=True)
    ingested_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        Index("ix_posthog_events_person_ingested", "person_id", "ingested_at"),
    )

    def __repr__(self) -> str:
        return f"<PosthogEvent(id={self.id}, event={self.event}, person_id={self.person_id})>"


class RawEvent(Base):
    """
    First-party event row from the legacy collector.

    Synced one point per event into the raw-event collection.
    """

    __tablename__ = "events"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(255), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    event_timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    ingested_at = Column(DateTime, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<RawEvent(id={self.id}, event_type={self.event_type}, user_id={self.user_id})>"


# =========================================================================
# INGESTION LEDGER
# =========================================================================


class IngestionAttempt(Base):
    """
    One audited execution of an ingestion job.

    Attributes:
        id: Attempt identifier
        person_id: Person processed (null for sweep-level jobs)
        job_type: JobType value
        status: IngestionStatus value
        failure_reason: FailureReason value, only on failed/partial rows
        error_message: Human-readable error
        error_details: Structured error context (exception type, step, ...)
        events_processed: Units completed (events for PROCESS_USER, users for FIND_USERS)
        events_total: Units expected
        attempt_metadata: ``metadata`` column: batch size, timing, embedding size, collection
        started_at: When work started
        completed_at: When a terminal status was recorded
        retry_count: Re-drives so far
        next_retry_at: Earliest time the retry sweep may re-drive this row

    Status Transitions:
        pending → processing → success | failed | partial
        failed → pending (retry sweep, while retry_count < limit)
    """

    __tablename__ = "ingestion_attempts"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    person_id = Column(String(255), nullable=True, index=True)
    job_type = Column(String(50), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=IngestionStatus.PENDING.value, index=True)
    failure_reason = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    events_processed = Column(Integer, nullable=False, default=0)
    events_total = Column(Integer, nullable=True)
    attempt_metadata = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_ingestion_attempts_status_retry", "status", "retry_count", "next_retry_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "person_id": self.person_id,
            "job_type": self.job_type,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "error_message": self.error_message,
            "error_details": self.error_details,
            "events_processed": self.events_processed,
            "events_total": self.events_total,
            "metadata": self.attempt_metadata or {},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<IngestionAttempt(id={self.id}, job_type={self.job_type}, "
            f"status={self.status}, person_id={self.person_id})>"
        )
