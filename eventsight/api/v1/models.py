# eventsight/api/v1/models.py
"""API request/response models shared by the v1 routers."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from eventsight.core.queue.constants import (
    DEFAULT_INGEST_BATCH_SIZE,
    DEFAULT_SYNC_BATCH_SIZE,
    MAX_BATCH_SIZE,
)


class ErrorResponse(BaseModel):
    """
    Standard error response model for API errors.

    Attributes:
        error: Error category or type
        detail: Detailed error message
        timestamp: When the error occurred
    """
    error: str = Field(description="Error category or type")
    detail: Optional[str] = Field(default=None, description="Detailed error message")
    timestamp: datetime = Field(default_factory=datetime.now, description="Timestamp when error occurred")


class IngestJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: int = Field(
        DEFAULT_INGEST_BATCH_SIZE,
        alias="batchSize",
        ge=1,
        le=MAX_BATCH_SIZE,
        description="Persons to discover in this sweep",
    )


class RawSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: int = Field(
        DEFAULT_SYNC_BATCH_SIZE,
        alias="batchSize",
        ge=1,
        le=MAX_BATCH_SIZE,
        description="Raw events to embed in this run",
    )


class EnqueuedJobResponse(BaseModel):
    job_id: str
    queue_name: str
    job_name: str
    batch_size: int


class AttemptResponse(BaseModel):
    """One ingestion ledger row."""
    id: str
    person_id: Optional[str] = None
    job_type: str
    status: str
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    events_processed: Optional[int] = None
    events_total: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    next_retry_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AttemptListResponse(BaseModel):
    attempts: List[AttemptResponse]
    total: int


class RetrySweepResponse(BaseModel):
    retryable: int
    requeued: int
    exhausted: int


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime
    version: str
    database: Dict[str, Any]
    vector_store: Dict[str, Any]
    llm_available: bool


class CollectionCountResponse(BaseModel):
    collection: str
    count: int
