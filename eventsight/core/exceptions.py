"""
Exception hierarchy for Eventsight.

Ingestion errors may carry an explicit ``failure_reason`` so the attempt
ledger can record it without falling back to message classification.
"""

from typing import Optional


class EventsightError(Exception):
    """Base class for all Eventsight errors."""


class IngestionError(EventsightError):
    """Raised inside the ingestion pipeline. ``failure_reason`` is a FailureReason value."""

    failure_reason: Optional[str] = None

    def __init__(self, message: str, failure_reason: Optional[str] = None):
        super().__init__(message)
        if failure_reason is not None:
            self.failure_reason = failure_reason


class EmbeddingGenerationError(IngestionError):
    failure_reason = "embedding_generation_failed"


class VectorStoreUpsertError(IngestionError):
    failure_reason = "qdrant_upsert_failed"


class EventStoreError(IngestionError):
    failure_reason = "database_error"


class InvalidEventDataError(IngestionError):
    failure_reason = "invalid_data"


class IngestionTimeoutError(IngestionError):
    failure_reason = "timeout"


class PromptTooLongError(EventsightError):
    """The question exceeds the hard character ceiling. Surfaced to callers as HTTP 400."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Prompt length {length} exceeds the maximum of {limit} characters")
        self.length = length
        self.limit = limit


class VectorStoreUnavailableError(EventsightError):
    """Collections could not be ensured. Fatal at startup."""


class LLMUnavailableError(EventsightError):
    """No LLM client is configured, or the provider call failed."""


class StreamInterruptedError(EventsightError):
    """Generation failed after part of the answer was already streamed to the caller."""

    def __init__(self, partial: str, cause: Exception):
        super().__init__(f"Stream interrupted after {len(partial)} characters: {cause}")
        self.partial = partial
        self.cause = cause
