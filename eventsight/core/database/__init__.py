# eventsight/core/database/__init__.py
"""
Database package for Eventsight.

Provides the declarative base and ORM models.
"""

from .base import Base
from .models import (
    FailureReason,
    IngestionAttempt,
    IngestionStatus,
    JobType,
    PosthogEvent,
    RawEvent,
)

__all__ = [
    "Base",
    "FailureReason",
    "IngestionAttempt",
    "IngestionStatus",
    "JobType",
    "PosthogEvent",
    "RawEvent",
]
