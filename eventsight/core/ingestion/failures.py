"""
Failure classification for ingestion attempts.

``classify_failure_message`` maps free-text error messages to a FailureReason
using an ordered rule list: the first rule with a matching needle wins.
``failure_reason_for`` prefers a reason carried explicitly by the exception.
"""

from typing import List, Optional, Tuple

from eventsight.core.database.models import FailureReason

# Checked in order, case-insensitive substring match
FAILURE_RULES: List[Tuple[Tuple[str, ...], FailureReason]] = [
    (("embedding", "openai"), FailureReason.EMBEDDING_GENERATION_FAILED),
    (("qdrant", "upsert"), FailureReason.QDRANT_UPSERT_FAILED),
    (("database", "connection"), FailureReason.DATABASE_ERROR),
    (("timeout", "timed out"), FailureReason.TIMEOUT),
]


def classify_failure_message(message: Optional[str]) -> FailureReason:
    if not message:
        return FailureReason.UNKNOWN
    lowered = message.lower()
    for needles, reason in FAILURE_RULES:
        if any(needle in lowered for needle in needles):
            return reason
    return FailureReason.UNKNOWN


def failure_reason_for(exc: BaseException) -> FailureReason:
    explicit = getattr(exc, "failure_reason", None)
    if explicit:
        try:
            return FailureReason(explicit)
        except ValueError:
            pass
    message = str(exc) or type(exc).__name__
    return classify_failure_message(message)


def error_details_for(exc: BaseException, step: Optional[str] = None) -> dict:
    details = {"exception_type": type(exc).__name__}
    if step:
        details["step"] = step
    return details
