"""
Intent detection for analytics questions.

The LLM answers with ``{intent, confidence, parameters, method}``, possibly
inside a markdown code fence. The reply is validated against the closed
``Intent`` enum; anything that does not parse or validate becomes
``general_query`` with confidence 0.5. Detection never raises.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from eventsight.core.llm.llm_service import LLMService
from eventsight.core.llm.prompts import render_intent_prompt
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.utils.text_utils import extract_json_object

logger = logging.getLogger("eventsight.query.intents")


class Intent(str, Enum):
    COUNT_USERS = "count_users"
    LIST_USERS = "list_users"
    FIND_IOS_USERS = "find_ios_users"
    FIND_ANDROID_USERS = "find_android_users"
    FIND_MOBILE_USERS = "find_mobile_users"
    FIND_DESKTOP_USERS = "find_desktop_users"
    FIND_USERS_BY_LOCATION = "find_users_by_location"
    FIND_ACTIVE_USERS = "find_active_users"
    FIND_INACTIVE_USERS = "find_inactive_users"
    FIND_CART_ABANDONERS = "find_cart_abandoners"
    FIND_CONVERTED_USERS = "find_converted_users"
    QUERY_RAG_WITH_FILTER = "query_rag_with_filter"
    INGEST_EVENTS = "ingest_events"
    HELP = "help"
    GENERAL_QUERY = "general_query"


INTENT_DESCRIPTIONS = {
    Intent.COUNT_USERS: "how many users match some criteria",
    Intent.LIST_USERS: "show or describe users matching some criteria",
    Intent.FIND_IOS_USERS: "users on iOS / iPhone / iPad",
    Intent.FIND_ANDROID_USERS: "users on Android devices",
    Intent.FIND_MOBILE_USERS: "users on mobile devices",
    Intent.FIND_DESKTOP_USERS: "users on desktop computers",
    Intent.FIND_USERS_BY_LOCATION: "users in a country or city (set parameters.country / parameters.city)",
    Intent.FIND_ACTIVE_USERS: "highly active or engaged users",
    Intent.FIND_INACTIVE_USERS: "inactive or barely active users",
    Intent.FIND_CART_ABANDONERS: "users who added to cart but did not check out",
    Intent.FIND_CONVERTED_USERS: "users who purchased, or who are most likely to convert",
    Intent.QUERY_RAG_WITH_FILTER: "any other profile question with explicit filters (set question_type)",
    Intent.INGEST_EVENTS: "request to ingest/process/sync new events (set parameters.batch_size)",
    Intent.HELP: "what can you do / how do I use this",
    Intent.GENERAL_QUERY: "anything else",
}

FALLBACK_CONFIDENCE = 0.5


class IntentDetection(BaseModel):
    intent: Intent
    confidence: float = Field(default=FALLBACK_CONFIDENCE, ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    method: Optional[str] = None

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameters_default(cls, value):
        return value if isinstance(value, dict) else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        try:
            return min(1.0, max(0.0, float(value)))
        except (TypeError, ValueError):
            return FALLBACK_CONFIDENCE

    @classmethod
    def fallback(cls, method: str = "fallback") -> "IntentDetection":
        return cls(intent=Intent.GENERAL_QUERY, confidence=FALLBACK_CONFIDENCE, method=method)


def parse_intent_response(text: Optional[str]) -> IntentDetection:
    parsed = extract_json_object(text or "")
    if not isinstance(parsed, dict):
        logger.warning("Intent reply was not a JSON object; falling back to general_query")
        return IntentDetection.fallback()
    try:
        return IntentDetection.model_validate(parsed)
    except ValidationError as e:
        logger.warning("Intent reply failed validation (%s); falling back to general_query", e.error_count())
        return IntentDetection.fallback()


class IntentDetector:
    def __init__(self, llm: LLMService):
        self._llm = llm

    async def detect(self, question: str) -> IntentDetection:
        prompt = render_intent_prompt(
            question, [(intent.value, desc) for intent, desc in INTENT_DESCRIPTIONS.items()]
        )
        try:
            reply = await self._llm.complete(prompt, task_type=LLMTaskType.QUICK, temperature=0.0)
        except Exception as e:
            logger.warning("Intent detection failed, falling back to general_query: %s", e)
            return IntentDetection.fallback(method="llm_error")
        detection = parse_intent_response(reply)
        logger.info("Detected intent %s (%.2f)", detection.intent.value, detection.confidence)
        return detection
