"""
Per-intent retrieval presets: search phrase, implied filters and result post-filters.

Intent parameters and request filters are merged over the preset filters, so
an explicit ``parameters.filters`` entry always wins.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from eventsight.config import Settings
from eventsight.core.events.summarizer import CART_EVENT_TYPES, CONVERSION_EVENT_TYPES
from eventsight.core.query.intents import Intent
from eventsight.core.search.vector_store import SearchHit

Params = Dict[str, Any]


def _no_filters(params: Params, settings: Settings) -> Dict[str, Any]:
    return {}


def _location_phrase(params: Params) -> str:
    place = params.get("city") or params.get("country") or "a specific location"
    return f"users located in {place}"


def _location_filters(params: Params, settings: Settings) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    if params.get("country"):
        filters["flattened_data.$geoip_country_name"] = params["country"]
    if params.get("city"):
        filters["flattened_data.$geoip_city_name"] = params["city"]
    return filters


def _without_conversion(hits: List[SearchHit]) -> List[SearchHit]:
    converted = set(CONVERSION_EVENT_TYPES)
    return [h for h in hits if not converted.intersection(h.payload.get("event_types") or [])]


@dataclass(frozen=True)
class IntentPreset:
    phrase: Optional[Callable[[Params], str]] = None
    filters: Callable[[Params, Settings], Dict[str, Any]] = _no_filters
    post_filter: Optional[Callable[[List[SearchHit]], List[SearchHit]]] = None
    default_mode: str = "list"
    conversion_analysis: bool = False


def _fixed(text: str) -> Callable[[Params], str]:
    return lambda params: text


INTENT_PRESETS: Dict[Intent, IntentPreset] = {
    Intent.COUNT_USERS: IntentPreset(default_mode="count"),
    Intent.LIST_USERS: IntentPreset(),
    Intent.FIND_IOS_USERS: IntentPreset(
        phrase=_fixed("users on iOS devices"),
        filters=lambda p, s: {"flattened_data.$os": "iOS"},
    ),
    Intent.FIND_ANDROID_USERS: IntentPreset(
        phrase=_fixed("users on Android devices"),
        filters=lambda p, s: {"flattened_data.$os": "Android"},
    ),
    Intent.FIND_MOBILE_USERS: IntentPreset(
        phrase=_fixed("users on mobile devices"),
        filters=lambda p, s: {"flattened_data.$device_type": "Mobile"},
    ),
    Intent.FIND_DESKTOP_USERS: IntentPreset(
        phrase=_fixed("users on desktop"),
        filters=lambda p, s: {"flattened_data.$device_type": "Desktop"},
    ),
    Intent.FIND_USERS_BY_LOCATION: IntentPreset(
        phrase=_location_phrase,
        filters=_location_filters,
    ),
    Intent.FIND_ACTIVE_USERS: IntentPreset(
        phrase=_fixed("highly active engaged users"),
        filters=lambda p, s: {"event_count_range": {"min": s.active_user_min_events}},
    ),
    Intent.FIND_INACTIVE_USERS: IntentPreset(
        phrase=_fixed("inactive users with little activity"),
        filters=lambda p, s: {"event_count_range": {"max": s.inactive_user_max_events}},
    ),
    Intent.FIND_CART_ABANDONERS: IntentPreset(
        phrase=_fixed("users who added to cart but did not check out"),
        filters=lambda p, s: {"event_types": list(CART_EVENT_TYPES)},
        post_filter=_without_conversion,
    ),
    Intent.FIND_CONVERTED_USERS: IntentPreset(
        phrase=_fixed("users who completed checkout or purchase"),
        filters=lambda p, s: {"event_types": list(CONVERSION_EVENT_TYPES)},
        conversion_analysis=True,
    ),
    Intent.QUERY_RAG_WITH_FILTER: IntentPreset(default_mode="rag"),
}


def answer_mode(intent: Intent, params: Params) -> str:
    """``count`` / ``list`` for retrieval intents, ``rag`` for anything without a preset."""
    preset = INTENT_PRESETS.get(intent)
    if preset is None:
        return "rag"
    question_type = str(params.get("question_type") or "").lower()
    if question_type in ("count", "list"):
        return question_type
    return preset.default_mode
