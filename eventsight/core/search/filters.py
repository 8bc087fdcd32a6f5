"""
Translation of loosely-typed intent filters into Qdrant filter predicates.

Input is a flat map of profile field to value, list, or range:

    {"event_types": ["purchase", "login"],
     "person_properties.os": "Android",
     "event_count_range": {"min": 5}}

Rules, all clauses ANDed under ``must``:
    - scalar profile fields → exact match
    - array profile fields → match any of
    - ``flattened_data.*`` / ``person_properties.*`` → exact match on the nested path
    - ``time_range {start, end}`` → datetime range on ``first_event``
    - ``event_count_range {min, max}`` → numeric range on ``event_count``
    - any other scalar → exact match

No recognized clause means no filter (unfiltered search).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from qdrant_client import models as qdrant_models

from eventsight.core.utils.time_utils import parse_timestamp

logger = logging.getLogger("eventsight.search.filters")

SCALAR_FIELDS = ("person_id", "event_count", "first_event", "last_event", "time_span")
ARRAY_FIELDS = ("event_types", "vendor_ids", "shop_domains")
NESTED_PREFIXES = ("flattened_data.", "person_properties.")

# Request-level names accepted for array fields
FIELD_ALIASES = {
    "vendor_id": "vendor_ids",
    "shop_domain": "shop_domains",
    "event_type": "event_types",
}


def _match_value(value: Any) -> Optional[qdrant_models.MatchValue]:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, (str, int, bool)):
        return qdrant_models.MatchValue(value=value)
    return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return [v for v in value if v is not None]
    return [value]


def _exact_or_any(key: str, value: Any) -> Optional[qdrant_models.FieldCondition]:
    if isinstance(value, (list, tuple, set)):
        values = [str(v) if not isinstance(v, (str, int)) else v for v in _as_list(value)]
        if not values:
            return None
        return qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchAny(any=values))

    match = _match_value(value)
    if match is None:
        logger.warning("Ignoring filter %s with unsupported value type %s", key, type(value).__name__)
        return None
    return qdrant_models.FieldCondition(key=key, match=match)


def _time_range(value: Dict[str, Any]) -> Optional[qdrant_models.FieldCondition]:
    start = parse_timestamp(value.get("start"))
    end = parse_timestamp(value.get("end"))
    if start is None and end is None:
        return None
    return qdrant_models.FieldCondition(
        key="first_event",
        range=qdrant_models.DatetimeRange(gte=start, lte=end),
    )


def _count_range(value: Dict[str, Any]) -> Optional[qdrant_models.FieldCondition]:
    low, high = value.get("min"), value.get("max")
    if low is None and high is None:
        return None
    return qdrant_models.FieldCondition(
        key="event_count",
        range=qdrant_models.Range(gte=low, lte=high),
    )


def build_condition(key: str, value: Any) -> Optional[qdrant_models.FieldCondition]:
    """One clause for one filter entry, or None when the entry is unusable."""
    if value is None or value == "" or value == []:
        return None

    key = FIELD_ALIASES.get(key, key)

    if key == "time_range":
        return _time_range(value) if isinstance(value, dict) else None
    if key == "event_count_range":
        return _count_range(value) if isinstance(value, dict) else None
    if key in ARRAY_FIELDS:
        values = _as_list(value)
        return qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchAny(any=values))
    if key in SCALAR_FIELDS or key.startswith(NESTED_PREFIXES):
        if isinstance(value, datetime):
            value = value.isoformat()
        return _exact_or_any(key, value)
    if isinstance(value, dict):
        logger.warning("Ignoring unrecognized structured filter %s", key)
        return None
    return _exact_or_any(key, value)


def build_filter(filters: Optional[Dict[str, Any]]) -> Optional[qdrant_models.Filter]:
    if not filters:
        return None
    must = []
    for key, value in filters.items():
        condition = build_condition(key, value)
        if condition is not None:
            must.append(condition)
    if not must:
        return None
    return qdrant_models.Filter(must=must)


def merge_filters(*layers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Later layers win key by key. Aliases are normalized first."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            if value is None:
                continue
            merged[FIELD_ALIASES.get(key, key)] = value
    return merged
