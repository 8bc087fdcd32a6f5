"""
Deterministic renderings of PostHog events.

- ``flatten_object`` flattens a nested property bag into ``parent_child`` keys.
- ``summarize_event`` renders one event as grouped lines (Event/User/Device/...).
- ``build_activity_rendering`` renders a person's event set as the LLM prompt body.
- ``build_fallback_summary`` is the no-LLM summary: every flattened property
  sorted into named buckets, cut to a character budget with a marker.
- ``build_profile_payload`` assembles the vector-store payload for one person.
"""

import json
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence

from eventsight.core.database.models import PosthogEvent
from eventsight.core.events.sessions import EventSession, event_time, sort_chronologically
from eventsight.core.utils.time_utils import humanize_span, isoformat

ARRAY_VALUE_MAX_CHARS = 200
OTHER_FIELDS_LIMIT = 10
TRUNCATION_MARKER = "\n\n[... summary truncated to fit the context budget ...]"

# Display order for per-event summaries
EVENT_GROUPS = ("event", "user", "device", "location", "app", "vendor", "screen", "cart", "session")

# Exact flattened keys per group, checked before the substring rules below
GROUP_FIELDS: Dict[str, tuple] = {
    "event": ("event_type", "timestamp", "uuid", "person_id"),
    "vendor": ("vendor_id", "shop_domain"),
    "device": (
        "$device_name", "$device_type", "$os", "$os_version", "$device_manufacturer",
        "$device_model", "$browser", "$browser_version",
    ),
    "location": (
        "$geoip_city_name", "$geoip_country_name", "$geoip_subdivision_1_name",
        "$geoip_time_zone", "$geoip_latitude", "$geoip_longitude",
    ),
    "app": ("$app_name", "$app_version", "$app_build", "$app_namespace"),
    "screen": ("$screen_name", "$screen_width", "$screen_height", "$pathname", "$current_url"),
    "cart": ("cart_cartTotal", "cart_itemsCount", "cart_cartCurrency", "cart_cartLink"),
    "user": ("name", "email", "emailVerified"),
    "session": ("$session_id", "$lib_version"),
}

# Bucket rules for the fallback summary: first matching substring wins
BUCKET_RULES = (
    ("user", ("email", "name", "user", "person", "distinct_id", "phone")),
    ("vendor", ("vendor", "shop", "store")),
    ("cart", ("cart", "product", "price", "checkout", "order", "currency", "quantity", "sku")),
    ("location", ("geoip", "country", "city", "region", "timezone", "time_zone", "latitude", "longitude")),
    ("device", ("$os", "device", "browser", "user_agent", "manufacturer")),
    ("app", ("app_", "$app", "version", "build")),
    ("screen", ("screen", "viewport", "pathname", "url", "title", "page")),
    ("session", ("session", "window_id", "referrer", "utm_")),
    ("technical", ("$lib", "$insert_id", "token", "$time", "$sent_at", "$ip", "elements", "$plugins")),
)
FALLBACK_BUCKETS = (
    "user", "device", "location", "app", "screen", "cart", "session", "vendor", "technical", "other",
)

CART_EVENT_TYPES = ("add_to_cart", "cart_updated", "cart_viewed", "product_added", "view_cart")
CONVERSION_EVENT_TYPES = ("checkout_completed", "checkout_started", "order_completed", "purchase")


def flatten_object(obj: Optional[Dict[str, Any]], prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts into ``parent_child`` keys. Nulls and empty lists are skipped."""
    flattened: Dict[str, str] = {}
    for key, value in (obj or {}).items():
        full_key = f"{prefix}_{key}" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, bool):
            flattened[full_key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            flattened[full_key] = str(value)
        elif isinstance(value, (list, tuple)):
            if value:
                joined = ", ".join(
                    json.dumps(v, default=str) if isinstance(v, (dict, list)) else str(v)
                    for v in value
                )
                if len(joined) > ARRAY_VALUE_MAX_CHARS:
                    joined = joined[:ARRAY_VALUE_MAX_CHARS] + "..."
                flattened[full_key] = joined
        elif isinstance(value, dict):
            flattened.update(flatten_object(value, full_key))
        else:
            flattened[full_key] = str(value)
    return flattened


def _is_set_field(key: str) -> bool:
    return key.startswith("$set") or "_$set" in key


def _bucket_for(key: str) -> str:
    lowered = key.lower()
    for bucket, needles in BUCKET_RULES:
        if any(needle in lowered for needle in needles):
            return bucket
    return "other"


# =========================================================================
# PER-EVENT
# =========================================================================


def summarize_event(event: PosthogEvent) -> str:
    data = {
        "event_type": event.event,
        "timestamp": isoformat(event.timestamp),
        "uuid": event.uuid,
        "person_id": event.person_id,
        "vendor_id": event.vendor_id,
        "shop_domain": event.shop_domain,
    }
    data = {k: v for k, v in data.items() if v}
    data.update(flatten_object(event.properties))

    used = set()
    grouped: Dict[str, List[str]] = {}
    for group in EVENT_GROUPS:
        lines = []
        for field_name in GROUP_FIELDS[group]:
            if data.get(field_name) and field_name not in used:
                lines.append(f"{field_name}: {data[field_name]}")
                used.add(field_name)
        grouped[group] = lines

    others = [
        f"{key}: {value}"
        for key, value in data.items()
        if key not in used and not _is_set_field(key)
    ][:OTHER_FIELDS_LIMIT]

    parts = [
        f"{group.capitalize()}: {' | '.join(lines)}"
        for group, lines in grouped.items()
        if lines
    ]
    if others:
        parts.append(f"Other: {' | '.join(others)}")
    return "\n".join(parts)


# =========================================================================
# PER-PERSON
# =========================================================================


def collect_flattened_data(events: Iterable[PosthogEvent]) -> Dict[str, List[str]]:
    """Every flattened property key mapped to the distinct values seen, in first-seen order."""
    collected: Dict[str, List[str]] = {}
    for event in events:
        for key, value in flatten_object(event.properties).items():
            if _is_set_field(key):
                continue
            values = collected.setdefault(key, [])
            if value not in values:
                values.append(value)
    return collected


def _first_values(flat: Dict[str, List[str]], keys: Sequence[str]) -> List[str]:
    found = []
    for key in keys:
        if flat.get(key):
            found.append(f"{key.lstrip('$')}={', '.join(flat[key][:3])}")
    return found


def build_activity_rendering(
    events: Sequence[PosthogEvent],
    person_properties: Optional[Dict[str, Any]] = None,
    sessions: Optional[Sequence[EventSession]] = None,
    timeline_max_entries: int = 15,
) -> str:
    """Structured description of a person's events, used as the summarization prompt body."""
    ordered = sort_chronologically(events)
    flat = collect_flattened_data(ordered)
    type_counts = Counter(e.event for e in ordered if e.event)

    lines = [f"Total events: {len(ordered)}"]
    if type_counts:
        lines.append(
            "Event types: "
            + ", ".join(f"{name} ({count})" for name, count in type_counts.most_common())
        )
    if ordered:
        first, last = event_time(ordered[0]), event_time(ordered[-1])
        lines.append(
            f"Active from {isoformat(first)} to {isoformat(last)} ({humanize_span(first, last)})"
        )

    traits = flatten_object(person_properties)
    if traits:
        shown = [f"{k}={v}" for k, v in traits.items() if not _is_set_field(k)][:10]
        lines.append("User traits: " + "; ".join(shown))

    for label, group in (("Device", "device"), ("Location", "location"), ("App", "app")):
        found = _first_values(flat, GROUP_FIELDS[group])
        if found:
            lines.append(f"{label}: " + "; ".join(found))

    cart_keys = [k for k in flat if "cart" in k.lower()]
    if cart_keys:
        lines.append("Cart: " + "; ".join(_first_values(flat, cart_keys[:8])))

    vendors = sorted({e.vendor_id for e in ordered if e.vendor_id})
    if vendors:
        lines.append("Vendors: " + ", ".join(vendors))

    if sessions:
        lines.append(f"Sessions: {len(sessions)}")
        for index, session in enumerate(sessions, start=1):
            lines.append(
                f"  Session {index}: {isoformat(session.start)} "
                f"({session.duration}, {len(session.events)} events)"
            )

    recent = ordered[-timeline_max_entries:] if timeline_max_entries else []
    if recent:
        lines.append("Recent events (oldest to newest):")
        for event in recent:
            page = (event.properties or {}).get("$screen_name") or (event.properties or {}).get(
                "$pathname"
            )
            suffix = f" on {page}" if page else ""
            lines.append(f"  - {isoformat(event_time(event))}: {event.event}{suffix}")

    return "\n".join(lines)


def build_fallback_summary(
    person_id: str,
    events: Sequence[PosthogEvent],
    person_properties: Optional[Dict[str, Any]] = None,
    max_chars: int = 28_000,
) -> str:
    """
    Summary used when the LLM is unavailable.

    Every flattened event and trait property is sorted into a named bucket.
    Output longer than ``max_chars`` is cut and ends with ``TRUNCATION_MARKER``.
    """
    ordered = sort_chronologically(events)
    buckets: Dict[str, Dict[str, List[str]]] = {name: {} for name in FALLBACK_BUCKETS}

    def _add(key: str, value: str) -> None:
        values = buckets[_bucket_for(key)].setdefault(key, [])
        if value not in values:
            values.append(value)

    for key, value in flatten_object(person_properties).items():
        if not _is_set_field(key):
            _add(key, value)
    for key, values in collect_flattened_data(ordered).items():
        for value in values:
            _add(key, value)
    for event in ordered:
        if event.vendor_id:
            _add("vendor_id", event.vendor_id)
        if event.shop_domain:
            _add("shop_domain", event.shop_domain)

    type_counts = Counter(e.event for e in ordered if e.event)
    header = [f"User {person_id} activity summary ({len(ordered)} events)."]
    if type_counts:
        header.append(
            "Event types: "
            + ", ".join(f"{name} x{count}" for name, count in type_counts.most_common())
        )
    if ordered:
        header.append(
            f"Time span: {humanize_span(event_time(ordered[0]), event_time(ordered[-1]))}"
        )

    sections = []
    for name in FALLBACK_BUCKETS:
        if buckets[name]:
            body = "\n".join(f"  {k}: {', '.join(v)}" for k, v in buckets[name].items())
            sections.append(f"{name.capitalize()}:\n{body}")

    text = "\n".join(header) + ("\n\n" + "\n\n".join(sections) if sections else "")
    if len(text) > max_chars:
        text = text[: max(0, max_chars - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER
    return text


def build_profile_payload(
    person_id: str,
    events: Sequence[PosthogEvent],
    summary: str,
    person_properties: Optional[Dict[str, Any]] = None,
    max_events: int = 30,
) -> Dict[str, Any]:
    """Vector-store payload for one person. Re-ingestion replaces it wholesale."""
    ordered = sort_chronologically(events)
    first = event_time(ordered[0]) if ordered else None
    last = event_time(ordered[-1]) if ordered else None

    return {
        "person_id": person_id,
        "summary": summary,
        "event_count": len(ordered),
        "event_types": sorted({e.event for e in ordered if e.event}),
        "vendor_ids": sorted({e.vendor_id for e in ordered if e.vendor_id}),
        "shop_domains": sorted({e.shop_domain for e in ordered if e.shop_domain}),
        "time_span": humanize_span(first, last),
        "first_event": isoformat(first),
        "last_event": isoformat(last),
        "flattened_data": collect_flattened_data(ordered),
        "person_properties": dict(person_properties or {}),
        "events": [
            {
                "id": str(e.id) if e.id else None,
                "uuid": e.uuid,
                "event": e.event,
                "timestamp": isoformat(event_time(e)),
                "vendor_id": e.vendor_id,
                "properties": e.properties or {},
            }
            for e in ordered[-max_events:]
        ],
    }
