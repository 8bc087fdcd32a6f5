"""
Session windowing for a person's event history.

A session opens at its first event and absorbs every following event that
happened within ``window_minutes`` of that opening event. The first event past
the window opens the next session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from eventsight.core.database.models import PosthogEvent
from eventsight.core.utils.time_utils import humanize_span


def event_time(event: PosthogEvent) -> datetime:
    return event.timestamp or event.created_at or datetime.min


def sort_chronologically(events: Sequence[PosthogEvent]) -> List[PosthogEvent]:
    return sorted(events, key=event_time)


@dataclass
class EventSession:
    events: List[PosthogEvent] = field(default_factory=list)

    @property
    def start(self) -> Optional[datetime]:
        return event_time(self.events[0]) if self.events else None

    @property
    def end(self) -> Optional[datetime]:
        return event_time(self.events[-1]) if self.events else None

    @property
    def duration(self) -> str:
        return humanize_span(self.start, self.end)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "event_count": len(self.events),
            "event_types": sorted({e.event for e in self.events if e.event}),
        }


def split_into_sessions(
    events: Sequence[PosthogEvent], window_minutes: int = 30
) -> List[EventSession]:
    if not events:
        return []

    window = timedelta(minutes=window_minutes)
    sessions: List[EventSession] = []
    current = EventSession()

    for event in sort_chronologically(events):
        if current.events and event_time(event) - current.start > window:
            sessions.append(current)
            current = EventSession()
        current.events.append(event)

    sessions.append(current)
    return sessions
