"""
Event Store over the ``posthog_events`` and ``events`` tables.

Discovery contract used by the ingestion pipeline:

    find_uningested_events_grouped_by_user(limit)
        → {person_id: UserEventGroup(events, person_properties)}

A person is eligible when at least one of their events has
``ingested_at IS NULL``, a non-null ``person_id`` and ``vendor_id``, a
non-empty ``email`` trait, and was created inside the discovery window.
Eligibility is re-evaluated on every call, so running discovery twice before
processing yields the same candidates and already-ingested events drop out.

Database failures are re-raised as ``EventStoreError`` so the ledger
classifies them as ``database_error``.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import and_, distinct, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from eventsight.core.database.models import PosthogEvent, RawEvent
from eventsight.core.events.sessions import EventSession, split_into_sessions
from eventsight.core.events.summarizer import summarize_event
from eventsight.core.exceptions import EventStoreError
from eventsight.core.shared.database_service import DatabaseService
from eventsight.core.utils.time_utils import utc_now

logger = logging.getLogger("eventsight.events.store")


@dataclass
class UserEventGroup:
    """A person's pending events plus the trait bag taken from one of them."""

    person_id: str
    events: List[PosthogEvent] = field(default_factory=list)
    person_properties: Dict[str, Any] = field(default_factory=dict)


def _email_expr():
    return PosthogEvent.person_properties["email"].as_string()


class EventStore:
    def __init__(
        self,
        database: DatabaseService,
        window_days: int = 7,
        max_events_per_user: int = 30,
    ):
        self._db = database
        self.window_days = window_days
        self.max_events_per_user = max_events_per_user

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._db.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            raise EventStoreError(f"Event store database error: {e}") from e

    def _eligibility(self):
        email = _email_expr()
        return and_(
            PosthogEvent.ingested_at.is_(None),
            PosthogEvent.person_id.is_not(None),
            PosthogEvent.vendor_id.is_not(None),
            email.is_not(None),
            email != "",
            PosthogEvent.created_at >= utc_now() - timedelta(days=self.window_days),
        )

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    async def find_uningested_events(self, limit: Optional[int] = None) -> List[PosthogEvent]:
        query = (
            select(PosthogEvent)
            .where(PosthogEvent.ingested_at.is_(None))
            .order_by(PosthogEvent.created_at.asc())
        )
        if limit:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_uningested_events_for_user(
        self, person_id: str, limit: Optional[int] = None
    ) -> List[PosthogEvent]:
        """Oldest first, at most ``max_events_per_user`` rows."""
        query = (
            select(PosthogEvent)
            .where(
                and_(
                    PosthogEvent.person_id == person_id,
                    PosthogEvent.ingested_at.is_(None),
                )
            )
            .order_by(PosthogEvent.created_at.asc(), PosthogEvent.timestamp.asc())
            .limit(limit or self.max_events_per_user)
        )
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _candidate_person_ids(self, session: AsyncSession, limit: int) -> List[str]:
        latest = func.max(PosthogEvent.timestamp)
        query = (
            select(PosthogEvent.person_id, latest.label("latest"))
            .where(self._eligibility())
            .group_by(PosthogEvent.person_id)
            .order_by(latest.desc(), PosthogEvent.person_id.asc())
            .limit(limit)
        )
        result = await session.execute(query)
        return [row.person_id for row in result.all()]

    async def find_uningested_events_grouped_by_user(
        self, limit: int
    ) -> Dict[str, UserEventGroup]:
        """
        Up to ``limit`` eligible persons, most recently active first.

        Each group holds the person's un-ingested events (bounded by
        ``max_events_per_user``) and the first non-empty trait bag among them.
        """
        groups: Dict[str, UserEventGroup] = {}
        async with self._session() as session:
            person_ids = await self._candidate_person_ids(session, limit)
            for person_id in person_ids:
                result = await session.execute(
                    select(PosthogEvent)
                    .where(
                        and_(
                            PosthogEvent.person_id == person_id,
                            PosthogEvent.ingested_at.is_(None),
                        )
                    )
                    .order_by(PosthogEvent.created_at.asc(), PosthogEvent.timestamp.asc())
                    .limit(self.max_events_per_user)
                )
                events = list(result.scalars().all())
                if not events:
                    continue
                properties = next((e.person_properties for e in events if e.person_properties), {})
                groups[person_id] = UserEventGroup(
                    person_id=person_id,
                    events=events,
                    person_properties=dict(properties or {}),
                )

        logger.info("Discovered %d users with un-ingested events", len(groups))
        return groups

    async def find_unique_users_with_uningested_events(self, limit: int) -> List[Dict[str, Any]]:
        """Eligible persons with their pending event count, without loading the events."""
        async with self._session() as session:
            person_ids = await self._candidate_person_ids(session, limit)
            if not person_ids:
                return []
            counts = await session.execute(
                select(PosthogEvent.person_id, func.count(PosthogEvent.id))
                .where(
                    and_(
                        PosthogEvent.person_id.in_(person_ids),
                        PosthogEvent.ingested_at.is_(None),
                    )
                )
                .group_by(PosthogEvent.person_id)
            )
            count_by_person = dict(counts.all())

            users = []
            for person_id in person_ids:
                props_row = await session.execute(
                    select(PosthogEvent.person_properties)
                    .where(
                        and_(
                            PosthogEvent.person_id == person_id,
                            PosthogEvent.person_properties.is_not(None),
                        )
                    )
                    .limit(1)
                )
                users.append(
                    {
                        "person_id": person_id,
                        "person_properties": props_row.scalar() or {},
                        "uningested_events": count_by_person.get(person_id, 0),
                    }
                )
            return users

    async def find_uningested_sessions(
        self, limit: int, window_minutes: int = 30
    ) -> Dict[str, List[EventSession]]:
        groups = await self.find_uningested_events_grouped_by_user(limit)
        return {
            person_id: split_into_sessions(group.events, window_minutes)
            for person_id, group in groups.items()
        }

    # =========================================================================
    # INGESTION MARKERS
    # =========================================================================

    async def mark_as_ingested(self, event_id_or_uuid: Union[UUID, str]) -> bool:
        """Stamp one event by row id or PostHog ``uuid``. Returns False if nothing matched."""
        key = str(event_id_or_uuid)
        clauses = [PosthogEvent.uuid == key]
        try:
            clauses.append(PosthogEvent.id == UUID(key))
        except ValueError:
            pass
        async with self._session() as session:
            result = await session.execute(
                update(PosthogEvent)
                .where(and_(or_(*clauses), PosthogEvent.ingested_at.is_(None)))
                .values(ingested_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0

    async def mark_events_as_ingested(self, event_ids: Iterable[UUID]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        async with self._session() as session:
            result = await session.execute(
                update(PosthogEvent)
                .where(and_(PosthogEvent.id.in_(ids), PosthogEvent.ingested_at.is_(None)))
                .values(ingested_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def mark_all_user_events_as_ingested(self, person_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(PosthogEvent)
                .where(
                    and_(
                        PosthogEvent.person_id == person_id,
                        PosthogEvent.ingested_at.is_(None),
                    )
                )
                .values(ingested_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Marked %d events ingested for person %s", count, person_id)
        return count

    # =========================================================================
    # STATISTICS
    # =========================================================================

    async def count_ingested_users(self) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count(distinct(PosthogEvent.person_id))).where(
                    PosthogEvent.ingested_at.is_not(None)
                )
            )
            return result.scalar() or 0

    async def count_uningested_users(self) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count(distinct(PosthogEvent.person_id))).where(
                    and_(
                        PosthogEvent.ingested_at.is_(None),
                        PosthogEvent.person_id.is_not(None),
                    )
                )
            )
            return result.scalar() or 0

    async def get_user_ingestion_stats(self) -> Dict[str, int]:
        async with self._session() as session:
            total_users = await session.execute(
                select(func.count(distinct(PosthogEvent.person_id))).where(
                    PosthogEvent.person_id.is_not(None)
                )
            )
            total_events = await session.execute(select(func.count(PosthogEvent.id)))
            ingested_events = await session.execute(
                select(func.count(PosthogEvent.id)).where(PosthogEvent.ingested_at.is_not(None))
            )
            totals = {
                "total_users": total_users.scalar() or 0,
                "total_events": total_events.scalar() or 0,
                "ingested_events": ingested_events.scalar() or 0,
            }

        totals["uningested_events"] = totals["total_events"] - totals["ingested_events"]
        totals["ingested_users"] = await self.count_ingested_users()
        totals["uningested_users"] = await self.count_uningested_users()
        return totals

    # =========================================================================
    # ACTIVITY SUMMARIES
    # =========================================================================

    async def get_user_activity_summary_by_vendor(self, person_id: str) -> Dict[str, str]:
        """Per-vendor rendering of the person's events over the discovery window."""
        since = utc_now() - timedelta(days=self.window_days)
        async with self._session() as session:
            result = await session.execute(
                select(PosthogEvent)
                .where(
                    and_(
                        PosthogEvent.person_id == person_id,
                        PosthogEvent.created_at >= since,
                    )
                )
                .order_by(PosthogEvent.timestamp.asc())
            )
            events = list(result.scalars().all())

        by_vendor: Dict[str, List[str]] = {}
        for event in events:
            by_vendor.setdefault(event.vendor_id or "unknown", []).append(summarize_event(event))
        return {vendor: "\n\n".join(parts) for vendor, parts in by_vendor.items()}

    # =========================================================================
    # LEGACY RAW EVENTS
    # =========================================================================

    async def find_uningested_raw_events(self, limit: int) -> List[RawEvent]:
        async with self._session() as session:
            result = await session.execute(
                select(RawEvent)
                .where(RawEvent.ingested_at.is_(None))
                .order_by(RawEvent.event_timestamp.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_raw_event_ingested(self, event_id: UUID) -> None:
        async with self._session() as session:
            await session.execute(
                update(RawEvent)
                .where(RawEvent.id == event_id)
                .values(ingested_at=utc_now())
                .execution_options(synchronize_session=False)
            )
