"""
Unit tests for EventStore discovery, ingestion markers and statistics.
"""

from datetime import timedelta

import pytest

from eventsight.core.events.event_store import EventStore
from eventsight.core.utils.time_utils import utc_now


class TestDiscovery:
    """Test eligibility and grouping."""

    @pytest.mark.asyncio
    async def test_empty_backlog(self, event_store):
        """Test that an empty table discovers nobody."""
        assert await event_store.find_uningested_events_grouped_by_user(10) == {}
        assert await event_store.find_unique_users_with_uningested_events(10) == []

    @pytest.mark.asyncio
    async def test_groups_events_by_person(self, event_store, make_event, add_rows):
        """Test grouping and trait extraction."""
        await add_rows(
            make_event("alice", "$pageview", minutes_ago=30),
            make_event("alice", "add_to_cart", minutes_ago=20),
            make_event("bob", "$pageview", minutes_ago=10, email="bob@example.com"),
        )
        groups = await event_store.find_uningested_events_grouped_by_user(10)
        assert set(groups) == {"alice", "bob"}
        assert [e.event for e in groups["alice"].events] == ["$pageview", "add_to_cart"]
        assert groups["bob"].person_properties["email"] == "bob@example.com"

    @pytest.mark.asyncio
    async def test_most_recently_active_first_and_limited(self, event_store, make_event, add_rows):
        """Test ordering by latest activity and the batch limit."""
        await add_rows(
            make_event("old", minutes_ago=300),
            make_event("newest", minutes_ago=1),
            make_event("middle", minutes_ago=60),
        )
        groups = await event_store.find_uningested_events_grouped_by_user(2)
        assert list(groups) == ["newest", "middle"]

    @pytest.mark.asyncio
    async def test_recency_follows_event_timestamp(self, event_store, make_event, add_rows):
        """Test candidates are ranked by when events happened, not when rows landed."""
        late_row = make_event("late-row", minutes_ago=120)
        late_row.created_at = utc_now() - timedelta(minutes=1)
        recent_event = make_event("recent-event", minutes_ago=5)
        recent_event.created_at = utc_now() - timedelta(minutes=90)
        await add_rows(late_row, recent_event)

        groups = await event_store.find_uningested_events_grouped_by_user(10)

        assert list(groups) == ["recent-event", "late-row"]

    @pytest.mark.asyncio
    async def test_ineligible_persons_are_skipped(self, event_store, make_event, add_rows):
        """Test the email, vendor, window and ingested_at rules."""
        await add_rows(
            make_event("no-email", email=None),
            make_event("blank-email", email=""),
            make_event("no-vendor", vendor_id=None),
            make_event("too-old", minutes_ago=60 * 24 * 8),
            make_event("done", ingested=True),
            make_event("eligible"),
        )
        groups = await event_store.find_uningested_events_grouped_by_user(10)
        assert list(groups) == ["eligible"]

    @pytest.mark.asyncio
    async def test_discovery_is_idempotent(self, event_store, make_event, add_rows):
        """Test two sweeps before processing see the same candidates."""
        await add_rows(make_event("alice"), make_event("bob"))
        first = await event_store.find_uningested_events_grouped_by_user(10)
        second = await event_store.find_uningested_events_grouped_by_user(10)
        assert list(first) == list(second)

    @pytest.mark.asyncio
    async def test_ingested_events_drop_out(self, event_store, make_event, add_rows):
        """Test that marking a person's events removes them from discovery."""
        await add_rows(make_event("alice"), make_event("alice", "add_to_cart"), make_event("bob"))
        assert await event_store.mark_all_user_events_as_ingested("alice") == 2
        groups = await event_store.find_uningested_events_grouped_by_user(10)
        assert list(groups) == ["bob"]

    @pytest.mark.asyncio
    async def test_per_user_event_cap(self, database, make_event, add_rows):
        """Test that a person's events are bounded and oldest first."""
        store = EventStore(database, max_events_per_user=3)
        await add_rows(*[make_event("alice", f"e{i}", minutes_ago=100 - i) for i in range(5)])
        events = await store.find_uningested_events_for_user("alice")
        assert [e.event for e in events] == ["e0", "e1", "e2"]

    @pytest.mark.asyncio
    async def test_unique_users_carry_counts(self, event_store, make_event, add_rows):
        """Test the lightweight discovery variant."""
        await add_rows(make_event("alice"), make_event("alice", "add_to_cart"))
        users = await event_store.find_unique_users_with_uningested_events(5)
        assert users == [
            {
                "person_id": "alice",
                "person_properties": {"email": "shopper@example.com", "name": "Shopper"},
                "uningested_events": 2,
            }
        ]

    @pytest.mark.asyncio
    async def test_sessions(self, event_store, make_event, add_rows):
        """Test session windowing over discovery results."""
        await add_rows(
            make_event("alice", "a", minutes_ago=200),
            make_event("alice", "b", minutes_ago=190),
            make_event("alice", "c", minutes_ago=60),
        )
        sessions = await event_store.find_uningested_sessions(10, window_minutes=30)
        assert [len(s.events) for s in sessions["alice"]] == [2, 1]


class TestIngestionMarkers:
    """Test ingested_at stamping."""

    @pytest.mark.asyncio
    async def test_mark_by_id_and_uuid(self, event_store, make_event, add_rows):
        """Test both id forms, and that a second stamp is a no-op."""
        first, second = make_event("alice"), make_event("alice", "add_to_cart")
        await add_rows(first, second)
        assert await event_store.mark_as_ingested(first.id) is True
        assert await event_store.mark_as_ingested(second.uuid) is True
        assert await event_store.mark_as_ingested(first.id) is False
        assert await event_store.find_uningested_events_for_user("alice") == []

    @pytest.mark.asyncio
    async def test_mark_many(self, event_store, make_event, add_rows):
        """Test bulk stamping."""
        events = [make_event("alice", f"e{i}") for i in range(3)]
        await add_rows(*events)
        assert await event_store.mark_events_as_ingested([e.id for e in events[:2]]) == 2
        assert await event_store.mark_events_as_ingested([]) == 0
        remaining = await event_store.find_uningested_events_for_user("alice")
        assert [e.event for e in remaining] == ["e2"]


class TestStatistics:
    """Test user/event counters."""

    @pytest.mark.asyncio
    async def test_user_ingestion_stats(self, event_store, make_event, add_rows):
        """Test totals across ingested and pending rows."""
        await add_rows(
            make_event("alice", ingested=True),
            make_event("alice"),
            make_event("bob"),
            make_event("carol", ingested=True),
        )
        stats = await event_store.get_user_ingestion_stats()
        assert stats == {
            "total_users": 3,
            "total_events": 4,
            "ingested_events": 2,
            "uningested_events": 2,
            "ingested_users": 2,
            "uningested_users": 2,
        }

    @pytest.mark.asyncio
    async def test_activity_summary_by_vendor(self, event_store, make_event, add_rows):
        """Test per-vendor event renderings."""
        await add_rows(
            make_event("alice", "$pageview", vendor_id="v1"),
            make_event("alice", "purchase", vendor_id="v2"),
        )
        summary = await event_store.get_user_activity_summary_by_vendor("alice")
        assert set(summary) == {"v1", "v2"}
        assert "event_type: purchase" in summary["v2"]


class TestRawEvents:
    """Test legacy raw event access."""

    @pytest.mark.asyncio
    async def test_find_and_mark(self, event_store, make_raw_event, add_rows):
        """Test un-ingested raw events and stamping."""
        raw = make_raw_event()
        await add_rows(raw)
        found = await event_store.find_uningested_raw_events(10)
        assert [r.id for r in found] == [raw.id]
        await event_store.mark_raw_event_ingested(raw.id)
        assert await event_store.find_uningested_raw_events(10) == []
