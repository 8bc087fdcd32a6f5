"""
Tests for the query router and its response strategies.

Profiles are seeded straight into the in-memory vector store; the LLM is
scripted per task type (QUICK drives intent detection, REASONING narrates).
"""

import json
from unittest.mock import patch

import pytest

from eventsight.core.exceptions import LLMUnavailableError, PromptTooLongError
from eventsight.core.llm.prompts import ANALYTICS_SYSTEM_PROMPT
from eventsight.core.llm.streaming import BufferSink
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.query.intents import IntentDetector
from eventsight.core.query.router import QueryRouter
from eventsight.core.query.strategies import (
    APOLOGY,
    HELP_TEXT,
    NO_USERS_FOUND,
    STREAM_INTERRUPTED,
    ResponseStrategies,
)
from eventsight.core.queue.constants import PosthogEventsJob
from eventsight.core.search.query_cache import QueryCache
from eventsight.core.search.vector_store import point_id_for


def _intent(name, **parameters):
    return json.dumps({"intent": name, "confidence": 0.9, "parameters": parameters})


@pytest.fixture
def build_router(settings, embeddings, vector_store, job_queue):
    def _build(llm, settings=settings):
        strategies = ResponseStrategies(settings, llm, embeddings, vector_store, job_queue)
        cache = QueryCache(
            vector_store, settings.query_cache_collection, threshold=settings.query_cache_threshold
        )
        return QueryRouter(settings, llm, embeddings, IntentDetector(llm), strategies, cache=cache)

    return _build


@pytest.fixture
def seed_profile(vector_store, embeddings):
    async def _seed(person_id, summary, event_types, os="iOS", device="Mobile", event_count=5, vendor="vendor-1"):
        await vector_store.upsert(
            "posthog_events",
            point_id_for(person_id),
            embeddings.vector_for(summary),
            {
                "person_id": person_id,
                "summary": summary,
                "event_count": event_count,
                "event_types": event_types,
                "vendor_ids": [vendor],
                "shop_domains": ["demo-shop.myshopify.com"],
                "time_span": "2 hours",
                "first_event": "2026-10-18T10:00:00+00:00",
                "flattened_data": {"$os": [os], "$device_type": [device]},
            },
        )

    return _seed


def _profile_searches(vector_store):
    return [s for s in vector_store.searches if s["collection"] == "posthog_events"]


class TestRetrievalModes:
    """Test count / list / rag answers."""

    @pytest.mark.asyncio
    async def test_count_answer(self, build_router, make_llm, seed_profile, settings, vector_store):
        """Test count mode reports the distinct person count and scans the count limit."""
        await seed_profile("p-1", "iOS shopper browsing shoes", ["$pageview"])
        await seed_profile("p-2", "Android shopper buying socks", ["purchase"], os="Android")
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("count_users")}))

        response = await router.answer("How many users do we have?")

        assert response.intent == "count_users"
        assert response.total_sources == 2
        assert response.metadata["answer_mode"] == "count"
        assert response.answer.startswith("2 users match your question.")
        assert _profile_searches(vector_store)[0]["top"] == settings.count_search_limit

    @pytest.mark.asyncio
    async def test_question_type_overrides_mode(self, build_router, make_llm, seed_profile):
        """Test parameters.question_type=count turns a device intent into a count."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(
            make_llm({LLMTaskType.QUICK: _intent("find_ios_users", question_type="count")})
        )

        response = await router.answer("How many iPhone users?")

        assert response.metadata["answer_mode"] == "count"
        assert response.total_sources == 1

    @pytest.mark.asyncio
    async def test_list_answer_applies_preset_filter(self, build_router, make_llm, seed_profile, vector_store):
        """Test find_ios_users filters on flattened_data.$os and lists matches."""
        await seed_profile("p-1", "iOS shopper browsing shoes", ["$pageview"])
        await seed_profile("p-2", "Android shopper buying socks", ["purchase"], os="Android")
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("find_ios_users")}))

        response = await router.answer("Show me iOS users")

        assert response.metadata["answer_mode"] == "list"
        assert response.total_sources == 1
        assert [s.person_id for s in response.sources] == ["p-1"]
        assert response.metadata["filters"] == {"flattened_data.$os": "iOS"}
        assert response.answer.startswith("1 users matched.")

    @pytest.mark.asyncio
    async def test_list_respects_top_k_and_display_limit(self, build_router, make_llm, seed_profile, vector_store):
        """Test top_k bounds retrieval and at most list_display_limit sources are shown."""
        for i in range(5):
            await seed_profile(f"p-{i}", f"shopper number {i}", ["$pageview"])
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("list_users")}))

        response = await router.answer("List some users", top_k=4)

        assert _profile_searches(vector_store)[0]["top"] == 4
        assert response.total_sources == 4
        assert len(response.sources) == 3

    @pytest.mark.asyncio
    async def test_rag_answer(self, build_router, make_llm, seed_profile):
        """Test query_rag_with_filter narrates over every retrieved profile."""
        await seed_profile("p-1", "shopper who reads reviews", ["$pageview"])
        llm = make_llm({LLMTaskType.QUICK: _intent("query_rag_with_filter")})
        router = build_router(llm)

        response = await router.answer("What do review readers do?")

        assert response.metadata["answer_mode"] == "rag"
        assert response.total_sources == 1
        assert response.answer == "Based on 1 matching users: Narrated answer."
        assert "shopper who reads reviews" in llm.calls_for(LLMTaskType.REASONING)[0]["prompt"]

    @pytest.mark.asyncio
    async def test_no_match(self, build_router, make_llm, seed_profile, vector_store):
        """Test an empty result says so and is not cached."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("find_android_users")}))

        response = await router.answer("Show me Android users")

        assert response.answer == NO_USERS_FOUND
        assert response.total_sources == 0
        assert response.sources == []
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_narration_failure_uses_template(self, build_router, make_llm, seed_profile):
        """Test a failing LLM still yields a templated count."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(
            make_llm({
                LLMTaskType.QUICK: _intent("count_users"),
                LLMTaskType.REASONING: RuntimeError("model overloaded"),
            })
        )

        response = await router.answer("How many users?")

        assert response.answer == "Found 1 users matching your question."
        assert response.model_used is None


class TestFilters:
    """Test preset, parameter and request filter layering."""

    @pytest.mark.asyncio
    async def test_converted_users_use_conversion_prompt(self, build_router, make_llm, seed_profile):
        """Test find_converted_users keeps purchasers and ranks them with the conversion prompt."""
        await seed_profile("p-1", "shopper who purchased boots", ["$pageview", "purchase"])
        await seed_profile("p-2", "shopper who only browsed", ["$pageview"])
        llm = make_llm({LLMTaskType.QUICK: _intent("find_converted_users")})
        router = build_router(llm)

        response = await router.answer("Who converted this week?")

        assert response.metadata["answer_mode"] == "list"
        assert [s.person_id for s in response.sources] == ["p-1"]
        assert "most likely to convert" in llm.calls_for(LLMTaskType.REASONING)[0]["prompt"]

    @pytest.mark.asyncio
    async def test_cart_abandoners_exclude_converted(self, build_router, make_llm, seed_profile):
        """Test profiles with a conversion event are dropped after retrieval."""
        await seed_profile("p-1", "added shoes to cart then left", ["add_to_cart"])
        await seed_profile("p-2", "added socks to cart and bought them", ["add_to_cart", "purchase"])
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("find_cart_abandoners")}))

        response = await router.answer("Who abandoned their cart?")

        assert [s.person_id for s in response.sources] == ["p-1"]
        assert response.total_sources == 1

    @pytest.mark.asyncio
    async def test_parameter_filters_override_preset(self, build_router, make_llm, seed_profile):
        """Test parameters.filters wins over the preset on the same key."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        await seed_profile("p-2", "Android shopper", ["$pageview"], os="Android")
        router = build_router(
            make_llm({
                LLMTaskType.QUICK: _intent("find_ios_users", filters={"flattened_data.$os": "Android"})
            })
        )

        response = await router.answer("Show me phone users")

        assert [s.person_id for s in response.sources] == ["p-2"]

    @pytest.mark.asyncio
    async def test_request_filters_are_anded(self, build_router, make_llm, seed_profile, vector_store):
        """Test request filters add clauses on top of the intent filters."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"], vendor="vendor-1")
        await seed_profile("p-2", "iOS shopper too", ["$pageview"], vendor="vendor-2")
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("find_ios_users")}))

        response = await router.answer("Show me iOS users", filters={"vendor_id": "vendor-2"})

        assert [s.person_id for s in response.sources] == ["p-2"]
        keys = {c.key for c in _profile_searches(vector_store)[0]["filter"].must}
        assert keys == {"flattened_data.$os", "vendor_ids"}


class TestNonRetrieval:
    """Test ingest / help / general."""

    @pytest.mark.asyncio
    async def test_ingest_enqueues_discovery(self, build_router, make_llm, celery_stub, vector_store):
        """Test ingest_events with a batch size enqueues FIND_USERS."""
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("ingest_events", batch_size=10)}))

        response = await router.answer("Ingest events for 10 users")

        call = celery_stub.send_task.call_args
        assert call.args[0] == PosthogEventsJob.FIND_USERS
        assert call.kwargs["kwargs"] == {"batch_size": 10}
        assert "job-1" in response.answer
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_ingest_without_batch_size_guides(self, build_router, make_llm, celery_stub):
        """Test ingest_events without a batch size only explains usage."""
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("ingest_events")}))

        response = await router.answer("Ingest some events")

        celery_stub.send_task.assert_not_called()
        assert "batch size" in response.answer

    @pytest.mark.asyncio
    async def test_ingest_batch_size_is_capped(self, build_router, make_llm, celery_stub, settings):
        """Test oversized batch sizes are clamped to max_batch_size."""
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("ingest_events", batch_size=50000)}))

        await router.answer("Ingest everything")

        assert celery_stub.send_task.call_args.kwargs["kwargs"] == {"batch_size": settings.max_batch_size}

    @pytest.mark.asyncio
    async def test_help(self, build_router, make_llm, vector_store):
        """Test help returns the capability text and is not cached."""
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("help")}))

        response = await router.answer("What can you do?")

        assert response.answer == HELP_TEXT
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_general_uses_analytics_system_prompt(self, build_router, llm, vector_store):
        """Test general_query narrates with the analytics system prompt and is cached."""
        router = build_router(llm)

        response = await router.answer("What is a conversion funnel?")

        assert response.intent == "general_query"
        assert response.answer == "Narrated answer."
        assert llm.calls_for(LLMTaskType.REASONING)[0]["system_prompt"] == ANALYTICS_SYSTEM_PROMPT
        assert len(vector_store.payloads("query_cache")) == 1

    @pytest.mark.asyncio
    async def test_unparseable_intent_falls_back(self, build_router, make_llm):
        """Test garbage intent output becomes general_query at 0.5."""
        router = build_router(make_llm({LLMTaskType.QUICK: "I think they want a count"}))

        response = await router.answer("Tell me a story")

        assert response.intent == "general_query"
        assert response.confidence == 0.5


class TestCache:
    """Test the semantic answer cache."""

    @pytest.mark.asyncio
    async def test_repeat_question_hits_cache(self, build_router, llm):
        """Test an identical question is served from the cache without narration."""
        router = build_router(llm)

        first = await router.answer("What is a conversion funnel?")
        second = await router.answer("What is a conversion funnel?")

        assert first.cached is False
        assert second.cached is True
        assert second.intent == "cached"
        assert second.answer == first.answer
        assert second.metadata["answer_mode"] == "cache"
        assert len(llm.calls_for(LLMTaskType.REASONING)) == 1

    @pytest.mark.asyncio
    async def test_unrelated_question_misses(self, build_router, llm):
        """Test a dissimilar question goes through detection again."""
        router = build_router(llm)

        await router.answer("What is a conversion funnel?")
        second = await router.answer("Explain weekend refund trends")

        assert second.cached is False
        assert len(llm.calls_for(LLMTaskType.REASONING)) == 2

    @pytest.mark.asyncio
    async def test_cached_answer_can_be_rephrased(self, build_router, make_llm, settings):
        """Test the fast model rephrases cached answers when enabled."""

        def quick(prompt):
            return _intent("general_query") if "general_query" in prompt else "Rephrased answer."

        settings = settings.model_copy(update={"query_cache_improve_answers": True})
        router = build_router(make_llm({LLMTaskType.QUICK: quick}), settings=settings)

        await router.answer("What is a conversion funnel?")
        second = await router.answer("What is a conversion funnel?")

        assert second.cached is True
        assert second.answer == "Rephrased answer."
        assert second.model_used == settings.llm_fast_model

    @pytest.mark.asyncio
    async def test_cache_can_be_disabled(self, build_router, llm, settings, vector_store):
        """Test query_cache_enabled=False never reads or writes the cache."""
        settings = settings.model_copy(update={"query_cache_enabled": False})
        router = build_router(llm, settings=settings)

        await router.answer("What is a conversion funnel?")
        second = await router.answer("What is a conversion funnel?")

        assert second.cached is False
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_request_filters_bypass_cache(self, build_router, make_llm, seed_profile, vector_store):
        """Test the same question with different vendor filters is answered afresh each time."""
        for i in range(3):
            await seed_profile(f"a-{i}", f"vendor a shopper {i}", ["$pageview"], vendor="vendor-a")
        await seed_profile("b-0", "vendor b shopper", ["$pageview"], vendor="vendor-b")
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("count_users")}))

        first = await router.answer("How many users?", filters={"vendor_id": "vendor-a"})
        second = await router.answer("How many users?", filters={"vendor_id": "vendor-b"})

        assert first.total_sources == 3
        assert second.cached is False
        assert second.total_sources == 1
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_explicit_top_k_bypasses_cache(self, build_router, llm, vector_store):
        """Test an explicit top_k neither reads nor writes the cache."""
        router = build_router(llm)
        await router.answer("What is a conversion funnel?")

        response = await router.answer("What is a conversion funnel?", top_k=2)

        assert response.cached is False
        assert len(vector_store.payloads("query_cache")) == 1

    @pytest.mark.asyncio
    async def test_cache_lookup_failure_is_ignored(self, build_router, llm, embeddings):
        """Test an embedding outage skips the cache and still answers."""
        embeddings.fail = True
        router = build_router(llm)

        response = await router.answer("What is a conversion funnel?")

        assert response.answer == "Narrated answer."
        assert response.cached is False


class TestDegradation:
    """Test fallback paths."""

    @pytest.mark.asyncio
    async def test_question_too_long(self, build_router, llm, settings):
        """Test the pre-flight ceiling raises before any LLM call."""
        settings = settings.model_copy(update={"max_question_chars": 10})
        router = build_router(llm, settings=settings)

        with pytest.raises(PromptTooLongError):
            await router.answer("x" * 11)
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_strategy_failure_degrades_to_general(self, build_router, make_llm, vector_store):
        """Test a failing retrieval strategy is answered by general_query and not cached."""
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("find_ios_users")}))

        with patch.object(vector_store, "search", side_effect=RuntimeError("qdrant unreachable")):
            response = await router.answer("Show me iOS users")

        assert response.intent == "general_query"
        assert response.answer == "Narrated answer."
        assert response.metadata["method"] == "degraded:RuntimeError"
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_everything_failing_apologizes(self, build_router, make_llm, vector_store):
        """Test the apology is the last resort."""
        router = build_router(
            make_llm({
                LLMTaskType.QUICK: _intent("find_ios_users"),
                LLMTaskType.REASONING: RuntimeError("model overloaded"),
            })
        )

        with patch.object(vector_store, "search", side_effect=RuntimeError("qdrant unreachable")):
            response = await router.answer("Show me iOS users")

        assert response.answer == APOLOGY
        assert response.metadata["answer_mode"] == "fallback"

    @pytest.mark.asyncio
    async def test_general_failure_apologizes(self, build_router, make_llm):
        """Test a failing general_query goes straight to the apology."""
        router = build_router(make_llm({LLMTaskType.REASONING: RuntimeError("model overloaded")}))

        response = await router.answer("What is a conversion funnel?")

        assert response.answer == APOLOGY


class TestStreaming:
    """Test streamed answers."""

    @pytest.mark.asyncio
    async def test_stream_writes_to_sink(self, build_router, llm):
        """Test streamed general answers arrive in chunks and the call returns None."""
        router = build_router(llm)
        sink = BufferSink()

        result = await router.answer("What is a conversion funnel?", stream=True, sink=sink)

        assert result is None
        assert sink.text == "Narrated answer."
        assert len(sink.chunks) == 2

    @pytest.mark.asyncio
    async def test_stream_count_leads_with_number(self, build_router, make_llm, seed_profile):
        """Test streamed count answers emit the count line first."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(make_llm({LLMTaskType.QUICK: _intent("count_users")}))
        sink = BufferSink()

        await router.answer("How many users?", stream=True, sink=sink)

        assert sink.chunks[0] == "1 users match your question.\n\n"
        assert sink.text.endswith("Narrated answer.")

    @pytest.mark.asyncio
    async def test_stream_failure_before_first_chunk_degrades_cleanly(
        self, build_router, make_llm, seed_profile
    ):
        """Test nothing of the failed retrieval answer leaks ahead of the fallback."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(
            make_llm({
                LLMTaskType.QUICK: _intent("query_rag_with_filter"),
                LLMTaskType.REASONING: RuntimeError("model overloaded"),
            })
        )
        sink = BufferSink()

        await router.answer("What do iOS users do?", stream=True, sink=sink)

        assert sink.text == APOLOGY

    @pytest.mark.asyncio
    async def test_stream_failure_mid_answer_ends_with_notice(
        self, build_router, make_llm, seed_profile, vector_store
    ):
        """Test a half-streamed answer is closed with a notice and no second answer follows."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        llm = make_llm({LLMTaskType.QUICK: _intent("query_rag_with_filter")})
        scripted = llm.complete

        async def drops_mid_stream(prompt, task_type=LLMTaskType.STANDARD, stream=False, sink=None, **kwargs):
            if task_type == LLMTaskType.REASONING and stream:
                await sink.write("iOS users mostly")
                raise LLMUnavailableError("LLM stream failed: connection reset")
            return await scripted(prompt, task_type=task_type, stream=stream, sink=sink, **kwargs)

        llm.complete = drops_mid_stream
        router = build_router(llm)
        sink = BufferSink()

        await router.answer("What do iOS users do?", stream=True, sink=sink)

        assert sink.text == "Based on 1 matching users:\n\niOS users mostly" + STREAM_INTERRUPTED
        assert APOLOGY not in sink.text
        assert vector_store.payloads("query_cache") == []

    @pytest.mark.asyncio
    async def test_stream_list_fallback_has_one_header(self, build_router, make_llm, seed_profile):
        """Test the list template is streamed once when narration fails."""
        await seed_profile("p-1", "iOS shopper", ["$pageview"])
        router = build_router(
            make_llm({
                LLMTaskType.QUICK: _intent("find_ios_users"),
                LLMTaskType.REASONING: RuntimeError("model overloaded"),
            })
        )
        sink = BufferSink()

        await router.answer("Show me iOS users", stream=True, sink=sink)

        assert sink.text.startswith("1 users matched. Representative users:")
        assert sink.text.count("users matched") == 1

    @pytest.mark.asyncio
    async def test_stream_cache_hit(self, build_router, llm):
        """Test cached answers are written to the sink in one chunk."""
        router = build_router(llm)
        await router.answer("What is a conversion funnel?")
        sink = BufferSink()

        await router.answer("What is a conversion funnel?", stream=True, sink=sink)

        assert sink.chunks == ["Narrated answer."]

    @pytest.mark.asyncio
    async def test_stream_requires_sink(self, build_router, llm):
        """Test stream=True without a sink is rejected."""
        router = build_router(llm)

        with pytest.raises(ValueError):
            await router.answer("What is a conversion funnel?", stream=True)
