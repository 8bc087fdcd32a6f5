"""
Response strategies dispatched by the query router.

Every strategy works in two modes. Buffered: the answer comes back in the
``StrategyResult``. Streamed: text is written to ``ctx.sink`` as it is
produced and the result still carries the full text for caching.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eventsight.config import Settings
from eventsight.core.exceptions import StreamInterruptedError
from eventsight.core.llm.llm_service import LLMService
from eventsight.core.llm.prompts import (
    ANALYTICS_SYSTEM_PROMPT,
    format_profiles,
    render_count_prompt,
    render_data_analysis_prompt,
    render_list_prompt,
    render_rag_prompt,
)
from eventsight.core.llm.streaming import OutputSink, PrefixedSink
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.query.intents import Intent, IntentDetection
from eventsight.core.query.presets import INTENT_PRESETS, answer_mode
from eventsight.core.queue.constants import POSTHOG_EVENTS_QUEUE, PosthogEventsJob
from eventsight.core.queue.job_queue import JobQueue
from eventsight.core.search.embedding_service import EmbeddingService
from eventsight.core.search.filters import build_filter, merge_filters
from eventsight.core.search.vector_store import SearchHit, VectorStore

logger = logging.getLogger("eventsight.query.strategies")

NO_USERS_FOUND = "No users found matching your criteria. Try broadening the question or removing filters."

HELP_TEXT = """I answer questions about your users' behavior, built from PostHog events.

You can ask me to:
- Count users: "How many users abandoned their cart this week?"
- List or describe users: "Show me iOS users in Germany"
- Find segments: mobile, desktop, iOS, Android, active, inactive, cart abandoners, converted users
- Filter by vendor, shop domain, event types or a time range
- Start ingestion: "Ingest events for the next 50 users"

Answers are based on per-user behavioral profiles, refreshed as new events are ingested."""

INGEST_GUIDANCE = (
    "I can start ingesting new events. Tell me how many users to process, "
    "for example: \"ingest events with batch size 10\" (1 to {max_batch})."
)

APOLOGY = (
    "Sorry, I couldn't produce an answer to that right now. "
    "Please try rephrasing the question or ask again in a moment."
)

STREAM_INTERRUPTED = "\n\n[The answer was interrupted. Please ask again in a moment.]"


@dataclass
class QueryContext:
    question: str
    detection: IntentDetection
    top_k: int
    request_filters: Dict[str, Any] = field(default_factory=dict)
    question_vector: Optional[List[float]] = None
    stream: bool = False
    sink: Optional[OutputSink] = None


@dataclass
class StrategyResult:
    answer: str
    answer_mode: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    total_sources: int = 0
    model_used: Optional[str] = None
    cacheable: bool = True
    filters: Dict[str, Any] = field(default_factory=dict)


def _source(hit: SearchHit, summary_chars: int = 300) -> Dict[str, Any]:
    summary = hit.payload.get("summary") or ""
    if len(summary) > summary_chars:
        summary = summary[:summary_chars] + "..."
    return {
        "person_id": hit.payload.get("person_id") or hit.id,
        "score": hit.score,
        "event_count": hit.payload.get("event_count"),
        "event_types": hit.payload.get("event_types") or [],
        "summary": summary,
    }


def distinct_person_count(hits: List[SearchHit]) -> int:
    return len({hit.payload.get("person_id") or hit.id for hit in hits})


class ResponseStrategies:
    def __init__(
        self,
        settings: Settings,
        llm: LLMService,
        embeddings: EmbeddingService,
        vector_store: VectorStore,
        job_queue: JobQueue,
    ):
        self._settings = settings
        self._llm = llm
        self._embeddings = embeddings
        self._vectors = vector_store
        self._queue = job_queue

    # =========================================================================
    # OUTPUT HELPERS
    # =========================================================================

    async def _emit(self, ctx: QueryContext, text: str) -> str:
        if ctx.stream and ctx.sink is not None:
            await ctx.sink.write(text)
        return text

    async def _narrate(
        self,
        ctx: QueryContext,
        prompt: str,
        system_prompt: Optional[str] = None,
        prefix: str = "",
    ) -> str:
        """
        LLM text for ``prompt``, streamed to the sink after ``prefix`` when streaming.

        The prefix is held back until the model produces its first chunk. A
        failure after that point raises ``StreamInterruptedError``.
        """
        if ctx.stream and ctx.sink is not None:
            tee = PrefixedSink(ctx.sink, prefix)
            try:
                await self._llm.complete(
                    prompt,
                    task_type=LLMTaskType.REASONING,
                    stream=True,
                    sink=tee,
                    system_prompt=system_prompt,
                )
            except Exception as e:
                if tee.started:
                    raise StreamInterruptedError(tee.text, e) from e
                raise
            await tee.flush_prefix()
            return tee.text
        text = await self._llm.complete(
            prompt, task_type=LLMTaskType.REASONING, system_prompt=system_prompt
        )
        return prefix + (text or "")

    @property
    def _reasoning_model(self) -> str:
        return self._settings.llm_reasoning_model

    # =========================================================================
    # RETRIEVAL (count / list / find_* / query_rag_with_filter / default)
    # =========================================================================

    def resolve_filters(self, ctx: QueryContext) -> Dict[str, Any]:
        params = ctx.detection.parameters
        preset = INTENT_PRESETS.get(ctx.detection.intent)
        preset_filters = preset.filters(params, self._settings) if preset else {}
        param_filters = params.get("filters") if isinstance(params.get("filters"), dict) else {}
        return merge_filters(preset_filters, param_filters, ctx.request_filters)

    def _search_phrase(self, ctx: QueryContext) -> str:
        params = ctx.detection.parameters
        if params.get("search_query"):
            return str(params["search_query"])
        preset = INTENT_PRESETS.get(ctx.detection.intent)
        if preset and preset.phrase:
            return preset.phrase(params)
        return ctx.question

    async def retrieve(self, ctx: QueryContext) -> StrategyResult:
        mode = answer_mode(ctx.detection.intent, ctx.detection.parameters)
        preset = INTENT_PRESETS.get(ctx.detection.intent)
        filters = self.resolve_filters(ctx)
        query_filter = build_filter(filters)

        phrase = self._search_phrase(ctx)
        if phrase == ctx.question and ctx.question_vector is not None:
            vector = ctx.question_vector
        else:
            vector = await self._embeddings.embed(phrase)

        limit = self._settings.count_search_limit if mode == "count" else ctx.top_k
        hits = await self._vectors.search(
            self._settings.profiles_collection, vector, top=limit, query_filter=query_filter
        )
        if preset and preset.post_filter:
            hits = preset.post_filter(hits)

        logger.info(
            "Retrieval intent=%s mode=%s filters=%s hits=%d",
            ctx.detection.intent.value, mode, list(filters), len(hits),
        )

        if not hits:
            answer = await self._emit(ctx, NO_USERS_FOUND)
            return StrategyResult(
                answer=answer, answer_mode=mode, total_sources=0, cacheable=False, filters=filters
            )

        if mode == "count":
            return await self._count_answer(ctx, hits, filters)
        if mode == "list":
            return await self._list_answer(ctx, hits, filters, conversion=bool(preset and preset.conversion_analysis))
        return await self._rag_answer(ctx, hits, filters)

    async def _count_answer(
        self, ctx: QueryContext, hits: List[SearchHit], filters: Dict[str, Any]
    ) -> StrategyResult:
        count = distinct_person_count(hits)
        display = hits[: self._settings.list_display_limit]
        sample = format_profiles([h.payload for h in display], summary_chars=200)
        prefix = f"{count} users match your question.\n\n" if ctx.stream else ""

        try:
            answer = await self._narrate(ctx, render_count_prompt(ctx.question, count, sample), prefix=prefix)
            if str(count) not in answer:
                answer = f"{count} users match your question. {answer}"
            model = self._reasoning_model
        except StreamInterruptedError:
            raise
        except Exception as e:
            logger.warning("Count narration failed, using template: %s", e)
            answer = await self._emit(ctx, f"Found {count} users matching your question.")
            model = None

        return StrategyResult(
            answer=answer,
            answer_mode="count",
            sources=[_source(h) for h in display],
            total_sources=count,
            model_used=model,
            filters=filters,
        )

    async def _list_answer(
        self,
        ctx: QueryContext,
        hits: List[SearchHit],
        filters: Dict[str, Any],
        conversion: bool = False,
    ) -> StrategyResult:
        total = distinct_person_count(hits)
        display = hits[: self._settings.list_display_limit]
        profiles = format_profiles([h.payload for h in display])

        if conversion:
            prompt = render_data_analysis_prompt(
                ctx.question, format_profiles([h.payload for h in hits]), total,
                top_n=self._settings.list_display_limit,
            )
        else:
            prompt = render_list_prompt(ctx.question, total, profiles)

        prefix = f"{total} users matched.\n\n" if ctx.stream else ""
        try:
            answer = await self._narrate(ctx, prompt, prefix=prefix)
            if str(total) not in answer:
                answer = f"{total} users matched. {answer}"
            model = self._reasoning_model
        except StreamInterruptedError:
            raise
        except Exception as e:
            logger.warning("List narration failed, using template: %s", e)
            answer = await self._emit(ctx, self._list_template(total, display))
            model = None

        return StrategyResult(
            answer=answer,
            answer_mode="list",
            sources=[_source(h) for h in display],
            total_sources=total,
            model_used=model,
            filters=filters,
        )

    @staticmethod
    def _list_template(total: int, display: List[SearchHit]) -> str:
        lines = [f"{total} users matched. Representative users:"]
        for index, hit in enumerate(display, start=1):
            payload = hit.payload
            types = ", ".join((payload.get("event_types") or [])[:5])
            lines.append(
                f"{index}. {payload.get('event_count', 0)} events over {payload.get('time_span', 'unknown')}"
                + (f" ({types})" if types else "")
            )
        return "\n".join(lines)

    async def _rag_answer(
        self, ctx: QueryContext, hits: List[SearchHit], filters: Dict[str, Any]
    ) -> StrategyResult:
        total = distinct_person_count(hits)
        profiles = format_profiles([h.payload for h in hits])
        prefix = f"Based on {total} matching users:\n\n" if ctx.stream else ""
        answer = await self._narrate(ctx, render_rag_prompt(ctx.question, total, profiles), prefix=prefix)
        if str(total) not in answer:
            answer = f"Based on {total} matching users: {answer}"
        return StrategyResult(
            answer=answer,
            answer_mode="rag",
            sources=[_source(h) for h in hits],
            total_sources=total,
            model_used=self._reasoning_model,
            filters=filters,
        )

    # =========================================================================
    # NON-RETRIEVAL
    # =========================================================================

    async def ingest(self, ctx: QueryContext) -> StrategyResult:
        raw = ctx.detection.parameters.get("batch_size")
        try:
            batch_size = int(raw) if raw is not None else None
        except (TypeError, ValueError):
            batch_size = None

        if not batch_size or batch_size < 1:
            text = INGEST_GUIDANCE.format(max_batch=self._settings.max_batch_size)
            answer = await self._emit(ctx, text)
            return StrategyResult(answer=answer, answer_mode="ingest", cacheable=False)

        batch_size = min(batch_size, self._settings.max_batch_size)
        job = self._queue.enqueue(
            POSTHOG_EVENTS_QUEUE, PosthogEventsJob.FIND_USERS, {"batch_size": batch_size}
        )
        text = (
            f"Started ingestion for up to {batch_size} users with pending events "
            f"(job {job.job_id}). Profiles will be searchable once processing finishes."
        )
        answer = await self._emit(ctx, text)
        return StrategyResult(answer=answer, answer_mode="ingest", cacheable=False)

    async def help(self, ctx: QueryContext) -> StrategyResult:
        answer = await self._emit(ctx, HELP_TEXT)
        return StrategyResult(answer=answer, answer_mode="help", cacheable=False)

    async def general(self, ctx: QueryContext) -> StrategyResult:
        answer = await self._narrate(ctx, ctx.question, system_prompt=ANALYTICS_SYSTEM_PROMPT)
        return StrategyResult(answer=answer, answer_mode="general", model_used=self._reasoning_model)

    async def apology(self, ctx: QueryContext) -> StrategyResult:
        answer = await self._emit(ctx, APOLOGY)
        return StrategyResult(answer=answer, answer_mode="fallback", cacheable=False)

    async def interrupted(self, ctx: QueryContext, partial: str) -> StrategyResult:
        """Close a half-streamed answer with a notice instead of starting a new one."""
        notice = await self._emit(ctx, STREAM_INTERRUPTED)
        return StrategyResult(answer=partial + notice, answer_mode="interrupted", cacheable=False)

    async def dispatch(self, ctx: QueryContext) -> StrategyResult:
        intent = ctx.detection.intent
        if intent == Intent.INGEST_EVENTS:
            return await self.ingest(ctx)
        if intent == Intent.HELP:
            return await self.help(ctx)
        if intent == Intent.GENERAL_QUERY:
            return await self.general(ctx)
        return await self.retrieve(ctx)
