# ============================================================================
# eventsight/core/query/router.py
# ============================================================================
"""
Query Router - natural-language analytics questions to answers.

Flow for one question:
    1. Pre-flight: reject questions longer than ``max_question_chars``
       (the only error surfaced to callers)
    2. Embed the question and look it up in the semantic cache; a hit above
       the threshold short-circuits, optionally rephrased by the fast model.
       Requests carrying explicit filters or ``top_k`` bypass the cache
    3. Detect the intent (never fatal: falls back to ``general_query``)
    4. Dispatch to a strategy (retrieval / ingest / help / general)
    5. Cache the answer when the strategy produced a cacheable one

Any failure in steps 2-4 degrades: first to the ``general_query`` strategy,
then to a templated apology. A streamed answer that fails after its first
chunk is closed with a short notice instead. Buffered calls return a
``QueryResponse``; streamed calls write chunks to the sink and return None.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from eventsight.config import Settings
from eventsight.core.exceptions import PromptTooLongError, StreamInterruptedError
from eventsight.core.llm.llm_service import LLMService
from eventsight.core.llm.prompts import render_improve_prompt
from eventsight.core.llm.streaming import OutputSink
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.query.intents import Intent, IntentDetection, IntentDetector
from eventsight.core.query.schemas import QueryResponse, Source
from eventsight.core.query.strategies import QueryContext, ResponseStrategies, StrategyResult
from eventsight.core.search.embedding_service import EmbeddingService
from eventsight.core.search.query_cache import CachedAnswer, QueryCache

logger = logging.getLogger("eventsight.query.router")


class QueryRouter:
    def __init__(
        self,
        settings: Settings,
        llm: LLMService,
        embeddings: EmbeddingService,
        detector: IntentDetector,
        strategies: ResponseStrategies,
        cache: Optional[QueryCache] = None,
    ):
        self._settings = settings
        self._llm = llm
        self._embeddings = embeddings
        self._detector = detector
        self._strategies = strategies
        self._cache = cache if settings.query_cache_enabled else None

    def check_question(self, question: str) -> None:
        if len(question) > self._settings.max_question_chars:
            raise PromptTooLongError(len(question), self._settings.max_question_chars)

    async def answer(
        self,
        question: str,
        top_k: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
        stream: bool = False,
        sink: Optional[OutputSink] = None,
    ) -> Optional[QueryResponse]:
        """
        Answer one question.

        Raises:
            PromptTooLongError: question exceeds the configured ceiling
            ValueError: ``stream`` without a sink
        """
        self.check_question(question)
        if stream and sink is None:
            raise ValueError("stream=True requires an output sink")

        started = time.monotonic()
        ctx = QueryContext(
            question=question,
            detection=IntentDetection.fallback(method="not_detected"),
            top_k=top_k or self._settings.query_top_k,
            request_filters=dict(filters or {}),
            stream=stream,
            sink=sink,
        )
        # Cached answers are keyed by the question alone
        use_cache = not ctx.request_filters and top_k is None

        if use_cache:
            cached = await self._lookup_cache(ctx)
            if cached is not None:
                result = await self._serve_cached(ctx, cached)
                return self._respond(ctx, result, started, cached=True)

        try:
            ctx.detection = await self._detector.detect(question)
            result = await self._strategies.dispatch(ctx)
        except StreamInterruptedError as e:
            logger.warning("Streamed %s answer interrupted: %s", ctx.detection.intent.value, e.cause)
            result = await self._strategies.interrupted(ctx, e.partial)
        except Exception as e:
            logger.exception("Query strategy %s failed; degrading", ctx.detection.intent.value)
            result = await self._degrade(ctx, e)

        if use_cache and result.cacheable and result.answer:
            await self._store_cache(ctx, result)

        return self._respond(ctx, result, started, cached=False)

    # =========================================================================
    # CACHE
    # =========================================================================

    async def _question_vector(self, ctx: QueryContext) -> Optional[List[float]]:
        if ctx.question_vector is None:
            ctx.question_vector = await self._embeddings.embed(ctx.question)
        return ctx.question_vector

    async def _lookup_cache(self, ctx: QueryContext) -> Optional[CachedAnswer]:
        if self._cache is None:
            return None
        try:
            vector = await self._question_vector(ctx)
            return await self._cache.lookup(vector)
        except Exception as e:
            logger.warning("Query cache lookup failed: %s", e)
            return None

    async def _serve_cached(self, ctx: QueryContext, cached: CachedAnswer) -> StrategyResult:
        answer = cached.answer
        model = cached.model_used
        if self._settings.query_cache_improve_answers and self._llm.is_available:
            try:
                improved = await self._llm.complete(
                    render_improve_prompt(ctx.question, cached.original_question, cached.answer),
                    task_type=LLMTaskType.QUICK,
                )
                if improved:
                    answer = improved
                    model = self._settings.llm_fast_model
            except Exception as e:
                logger.warning("Cached answer rephrasing failed, serving it verbatim: %s", e)

        if ctx.stream and ctx.sink is not None:
            await ctx.sink.write(answer)
        return StrategyResult(
            answer=answer,
            answer_mode="cache",
            sources=list(cached.sources),
            total_sources=cached.total_sources,
            model_used=model,
            cacheable=False,
        )

    async def _store_cache(self, ctx: QueryContext, result: StrategyResult) -> None:
        if self._cache is None:
            return
        try:
            vector = await self._question_vector(ctx)
            await self._cache.store(
                ctx.question,
                vector,
                result.answer,
                result.sources,
                result.total_sources,
                result.model_used,
            )
        except Exception as e:
            logger.warning("Failed to cache answer: %s", e)

    # =========================================================================
    # DEGRADATION
    # =========================================================================

    async def _degrade(self, ctx: QueryContext, error: Exception) -> StrategyResult:
        if ctx.detection.intent != Intent.GENERAL_QUERY:
            ctx.detection = IntentDetection.fallback(method=f"degraded:{type(error).__name__}")
            try:
                result = await self._strategies.general(ctx)
                result.cacheable = False
                return result
            except StreamInterruptedError as e:
                return await self._strategies.interrupted(ctx, e.partial)
            except Exception as e:
                logger.warning("general_query fallback failed: %s", e)
        return await self._strategies.apology(ctx)

    # =========================================================================
    # RESPONSE
    # =========================================================================

    def _respond(
        self,
        ctx: QueryContext,
        result: StrategyResult,
        started: float,
        cached: bool,
    ) -> Optional[QueryResponse]:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Answered intent=%s mode=%s cached=%s sources=%d in %dms",
            ctx.detection.intent.value, result.answer_mode, cached, result.total_sources, elapsed_ms,
        )
        if ctx.stream:
            return None
        return QueryResponse(
            answer=result.answer,
            intent=ctx.detection.intent.value if not cached else "cached",
            confidence=ctx.detection.confidence if not cached else 1.0,
            sources=[Source(**s) for s in result.sources],
            total_sources=result.total_sources,
            cached=cached,
            model_used=result.model_used,
            metadata={
                "answer_mode": result.answer_mode,
                "search_time_ms": elapsed_ms,
                "filters": result.filters,
                "method": ctx.detection.method,
            },
        )
