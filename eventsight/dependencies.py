# eventsight/dependencies.py
"""
Service wiring and FastAPI dependency functions.

``build_container`` constructs every service once from an explicit
``Settings`` object. The API process keeps one container for its lifetime;
Celery tasks build a short-lived one per task (NullPool database, fresh
Qdrant client) because each task runs under its own event loop.

Key Dependencies:
    - get_container: the process-wide ServiceContainer
    - get_query_router / get_pipeline / get_ledger / get_event_store / get_vector_store

Usage:
    from fastapi import Depends
    from eventsight.dependencies import get_query_router

    @router.post("/query")
    async def query(req: QueryRequest, router: QueryRouter = Depends(get_query_router)):
        ...
"""

import logging
from dataclasses import dataclass
from typing import Optional

from celery import Celery
from fastapi import Depends

from eventsight.config import Settings
from eventsight.core.events.event_store import EventStore
from eventsight.core.ingestion.attempt_service import AttemptService
from eventsight.core.ingestion.pipeline import IngestionPipeline
from eventsight.core.llm.client import build_openai_client
from eventsight.core.llm.llm_service import LLMService
from eventsight.core.models.llm_models import LLMTaskConfig, LLMTaskType
from eventsight.core.query.intents import IntentDetector
from eventsight.core.query.router import QueryRouter
from eventsight.core.query.strategies import ResponseStrategies
from eventsight.core.queue.job_queue import JobQueue
from eventsight.core.search.embedding_service import EmbeddingService
from eventsight.core.search.query_cache import QueryCache
from eventsight.core.search.vector_store import QdrantVectorStore, VectorStore
from eventsight.core.shared.database_service import DatabaseService

logger = logging.getLogger("eventsight.dependencies")


@dataclass
class ServiceContainer:
    settings: Settings
    database: DatabaseService
    event_store: EventStore
    ledger: AttemptService
    llm: LLMService
    embeddings: EmbeddingService
    vector_store: VectorStore
    job_queue: JobQueue
    pipeline: IngestionPipeline
    router: QueryRouter

    async def close(self) -> None:
        await self.database.close()
        close = getattr(self.vector_store, "close", None)
        if close is not None:
            await close()


def task_configs(settings: Settings) -> dict:
    base = dict(temperature=settings.llm_temperature, max_tokens=settings.llm_max_tokens)
    return {
        LLMTaskType.STANDARD: LLMTaskConfig(model=settings.llm_model, **base),
        LLMTaskType.SUMMARY: LLMTaskConfig(model=settings.llm_summary_model, **base),
        LLMTaskType.REASONING: LLMTaskConfig(model=settings.llm_reasoning_model, **base),
        LLMTaskType.QUICK: LLMTaskConfig(model=settings.llm_fast_model, temperature=0.0, max_tokens=1024),
    }


def build_container(
    settings: Settings,
    celery_app: Optional[Celery] = None,
    use_null_pool: bool = False,
    database: Optional[DatabaseService] = None,
    vector_store: Optional[VectorStore] = None,
    llm: Optional[LLMService] = None,
    embeddings: Optional[EmbeddingService] = None,
    job_queue: Optional[JobQueue] = None,
) -> ServiceContainer:
    """Wire every service from ``settings``. Keyword overrides replace individual collaborators."""
    if database is None:
        database = DatabaseService(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            use_null_pool=use_null_pool,
            echo=settings.debug,
        )

    if llm is None or embeddings is None:
        client = build_openai_client(
            settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout,
            max_retries=settings.openai_max_retries,
            verify_ssl=settings.openai_verify_ssl,
        )
        if llm is None:
            llm = LLMService(
                client,
                task_configs(settings),
                max_prompt_chars=settings.llm_max_prompt_chars,
                base_url=settings.openai_base_url,
            )
        if embeddings is None:
            embeddings = EmbeddingService(
                client, model=settings.embedding_model, embedding_dim=settings.embedding_dim
            )

    if vector_store is None:
        vector_store = QdrantVectorStore(
            settings.qdrant_url,
            vector_size=settings.embedding_dim,
            api_key=settings.qdrant_api_key,
            timeout=settings.qdrant_timeout,
        )

    if job_queue is None:
        if celery_app is None:
            from eventsight.celery_app import app as celery_app
        job_queue = JobQueue(celery_app)

    event_store = EventStore(
        database,
        window_days=settings.discovery_window_days,
        max_events_per_user=settings.max_events_per_user,
    )
    ledger = AttemptService(database, max_retries=settings.retry_max_attempts)
    pipeline = IngestionPipeline(
        settings, event_store, ledger, llm, embeddings, vector_store, job_queue
    )
    router = QueryRouter(
        settings,
        llm,
        embeddings,
        IntentDetector(llm),
        ResponseStrategies(settings, llm, embeddings, vector_store, job_queue),
        cache=QueryCache(
            vector_store, settings.query_cache_collection, threshold=settings.query_cache_threshold
        ),
    )
    return ServiceContainer(
        settings=settings,
        database=database,
        event_store=event_store,
        ledger=ledger,
        llm=llm,
        embeddings=embeddings,
        vector_store=vector_store,
        job_queue=job_queue,
        pipeline=pipeline,
        router=router,
    )


# =========================================================================
# FASTAPI DEPENDENCIES
# =========================================================================

_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        from eventsight.config import settings

        _container = build_container(settings)
        logger.info("Service container initialized")
    return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    """Install a prebuilt container (tests, embedded use)."""
    global _container
    _container = container


def get_query_router(container: ServiceContainer = Depends(get_container)) -> QueryRouter:
    return container.router


def get_pipeline(container: ServiceContainer = Depends(get_container)) -> IngestionPipeline:
    return container.pipeline


def get_ledger(container: ServiceContainer = Depends(get_container)) -> AttemptService:
    return container.ledger


def get_event_store(container: ServiceContainer = Depends(get_container)) -> EventStore:
    return container.event_store


def get_vector_store(container: ServiceContainer = Depends(get_container)) -> VectorStore:
    return container.vector_store
