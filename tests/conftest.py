import hashlib
import math
import os
import re
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import MagicMock

# Environment defaults before importing eventsight modules.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import pytest
import pytest_asyncio
from qdrant_client import models as qdrant_models

from eventsight.config import Settings
from eventsight.core.database.models import PosthogEvent, RawEvent
from eventsight.core.events.event_store import EventStore
from eventsight.core.exceptions import (
    EmbeddingGenerationError,
    LLMUnavailableError,
    VectorStoreUpsertError,
)
from eventsight.core.ingestion.attempt_service import AttemptService
from eventsight.core.models.llm_models import LLMTaskType
from eventsight.core.queue.job_queue import JobQueue
from eventsight.core.search.vector_store import SearchHit, VectorStore
from eventsight.core.shared.database_service import DatabaseService
from eventsight.core.utils.time_utils import parse_timestamp, utc_now

TEST_DIM = 256


# =========================================================================
# FAKES
# =========================================================================


class FakeEmbeddings:
    """Bag-of-words hashing embedder: identical text gives identical vectors."""

    def __init__(self, dim: int = TEST_DIM):
        self.embedding_dim = dim
        self.fail = False
        self.calls: List[str] = []

    def vector_for(self, text: str) -> List[float]:
        vector = [0.0] * self.embedding_dim
        for token in re.findall(r"[a-z0-9$]+", text.lower()):
            index = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.embedding_dim
            vector[index] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingGenerationError("Embedding generation failed: provider down")
        return self.vector_for(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


class ScriptedLLM:
    """
    Stand-in for LLMService.

    ``replies`` maps a task type to a string, an exception instance, or a
    callable taking the prompt.
    """

    def __init__(self, replies: Optional[Dict[LLMTaskType, Any]] = None, available: bool = True):
        self.replies: Dict[LLMTaskType, Any] = {
            LLMTaskType.QUICK: '{"intent": "general_query", "confidence": 0.9}',
            LLMTaskType.SUMMARY: '{"summary": "Shopper browsed products and added items to the cart."}',
            LLMTaskType.REASONING: "Narrated answer.",
            LLMTaskType.STANDARD: "ok",
        }
        self.replies.update(replies or {})
        self.available = available
        self.calls: List[Dict[str, Any]] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def complete(
        self,
        prompt: str,
        task_type: LLMTaskType = LLMTaskType.STANDARD,
        model: Optional[str] = None,
        stream: bool = False,
        sink=None,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Optional[str]:
        self.calls.append(
            {"prompt": prompt, "task_type": task_type, "stream": stream, "system_prompt": system_prompt}
        )
        if not self.available:
            raise LLMUnavailableError("LLM client not available")
        reply = self.replies.get(task_type, "")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        if stream:
            half = len(reply) // 2
            for chunk in (reply[:half], reply[half:]):
                if chunk:
                    await sink.write(chunk)
            return None
        return reply

    def calls_for(self, task_type: LLMTaskType) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["task_type"] == task_type]


def _payload_value(payload: Dict[str, Any], key: str) -> Any:
    value: Any = payload
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _in_range(value: Any, rng) -> bool:
    if isinstance(rng, qdrant_models.DatetimeRange):
        value = parse_timestamp(value)
        bounds = {k: parse_timestamp(getattr(rng, k)) for k in ("gt", "gte", "lt", "lte")}
    else:
        bounds = {k: getattr(rng, k) for k in ("gt", "gte", "lt", "lte")}
    if value is None:
        return False
    if bounds["gt"] is not None and not value > bounds["gt"]:
        return False
    if bounds["gte"] is not None and not value >= bounds["gte"]:
        return False
    if bounds["lt"] is not None and not value < bounds["lt"]:
        return False
    if bounds["lte"] is not None and not value <= bounds["lte"]:
        return False
    return True


def _matches(payload: Dict[str, Any], condition: qdrant_models.FieldCondition) -> bool:
    value = _payload_value(payload, condition.key)
    values = value if isinstance(value, list) else [value]
    if condition.range is not None:
        return any(_in_range(v, condition.range) for v in values)
    match = condition.match
    if isinstance(match, qdrant_models.MatchValue):
        return match.value in values
    if isinstance(match, qdrant_models.MatchAny):
        return any(v in match.any for v in values)
    raise AssertionError(f"unsupported condition {condition!r}")


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorStore(VectorStore):
    """Cosine search over dict-held points, honoring ``Filter.must`` clauses."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.failing_collections = set()
        self.searches: List[Dict[str, Any]] = []

    async def ensure_collections(self, names):
        for name in names:
            self.collections.setdefault(name, {})

    async def upsert(self, collection, point_id, vector, payload):
        if collection in self.failing_collections:
            raise VectorStoreUpsertError(f"Qdrant upsert failed: {collection} unavailable")
        self.collections.setdefault(collection, {})[str(point_id)] = {
            "vector": list(vector),
            "payload": dict(payload),
        }

    async def search(self, collection, vector, top, query_filter=None, with_payload=True, with_vectors=False):
        self.searches.append({"collection": collection, "top": top, "filter": query_filter})
        hits = []
        for point_id, point in self.collections.get(collection, {}).items():
            must = (query_filter.must or []) if query_filter is not None else []
            if all(_matches(point["payload"], c) for c in must):
                hits.append(
                    SearchHit(
                        id=point_id,
                        score=_cosine(vector, point["vector"]),
                        payload=dict(point["payload"]),
                        vector=point["vector"] if with_vectors else None,
                    )
                )
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top]

    async def count(self, collection):
        return len(self.collections.get(collection, {}))

    async def get_collections(self):
        return list(self.collections)

    async def health(self):
        return {"status": "healthy", "collections": list(self.collections)}

    def payloads(self, collection: str) -> List[Dict[str, Any]]:
        return [p["payload"] for p in self.collections.get(collection, {}).values()]


# =========================================================================
# FIXTURES
# =========================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        openai_api_key=None,
        embedding_dim=TEST_DIM,
        process_user_spacing_ms=1000,
        default_batch_size=3,
        list_display_limit=3,
        query_top_k=5,
    )


@pytest_asyncio.fixture
async def database():
    db = DatabaseService("sqlite+aiosqlite:///:memory:")
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
def ledger(database) -> AttemptService:
    return AttemptService(database, max_retries=3)


@pytest.fixture
def event_store(database) -> EventStore:
    return EventStore(database, window_days=7, max_events_per_user=30)


@pytest.fixture
def embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def make_llm():
    """ScriptedLLM class, for tests that script their own replies."""
    return ScriptedLLM


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def celery_stub() -> MagicMock:
    """Celery app whose ``send_task`` hands back numbered results."""
    app = MagicMock()
    counter = {"n": 0}

    def _send_task(name, **kwargs):
        counter["n"] += 1
        return MagicMock(id=f"job-{counter['n']}")

    app.send_task.side_effect = _send_task
    return app


@pytest.fixture
def job_queue(celery_stub) -> JobQueue:
    return JobQueue(celery_stub)


@pytest.fixture
def make_event() -> Callable[..., PosthogEvent]:
    """Factory for PostHog events; eligible for discovery unless told otherwise."""

    def _make(
        person_id: str = "person-1",
        event: str = "$pageview",
        minutes_ago: float = 60,
        email: Optional[str] = "shopper@example.com",
        vendor_id: Optional[str] = "vendor-1",
        properties: Optional[Dict[str, Any]] = None,
        ingested: bool = False,
        shop_domain: str = "demo-shop.myshopify.com",
    ) -> PosthogEvent:
        at = utc_now() - timedelta(minutes=minutes_ago)
        person_properties = {"email": email, "name": "Shopper"} if email is not None else {"name": "Shopper"}
        return PosthogEvent(
            id=uuid.uuid4(),
            event=event,
            properties=properties if properties is not None else {"$os": "iOS", "$device_type": "Mobile"},
            person_properties=person_properties,
            distinct_id=person_id,
            person_id=person_id,
            uuid=str(uuid.uuid4()),
            timestamp=at,
            created_at=at,
            vendor_id=vendor_id,
            shop_domain=shop_domain,
            ingested_at=utc_now() if ingested else None,
        )

    return _make


@pytest.fixture
def add_rows(database):
    async def _add(*rows):
        async with database.get_session() as session:
            session.add_all(rows)
        return rows

    return _add


@pytest.fixture
def make_raw_event() -> Callable[..., RawEvent]:
    def _make(user_id: str = "user-1", event_type: str = "login", minutes_ago: float = 5) -> RawEvent:
        return RawEvent(
            id=uuid.uuid4(),
            user_id=user_id,
            event_type=event_type,
            event_data={"source": "web"},
            event_timestamp=utc_now() - timedelta(minutes=minutes_ago),
        )

    return _make
