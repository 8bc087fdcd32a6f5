"""
Semantic answer cache.

Answered questions are stored in a dedicated collection, embedded by their
question text. A new question whose nearest cached neighbour scores above the
threshold reuses that answer. Entries are never evicted.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from eventsight.core.search.vector_store import VectorStore
from eventsight.core.utils.time_utils import utc_now

logger = logging.getLogger("eventsight.search.query_cache")


@dataclass
class CachedAnswer:
    original_question: str
    answer: str
    score: float
    sources: List[Dict[str, Any]] = field(default_factory=list)
    total_sources: int = 0
    model_used: Optional[str] = None
    cached_at: Optional[str] = None


class QueryCache:
    def __init__(self, vector_store: VectorStore, collection: str, threshold: float = 0.85):
        self._store = vector_store
        self.collection = collection
        self.threshold = threshold

    async def lookup(self, question_vector: List[float]) -> Optional[CachedAnswer]:
        """Nearest cached question, if its similarity is strictly above the threshold."""
        hits = await self._store.search(self.collection, question_vector, top=1)
        if not hits:
            return None
        best = hits[0]
        if best.score <= self.threshold:
            logger.debug("Cache miss (best score %.3f <= %.2f)", best.score, self.threshold)
            return None

        payload = best.payload
        logger.info("Cache hit (score %.3f) for '%s'", best.score, payload.get("original_question"))
        return CachedAnswer(
            original_question=payload.get("original_question", ""),
            answer=payload.get("answer", ""),
            score=best.score,
            sources=payload.get("sources") or [],
            total_sources=payload.get("total_sources", 0),
            model_used=payload.get("model_used"),
            cached_at=payload.get("cached_at"),
        )

    async def store(
        self,
        question: str,
        question_vector: List[float],
        answer: str,
        sources: List[Dict[str, Any]],
        total_sources: int,
        model_used: Optional[str],
    ) -> str:
        point_id = str(uuid.uuid4())
        await self._store.upsert(
            self.collection,
            point_id,
            question_vector,
            {
                "original_question": question,
                "answer": answer,
                "sources": sources,
                "total_sources": total_sources,
                "model_used": model_used,
                "cached_at": utc_now().isoformat(),
                "embedding_size": len(question_vector),
            },
        )
        return point_id
