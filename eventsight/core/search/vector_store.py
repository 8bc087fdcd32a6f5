"""
Vector store adapter ABC and the Qdrant implementation.

Three collections are used, all cosine distance with the embedding
provider's dimensionality:
    - raw events (one point per legacy event)
    - user profiles (one point per person)
    - query cache (one point per answered question)

``ensure_collections`` is called at startup; a failure there is fatal.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from qdrant_client import AsyncQdrantClient
from qdrant_client import models as qdrant_models

from eventsight.core.exceptions import VectorStoreUnavailableError, VectorStoreUpsertError

logger = logging.getLogger("eventsight.vector_store")

PointId = Union[str, int]

# Fixed namespace so the same person_id always maps to the same point id
POINT_ID_NAMESPACE = uuid.UUID("6f1c2a52-5c8e-4d53-9a57-2f7e1a0c9b11")


def point_id_for(key: str) -> str:
    """Qdrant ids must be UUIDs or integers; other keys map to a stable uuid5."""
    try:
        return str(uuid.UUID(str(key)))
    except ValueError:
        return str(uuid.uuid5(POINT_ID_NAMESPACE, str(key)))


@dataclass
class SearchHit:
    """Point returned from a similarity search."""

    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)
    vector: Optional[List[float]] = None


class VectorStore(ABC):
    """Narrow contract the pipeline and the router depend on."""

    @abstractmethod
    async def ensure_collections(self, names: Sequence[str]) -> None:
        """Create missing collections. Raises VectorStoreUnavailableError on failure."""

    @abstractmethod
    async def upsert(
        self,
        collection: str,
        point_id: PointId,
        vector: List[float],
        payload: Dict[str, Any],
    ) -> None:
        """Insert or overwrite one point. Raises VectorStoreUpsertError on failure."""

    @abstractmethod
    async def search(
        self,
        collection: str,
        vector: List[float],
        top: int,
        query_filter: Optional[qdrant_models.Filter] = None,
        with_payload: bool = True,
        with_vectors: bool = False,
    ) -> List[SearchHit]:
        """Nearest neighbours, best first."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Number of points in a collection."""

    @abstractmethod
    async def get_collections(self) -> List[str]:
        """Names of existing collections."""

    @abstractmethod
    async def health(self) -> Dict[str, Any]:
        """{"status": "healthy" | "unhealthy", ...}"""


class QdrantVectorStore(VectorStore):
    def __init__(
        self,
        url: str,
        vector_size: int,
        api_key: Optional[str] = None,
        timeout: int = 30,
        client: Optional[AsyncQdrantClient] = None,
    ):
        self._url = url
        self.vector_size = vector_size
        self._client = client or AsyncQdrantClient(url=url, api_key=api_key, timeout=timeout)

    async def ensure_collections(self, names: Sequence[str]) -> None:
        try:
            response = await self._client.get_collections()
            existing = {collection.name for collection in response.collections}
            for name in names:
                if name in existing:
                    continue
                logger.info("Creating Qdrant collection '%s' with %dd vectors", name, self.vector_size)
                await self._client.create_collection(
                    collection_name=name,
                    vectors_config=qdrant_models.VectorParams(
                        size=self.vector_size, distance=qdrant_models.Distance.COSINE
                    ),
                )
        except Exception as e:
            logger.exception("Failed to ensure Qdrant collections at %s", self._url)
            raise VectorStoreUnavailableError(f"Qdrant collections unavailable: {e}") from e

    async def upsert(
        self,
        collection: str,
        point_id: PointId,
        vector: List[float],
        payload: Dict[str, Any],
    ) -> None:
        try:
            await self._client.upsert(
                collection_name=collection,
                points=[qdrant_models.PointStruct(id=point_id, vector=vector, payload=payload)],
                wait=True,
            )
        except Exception as e:
            logger.error("Qdrant upsert into '%s' failed for %s: %s", collection, point_id, e)
            raise VectorStoreUpsertError(f"Qdrant upsert failed: {e}") from e

    async def search(
        self,
        collection: str,
        vector: List[float],
        top: int,
        query_filter: Optional[qdrant_models.Filter] = None,
        with_payload: bool = True,
        with_vectors: bool = False,
    ) -> List[SearchHit]:
        response = await self._client.query_points(
            collection_name=collection,
            query=vector,
            limit=top,
            query_filter=query_filter,
            with_payload=with_payload,
            with_vectors=with_vectors,
        )
        return [
            SearchHit(
                id=str(point.id),
                score=point.score,
                payload=dict(point.payload or {}),
                vector=point.vector if with_vectors else None,
            )
            for point in response.points
        ]

    async def count(self, collection: str) -> int:
        result = await self._client.count(collection_name=collection, exact=True)
        return result.count

    async def get_collections(self) -> List[str]:
        response = await self._client.get_collections()
        return [collection.name for collection in response.collections]

    async def health(self) -> Dict[str, Any]:
        try:
            names = await self.get_collections()
            return {"status": "healthy", "url": self._url, "collections": names}
        except Exception as e:
            logger.error("Qdrant health check failed: %s", e)
            return {"status": "unhealthy", "url": self._url, "error": str(e)}

    async def close(self) -> None:
        await self._client.close()
