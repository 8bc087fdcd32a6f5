# ============================================================================
# eventsight/core/search/embedding_service.py
# ============================================================================
"""
Embedding Service for Eventsight - OpenAI API Embeddings

Turns profile summaries, raw events and questions into fixed-length vectors.

Usage:
    embedding = await embedding_service.embed("User browsed 3 products...")
    embeddings = await embedding_service.embed_batch(["text 1", "text 2"])

Rate-limit errors are retried with exponential backoff. Any other failure is
raised as ``EmbeddingGenerationError`` so callers can record it; no zero-vector
is ever substituted for a failed embedding.
"""

import asyncio
import logging
import re
import time
from typing import List, Optional

from openai import OpenAI

from eventsight.core.exceptions import EmbeddingGenerationError

logger = logging.getLogger("eventsight.embedding_service")

# Rate limit handling constants
MAX_RETRIES = 5
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 10.0
BACKOFF_MULTIPLIER = 2.0

# ~4 chars per token keeps single inputs under the 8191 token limit
MAX_INPUT_CHARS = 30000
BATCH_SIZE = 50

# Known embedding dimensions for common models
EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingService:
    """
    OpenAI API-based embedding generation.

    The OpenAI sync client runs in the default executor.
    """

    def __init__(
        self,
        client: Optional[OpenAI],
        model: str = "text-embedding-3-small",
        embedding_dim: Optional[int] = None,
    ):
        self._client = client
        self.model_name = model
        self.embedding_dim = embedding_dim or EMBEDDING_DIMENSIONS.get(model, 1536)

    @staticmethod
    def _is_rate_limit_error(error: Exception) -> bool:
        error_str = str(error).lower()
        return (
            "rate limit" in error_str
            or "429" in error_str
            or "ratelimit" in error_str
            or "too many requests" in error_str
        )

    @staticmethod
    def _get_retry_after(error: Exception) -> float:
        error_str = str(error)
        match = re.search(r"try again in (\d+\.?\d*)s", error_str)
        if match:
            return float(match.group(1))
        match = re.search(r"retry.?after.?(\d+)", error_str, re.IGNORECASE)
        if match:
            return float(match.group(1))
        return INITIAL_BACKOFF_SECONDS

    @staticmethod
    def _clean(text: str) -> str:
        if len(text) > MAX_INPUT_CHARS:
            text = text[:MAX_INPUT_CHARS]
        return text if text.strip() else "empty"

    def _create_with_retry(self, inputs):
        if self._client is None:
            raise EmbeddingGenerationError("Embedding client not configured (OPENAI_API_KEY missing)")

        backoff = INITIAL_BACKOFF_SECONDS
        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.embeddings.create(model=self.model_name, input=inputs)
                return [item.embedding for item in response.data]
            except Exception as e:
                if self._is_rate_limit_error(e) and attempt < MAX_RETRIES - 1:
                    wait_time = min(max(self._get_retry_after(e), backoff), MAX_BACKOFF_SECONDS)
                    logger.warning(
                        "Rate limit hit, waiting %.1fs before retry (attempt %d/%d)",
                        wait_time, attempt + 1, MAX_RETRIES,
                    )
                    time.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue
                logger.error("Embedding generation failed (model=%s): %s", self.model_name, e)
                raise EmbeddingGenerationError(f"Embedding generation failed: {e}") from e

        raise EmbeddingGenerationError("Embedding generation failed: retries exhausted")

    def _embed_sync(self, text: str) -> List[float]:
        return self._create_with_retry(self._clean(text))[0]

    def _embed_batch_sync(self, texts: List[str]) -> List[List[float]]:
        cleaned = [self._clean(t) for t in texts]
        embeddings: List[List[float]] = []
        for i in range(0, len(cleaned), BATCH_SIZE):
            embeddings.extend(self._create_with_retry(cleaned[i:i + BATCH_SIZE]))
        return embeddings

    async def embed(self, text: str) -> List[float]:
        """
        Generate the embedding for one text.

        Raises:
            EmbeddingGenerationError: client missing or provider failure
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._embed_sync, text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embeddings for many texts, in input order."""
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._embed_batch_sync, texts)
