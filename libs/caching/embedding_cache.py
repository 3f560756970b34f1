"""
In-process embedding cache.

Avoids re-embedding repeated questions. Entries live for a fixed TTL and
the map is bounded: once it holds more than ``max_entries`` vectors the
oldest ones are evicted. Entries are immutable once written, so a plain
lock around the map is enough for concurrent requests.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import structlog

from libs.common.errors import EmbeddingError, with_timeout
from libs.vector.embeddings import Embedder

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _CachedVector:
    vector: List[float]
    stored_at: float


@dataclass
class EmbeddingCacheStats:
    """Hit/miss counters for monitoring."""

    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total


class EmbeddingCache:
    """Bounded TTL map from normalized text to embedding vector."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, _CachedVector] = {}
        self._lock = threading.Lock()
        self._stats = EmbeddingCacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[List[float]]:
        """Return the cached vector for ``key`` if present and fresh."""
        now = self._clock()
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and (now - cached.stored_at) < self.ttl_seconds:
                self._stats.hits += 1
                return cached.vector
            if cached is not None:
                del self._entries[key]
            self._stats.misses += 1
            return None

    def put(self, key: str, vector: List[float]) -> None:
        """Store ``vector`` and evict the oldest entries beyond capacity."""
        with self._lock:
            self._entries[key] = _CachedVector(vector=list(vector), stored_at=self._clock())
            if len(self._entries) > self.max_entries:
                newest = sorted(self._entries.items(), key=lambda item: item[1].stored_at, reverse=True)
                self._entries = dict(newest[: self.max_entries])

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> EmbeddingCacheStats:
        return self._stats


class CachingEmbedder:
    """
    Embeds single query strings through an ``EmbeddingCache``.

    Shared by the semantic cache and the retriever so a question asked
    twice within the TTL costs one embedder call.
    """

    def __init__(self, embedder: Embedder, cache: EmbeddingCache, timeout_seconds: float = 30.0):
        self.embedder = embedder
        self.cache = cache
        self.timeout_seconds = timeout_seconds

    async def embed_query(self, text: str) -> List[float]:
        """
        Return the embedding of ``text``, using the cache when possible.

        Raises:
            EmbeddingError: if the embedder fails or returns no vector.
            UpstreamTimeoutError: if the embedder exceeds its time budget.
        """
        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Embedding served from in-process cache", text_preview=text[:50])
            return cached

        vectors = await with_timeout(self.embedder.embed([text]), self.timeout_seconds, "embedding")
        if not vectors or not vectors[0]:
            raise EmbeddingError("Embedder returned no vector for query")

        vector = list(vectors[0])
        self.cache.put(text, vector)
        return vector
