"""
Semantic cache of learned answers.

Questions are embedded and matched against a dedicated namespace of the
vector index. Neighbors above the similarity threshold are resolved to
learned response rows in the relational store, filtered by quality, and
ranked by a blend of quality and similarity.

The cache is an optimization: every failure in the embedder, the vector
index or the store is absorbed, and ``lookup`` reports it as
``UNAVAILABLE`` so the caller falls through to full retrieval.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple

import structlog

from libs.caching.embedding_cache import CachingEmbedder
from libs.common.errors import DataInconsistencyError, PipelineError
from libs.models.records import CacheLookup, LearnedResponseEntry, LookupStatus, VectorRecord
from libs.storage.relational_store import RelationalStore
from libs.vector.index import VectorIndex

logger = structlog.get_logger(__name__)

EMBEDDING_ID_PREFIX = "learned-"
_EMBEDDING_ID_RE = re.compile(rf"^{EMBEDDING_ID_PREFIX}(\d+)$")


def normalize_query(text: str) -> str:
    """Lowercase, collapse whitespace and trim."""
    return " ".join(text.lower().split())


def embedding_id_for(entry_id: int) -> str:
    return f"{EMBEDDING_ID_PREFIX}{entry_id}"


def parse_embedding_id(embedding_id: str) -> Optional[int]:
    """Return the learned response id encoded in ``embedding_id``, if any."""
    match = _EMBEDDING_ID_RE.match(embedding_id)
    return int(match.group(1)) if match else None


@dataclass
class SemanticCacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    hits: int = 0
    misses: int = 0
    unavailable: int = 0

    @property
    def hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


class SemanticCache:
    """
    Cache of learned answers keyed by embedding similarity.

    Usage:
        cache = SemanticCache(embedder, index, store)
        result = await cache.lookup(question)
        if result.hit:
            return result.entry.answer
    """

    def __init__(
        self,
        embedder: CachingEmbedder,
        index: VectorIndex,
        store: RelationalStore,
        namespace: str = "learned_responses",
        similarity_threshold: float = 0.80,
        default_min_quality: float = 0.7,
        neighbors: int = 5,
        quality_weight: float = 0.6,
        similarity_weight: float = 0.4,
    ):
        """
        Initialize semantic cache.

        Args:
            embedder: Embedder shared with the retriever
            index: Vector index holding the cache namespace
            store: Relational store with the learned response rows
            namespace: Vector index namespace for cached answers
            similarity_threshold: Minimum cosine similarity for a candidate
            default_min_quality: Minimum quality score when the caller gives none
            neighbors: Nearest neighbors fetched per lookup
            quality_weight: Weight of quality_score in the ranking
            similarity_weight: Weight of similarity in the ranking
        """
        self.embedder = embedder
        self.index = index
        self.store = store
        self.namespace = namespace
        self.similarity_threshold = similarity_threshold
        self.default_min_quality = default_min_quality
        self.neighbors = neighbors
        self.quality_weight = quality_weight
        self.similarity_weight = similarity_weight
        self._stats = SemanticCacheStats()

    def _rank(self, candidate: Tuple[LearnedResponseEntry, float]) -> float:
        entry, similarity = candidate
        return self.quality_weight * entry.quality_score + self.similarity_weight * similarity

    async def lookup(self, question: str, min_quality: Optional[float] = None) -> CacheLookup:
        """
        Find the best learned answer for ``question``.

        Args:
            question: Raw user question
            min_quality: Minimum quality score; defaults to ``default_min_quality``

        Returns:
            ``CacheLookup`` with status HIT, MISS or UNAVAILABLE
        """
        if min_quality is None:
            min_quality = self.default_min_quality
        self._stats.total_requests += 1
        normalized = normalize_query(question)

        try:
            vector = await self.embedder.embed_query(normalized)
            matches = await self.index.query(self.namespace, vector, self.neighbors)

            similar = [match for match in matches if match.score >= self.similarity_threshold]
            if not similar:
                self._stats.misses += 1
                logger.debug("Semantic cache miss: no similar question", query_preview=normalized[:50])
                return CacheLookup.miss()

            rows = await self.store.get_learned_responses_by_embedding_ids(match.id for match in similar)
        except PipelineError as e:
            self._stats.unavailable += 1
            logger.warning(
                "Semantic cache unavailable, falling back to retrieval",
                query_preview=normalized[:50],
                error=str(e),
                error_type=type(e).__name__,
            )
            return CacheLookup.unavailable(e)

        candidates = [
            (rows[match.id], match.score)
            for match in similar
            if match.id in rows and rows[match.id].quality_score >= min_quality
        ]
        if not candidates:
            self._stats.misses += 1
            logger.debug(
                "Semantic cache miss: no candidate above quality bar",
                query_preview=normalized[:50],
                similar=len(similar),
                min_quality=min_quality,
            )
            return CacheLookup.miss()

        entry, similarity = max(candidates, key=self._rank)
        self._stats.hits += 1
        logger.info(
            "Semantic cache hit",
            query_preview=normalized[:50],
            similarity=round(similarity, 4),
            quality_score=entry.quality_score,
            embedding_id=entry.embedding_id,
        )
        return CacheLookup(status=LookupStatus.HIT, entry=entry, similarity=similarity)

    async def save(self, embedding_id: str, question: str) -> bool:
        """
        Embed ``question`` and upsert it under ``embedding_id``.

        Best-effort: failures are logged and reported as False.
        """
        normalized = normalize_query(question)
        try:
            vector = await self.embedder.embed_query(normalized)
            await self.index.upsert(
                self.namespace,
                [VectorRecord(id=embedding_id, vector=vector, metadata={"query_text": normalized})],
            )
        except PipelineError as e:
            logger.error("Failed to save cache embedding", embedding_id=embedding_id, error=str(e))
            return False

        logger.info("Cache embedding saved", embedding_id=embedding_id, query_preview=normalized[:50])
        return True

    async def delete(self, embedding_id: str) -> bool:
        """
        Delete the vector for ``embedding_id`` if its backing row still owns it.

        A vector whose row is gone or now points at another embedding is
        left alone and the inconsistency is logged.
        """
        try:
            self._verify_owner(embedding_id, await self._owner_of(embedding_id))
            await self.index.delete_one(self.namespace, embedding_id)
        except DataInconsistencyError as e:
            logger.warning("Cache embedding not deleted", embedding_id=embedding_id, reason=str(e))
            return False
        except PipelineError as e:
            logger.error("Failed to delete cache embedding", embedding_id=embedding_id, error=str(e))
            return False

        logger.info("Cache embedding deleted", embedding_id=embedding_id)
        return True

    async def _owner_of(self, embedding_id: str) -> Optional[LearnedResponseEntry]:
        entry_id = parse_embedding_id(embedding_id)
        if entry_id is None:
            raise DataInconsistencyError(f"Malformed embedding id: {embedding_id}")
        return await self.store.get_learned_response_by_id(entry_id)

    @staticmethod
    def _verify_owner(embedding_id: str, entry: Optional[LearnedResponseEntry]) -> None:
        if entry is None:
            raise DataInconsistencyError("Backing learned response no longer exists")
        if entry.embedding_id != embedding_id:
            raise DataInconsistencyError(
                f"Backing learned response now points at {entry.embedding_id!r}"
            )

    def get_stats(self) -> SemanticCacheStats:
        return self._stats
