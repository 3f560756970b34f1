"""Chunk retrieval from the vector index.

Each zone is a namespace of the index; the development (and optionally
the content type) is applied as a metadata filter. The question embedding
goes through the shared embedding cache, so a question that just missed
the semantic cache is not embedded twice.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from api.models import Chunk
from libs.caching.embedding_cache import CachingEmbedder
from libs.caching.semantic_cache import normalize_query
from libs.vector.index import VectorIndex

logger = structlog.get_logger(__name__)


class Retriever:
    """Top-K chunk search scoped by zone and development."""

    def __init__(self, embedder: CachingEmbedder, index: VectorIndex, default_top_k: int = 5):
        self.embedder = embedder
        self.index = index
        self.default_top_k = default_top_k

    async def retrieve(
        self,
        question: str,
        zone: str,
        development: Optional[str] = None,
        top_k: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> List[Chunk]:
        """
        Return up to ``top_k`` chunks ordered by descending similarity.

        An empty list is a valid result. Embedder and index failures
        propagate: without chunks there is no answer.
        """
        top_k = top_k or self.default_top_k
        vector = await self.embedder.embed_query(normalize_query(question))

        metadata_filter = {}
        if development:
            metadata_filter["development"] = development
        if content_type:
            metadata_filter["content_type"] = content_type

        matches = await self.index.query(zone, vector, top_k, metadata_filter or None)
        chunks = sorted((Chunk.from_match(match, zone) for match in matches), key=lambda c: c.score, reverse=True)

        logger.info(
            "Chunks retrieved",
            zone=zone,
            development=development,
            content_type=content_type,
            results_count=len(chunks),
            top_score=chunks[0].score if chunks else 0,
        )
        return chunks[:top_k]
