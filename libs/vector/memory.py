"""
In-memory vector index.

Cosine similarity over numpy arrays, one dict per namespace. Used for
local development and as the index behind the test suite.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from libs.models.records import VectorMatch, VectorRecord

logger = structlog.get_logger(__name__)


def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
    """Cosine similarity between two vectors; 0.0 if either has zero norm."""
    dot_product = np.dot(vec1, vec2)
    norm_product = np.linalg.norm(vec1) * np.linalg.norm(vec2)
    return float(dot_product / norm_product) if norm_product > 0 else 0.0


def _matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    if not filter:
        return True
    return all(metadata.get(key) == value for key, value in filter.items() if value is not None)


class InMemoryVectorIndex:
    """Process-local ``VectorIndex`` implementation."""

    def __init__(self):
        self._namespaces: Dict[str, Dict[str, VectorRecord]] = {}
        self._lock = asyncio.Lock()

    def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None:
        async with self._lock:
            bucket = self._namespaces.setdefault(namespace, {})
            for record in records:
                bucket[record.id] = record
        logger.debug("Vectors upserted", namespace=namespace, count=len(records))

    async def query(
        self,
        namespace: str,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        async with self._lock:
            candidates = [
                record
                for record in self._namespaces.get(namespace, {}).values()
                if _matches_filter(record.metadata, filter)
            ]

        if not candidates or top_k <= 0:
            return []

        query_vector = np.asarray(vector, dtype=float)
        scored = [
            VectorMatch(
                id=record.id,
                score=cosine_similarity(query_vector, np.asarray(record.vector, dtype=float)),
                metadata=dict(record.metadata),
            )
            for record in candidates
        ]
        scored.sort(key=lambda match: match.score, reverse=True)
        return scored[:top_k]

    async def delete_one(self, namespace: str, record_id: str) -> None:
        async with self._lock:
            self._namespaces.get(namespace, {}).pop(record_id, None)
        logger.debug("Vector deleted", namespace=namespace, record_id=record_id)
