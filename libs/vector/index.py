"""Vector index contract shared by the retriever and the semantic cache."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from libs.models.records import VectorMatch, VectorRecord


class VectorIndex(Protocol):
    """
    Nearest-neighbor search partitioned by namespace.

    Namespaces hold one geographic zone each for content chunks, plus a
    shared namespace for learned responses. ``filter`` is a flat mapping of
    metadata equality constraints.
    """

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> None:
        ...

    async def query(
        self,
        namespace: str,
        vector: List[float],
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        ...

    async def delete_one(self, namespace: str, record_id: str) -> None:
        ...
