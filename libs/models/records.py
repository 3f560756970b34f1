"""Pydantic models for relational rows and vector index records.

These models mirror the rows stored in the relational store
(``chunk_stats``, ``response_learning``, ``query_logs``) and the records
exchanged with the vector index.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChunkStat(BaseModel):
    """Usage statistics for one retrieved chunk."""

    chunk_id: str = Field(..., description="Identifier of the chunk in the vector index.")
    success_count: int = Field(0, ge=0, description="Answers citing this chunk rated 4 or 5.")
    fail_count: int = Field(0, ge=0, description="Answers citing this chunk rated 1 or 2.")
    last_used: Optional[datetime] = Field(None, description="Last time a rating touched this chunk.")

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    @property
    def success_ratio(self) -> float:
        """Share of successful uses; 0.5 when the chunk has no samples."""
        if self.total == 0:
            return 0.5
        return self.success_count / self.total


class LearnedResponseEntry(BaseModel):
    """A cached answer learned from user ratings."""

    id: int
    query: str = Field(..., description="Normalized query text (unique).")
    answer: str
    quality_score: float = Field(0.0, ge=-1.0, le=1.0)
    usage_count: int = Field(1, ge=0)
    embedding_id: Optional[str] = None
    last_improved_at: Optional[datetime] = None


class QueryLogEntry(BaseModel):
    """A logged question and the answer that was returned for it."""

    id: Optional[int] = None
    query: str
    response: str
    zone: Optional[str] = None
    development: Optional[str] = None
    sources_used: List[str] = Field(default_factory=list)
    response_time_ms: int = 0
    feedback_rating: Optional[int] = Field(None, ge=1, le=5)
    feedback_comment: Optional[str] = None
    created_at: Optional[datetime] = None


class RatedQuery(BaseModel):
    """A rated query log row waiting to be folded into learned responses."""

    id: int
    query: str
    response: str
    feedback_rating: int = Field(..., ge=1, le=5)


class VectorRecord(BaseModel):
    """A vector to upsert into a namespace of the vector index."""

    id: str
    vector: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VectorMatch(BaseModel):
    """A nearest-neighbor hit returned by the vector index."""

    id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LookupStatus(str, Enum):
    """Outcome of a semantic cache lookup."""

    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"


class CacheLookup(BaseModel):
    """Result of ``SemanticCache.lookup``.

    ``UNAVAILABLE`` means an upstream failure was absorbed (fail open); it
    is kept distinct from ``MISS`` so callers can tell degraded service
    from a genuine absence of learned answers.
    """

    status: LookupStatus
    entry: Optional[LearnedResponseEntry] = None
    similarity: float = 0.0
    error: Optional[str] = None

    @property
    def hit(self) -> bool:
        return self.status == LookupStatus.HIT and self.entry is not None

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls(status=LookupStatus.MISS)

    @classmethod
    def unavailable(cls, error: BaseException) -> "CacheLookup":
        return cls(status=LookupStatus.UNAVAILABLE, error=f"{type(error).__name__}: {error}")
