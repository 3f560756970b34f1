"""Pydantic models for the retrieval-answer pipeline.

This module defines the request models accepted by the pipeline, the
chunks it retrieves, and the results it hands back to callers and batch
job operators.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from libs.models.records import ChunkStat, VectorMatch

MIN_QUESTION_LENGTH = 3
MAX_QUESTION_LENGTH = 2000


class QueryRequest(BaseModel):
    """A question scoped to a zone and development."""

    question: str = Field(..., description="User question", examples=["¿Cuál es el precio del lote 12?"])
    zone: str = Field(..., min_length=1, description="Geographic zone; selects the vector index namespace")
    development: str = Field(..., min_length=1, description="Development the question is about")
    content_type: Optional[str] = Field(None, description="Optional content-type filter (e.g. 'brochure')")
    top_k: Optional[int] = Field(None, ge=1, le=50)
    strict: bool = False
    skip_cache: bool = False

    @field_validator("question")
    @classmethod
    def question_length(cls, v: str) -> str:
        """Questions are 3 to 2000 characters once trimmed."""
        v = v.strip()
        if len(v) < MIN_QUESTION_LENGTH:
            raise ValueError(f"Question must be at least {MIN_QUESTION_LENGTH} characters")
        if len(v) > MAX_QUESTION_LENGTH:
            raise ValueError(f"Question cannot exceed {MAX_QUESTION_LENGTH} characters")
        return v


class FeedbackRequest(BaseModel):
    """A 1-5 star rating on a logged answer."""

    query_log_id: int = Field(..., ge=1)
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class Chunk(BaseModel):
    """A retrieved fragment of a source document.

    Attributes:
        id: Stable identifier in the vector index
        zone: Namespace the chunk lives in
        development: Development tag
        content_type: Content-type tag (brochure, price list, ...)
        source_file: Source document filename
        page: Page within the source document
        chunk_index: Position of the chunk within its page
        text: Raw chunk text
        score: Similarity to the question, assigned at query time
    """

    id: str
    zone: str
    development: Optional[str] = None
    content_type: Optional[str] = None
    source_file: str = "Documento desconocido"
    page: int = 0
    chunk_index: int = 0
    text: str = ""
    score: float = 0.0

    @classmethod
    def from_match(cls, match: VectorMatch, zone: str) -> "Chunk":
        metadata: Dict[str, Any] = match.metadata
        return cls(
            id=match.id,
            zone=zone,
            development=metadata.get("development"),
            content_type=metadata.get("content_type"),
            source_file=metadata.get("source_file") or "Documento desconocido",
            page=int(metadata.get("page") or 0),
            chunk_index=int(metadata.get("chunk_index") or 0),
            text=metadata.get("text") or "",
            score=match.score,
        )


class SourceReference(BaseModel):
    """A chunk as shown to the user next to an answer."""

    chunk_id: Optional[str] = None
    filename: str
    page: int = 0
    chunk: int = 0
    relevance_score: float = 0.0
    text_preview: str = ""


class ValidationResult(BaseModel):
    """Outcome of checking an answer's citations against its chunks."""

    is_valid: bool
    filtered_answer: str
    warnings: List[str] = Field(default_factory=list)
    valid_citation_numbers: Set[int] = Field(default_factory=set)
    invalid_citation_numbers: Set[int] = Field(default_factory=set)
    uncited_claims: List[str] = Field(default_factory=list)
    removed_sentences: List[str] = Field(default_factory=list)


class AnswerStatus(str, Enum):
    """How an answer was produced."""

    ANSWERED = "answered"
    LEARNED = "learned"
    NO_CONTEXT = "no_context"
    SIMPLE = "simple"


class PipelineAnswer(BaseModel):
    """Result of ``QueryPipeline.answer``."""

    status: AnswerStatus
    answer: str
    sources: List[SourceReference] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None
    query_log_id: Optional[int] = None
    cache_similarity: Optional[float] = None
    degraded: List[str] = Field(default_factory=list, description="Fail-open components unavailable for this query")
    response_time_ms: int = 0

    @property
    def requires_review(self) -> bool:
        """True when the answer failed citation checks."""
        return self.validation is not None and not self.validation.is_valid


class ChunkHealthReport(BaseModel):
    """Chunks that are candidates for re-indexing."""

    generated_at: datetime
    stale_days: int
    low_performance: List[ChunkStat] = Field(default_factory=list)
    stale: List[ChunkStat] = Field(default_factory=list)
    problematic_ids: List[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.problematic_ids)


class FeedbackRunSummary(BaseModel):
    """Counters for one run of the feedback learning job."""

    window_hours: int
    fetched: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    embeddings_saved: int = 0
    errors: List[str] = Field(default_factory=list)
