"""Query pipeline for the real-estate inventory assistant.

Routes a question through the semantic cache, chunk retrieval, answer
generation and citation validation, and records the outcome in the
relational store for the feedback loop.

Failure policy:
- Semantic cache and query logging fail open: the query continues and
  the component is listed in ``PipelineAnswer.degraded``.
- Retrieval and generation fail fast: their errors propagate to the
  caller, who maps them to a user message with ``user_message_for``.
"""

import re
import time
from typing import List, Optional, Sequence

import structlog

from api.composer.citation_validator import CitationValidator
from api.composer.generator import AnswerGenerator
from api.composer.prompts import NO_CONTEXT_RESPONSE, UNKNOWN_SOURCE, source_files
from api.models import AnswerStatus, Chunk, FeedbackRequest, PipelineAnswer, QueryRequest, SourceReference, ValidationResult
from api.retrieval import Retriever
from libs.caching.semantic_cache import SemanticCache
from libs.common.errors import StoreError, UpstreamUnavailableError
from libs.models.records import LookupStatus, QueryLogEntry
from libs.storage.relational_store import RelationalStore

logger = structlog.get_logger(__name__)

PREVIEW_LENGTH = 150

SIMPLE_QUERY_PATTERNS = [
    # Greetings
    re.compile(r"^(hola|hi|hello|buenos días|buenas tardes|buenas noches|saludos|hey)[\s!.,]*$", re.IGNORECASE),
    re.compile(
        r"^(hola|hi|hello|buenos días|buenas tardes|buenas noches|saludos|hey)\s+"
        r"(amigo|amiga|señor|señora|equipo|team)[\s!.,]*$",
        re.IGNORECASE,
    ),
    # Small talk
    re.compile(r"^(qué tal|qué pasa|qué hay|qué onda|como estás|como estas|how are you)[\s?.,]*$", re.IGNORECASE),
    # A single very short word
    re.compile(r"^[a-záéíóúñ]{1,4}[\s?.,!]*$", re.IGNORECASE),
    # Questions about the assistant itself
    re.compile(
        r"^(quién eres|quien eres|qué eres|que eres|qué puedes hacer|que puedes hacer|help|ayuda|help me)[\s?.,]*$",
        re.IGNORECASE,
    ),
]

# Short queries mentioning any of these still need retrieval
INVENTORY_KEYWORDS = (
    "precio", "precios", "costo", "costos",
    "amenidad", "amenidades", "característica", "caracteristicas",
    "inventario", "disponibilidad", "unidad", "unidades",
    "documento", "documentos", "brochure", "folleto",
)

SHORT_QUERY_CHARS = 10


def is_simple_query(question: str) -> bool:
    """True for greetings and small talk that need no document search."""
    normalized = question.lower().strip()
    if any(pattern.match(normalized) for pattern in SIMPLE_QUERY_PATTERNS):
        return True
    if len("".join(normalized.split())) < SHORT_QUERY_CHARS:
        return not any(keyword in normalized for keyword in INVENTORY_KEYWORDS)
    return False


def generate_preview(text: str, max_length: int = PREVIEW_LENGTH) -> str:
    """Collapse whitespace and cut at a word boundary."""
    text = " ".join(text.split())
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    if " " in cut:
        cut = cut[: cut.rfind(" ")]
    return cut + "..."


def build_source_references(chunks: Sequence[Chunk]) -> List[SourceReference]:
    """Display records for the chunks an answer was generated from."""
    return [
        SourceReference(
            chunk_id=chunk.id,
            filename=chunk.source_file or UNKNOWN_SOURCE,
            page=chunk.page,
            chunk=chunk.chunk_index,
            relevance_score=round(chunk.score, 2),
            text_preview=generate_preview(chunk.text),
        )
        for chunk in chunks
    ]


class QueryPipeline:
    """
    Answers questions about inventory documents.

    Usage:
        pipeline = QueryPipeline(cache, retriever, generator, validator, store)
        result = await pipeline.answer("¿Cuál es el precio del lote 12?", zone="yucatan", development="Amura")
    """

    def __init__(
        self,
        cache: SemanticCache,
        retriever: Retriever,
        generator: AnswerGenerator,
        validator: CitationValidator,
        store: RelationalStore,
        top_k: int = 5,
    ):
        self.cache = cache
        self.retriever = retriever
        self.generator = generator
        self.validator = validator
        self.store = store
        self.top_k = top_k

    async def answer(
        self,
        question: str,
        zone: str,
        development: str,
        content_type: Optional[str] = None,
        top_k: Optional[int] = None,
        strict: bool = False,
        skip_cache: bool = False,
    ) -> PipelineAnswer:
        """
        Answer a question.

        Raises:
            pydantic.ValidationError: if the question is not 3-2000 characters
                or zone/development are empty.
            UpstreamUnavailableError: if retrieval or generation fails.
        """
        request = QueryRequest(
            question=question,
            zone=zone,
            development=development,
            content_type=content_type,
            top_k=top_k,
            strict=strict,
            skip_cache=skip_cache,
        )
        start = time.perf_counter()
        degraded: List[str] = []
        log = logger.bind(zone=request.zone, development=request.development, question_preview=request.question[:50])

        if is_simple_query(request.question):
            log.info("Simple query, answering without retrieval")
            text = await self.generator.answer_simple(request.question)
            return await self._finish(request, AnswerStatus.SIMPLE, text, [], None, degraded, start)

        if not request.skip_cache:
            lookup = await self.cache.lookup(request.question)
            if lookup.status == LookupStatus.UNAVAILABLE:
                degraded.append("semantic_cache")
            elif lookup.hit:
                log.info("Answered from learned responses", similarity=round(lookup.similarity, 4))
                return await self._finish(
                    request,
                    AnswerStatus.LEARNED,
                    lookup.entry.answer,
                    [],
                    None,
                    degraded,
                    start,
                    cache_similarity=lookup.similarity,
                )

        chunks = await self.retriever.retrieve(
            request.question,
            zone=request.zone,
            development=request.development,
            top_k=request.top_k or self.top_k,
            content_type=request.content_type,
        )
        if not chunks:
            log.info("No chunks retrieved, returning no-context answer")
            return await self._finish(request, AnswerStatus.NO_CONTEXT, NO_CONTEXT_RESPONSE, [], None, degraded, start)

        draft = await self.generator.answer(request.question, chunks, zone=request.zone, development=request.development)
        validation = self.validator.validate(draft, chunks, strict=request.strict)
        if not validation.is_valid:
            log.warning("Answer failed citation checks", warnings=validation.warnings)

        return await self._finish(
            request, AnswerStatus.ANSWERED, validation.filtered_answer, chunks, validation, degraded, start
        )

    async def _finish(
        self,
        request: QueryRequest,
        status: AnswerStatus,
        text: str,
        chunks: Sequence[Chunk],
        validation: Optional[ValidationResult],
        degraded: List[str],
        start: float,
        cache_similarity: Optional[float] = None,
    ) -> PipelineAnswer:
        response_time_ms = int((time.perf_counter() - start) * 1000)
        query_log_id = await self._log_query(request, text, chunks, response_time_ms, degraded)
        logger.info(
            "Query answered",
            status=status.value,
            query_log_id=query_log_id,
            chunks=len(chunks),
            degraded=degraded,
            response_time_ms=response_time_ms,
        )
        return PipelineAnswer(
            status=status,
            answer=text,
            sources=build_source_references(chunks),
            validation=validation,
            query_log_id=query_log_id,
            cache_similarity=cache_similarity,
            degraded=degraded,
            response_time_ms=response_time_ms,
        )

    async def _log_query(
        self,
        request: QueryRequest,
        text: str,
        chunks: Sequence[Chunk],
        response_time_ms: int,
        degraded: List[str],
    ) -> Optional[int]:
        """Persist the query log and its chunks; failures only degrade the answer."""
        entry = QueryLogEntry(
            query=request.question,
            response=text,
            zone=request.zone,
            development=request.development,
            sources_used=source_files(chunks),
            response_time_ms=response_time_ms,
        )
        try:
            query_log_id = await self.store.save_query_log(entry)
        except (UpstreamUnavailableError, StoreError) as e:
            logger.warning("Failed to save query log", error=str(e), error_type=type(e).__name__)
            degraded.append("query_log")
            return None

        try:
            await self.store.register_query_chunks(query_log_id, (chunk.id for chunk in chunks))
        except (UpstreamUnavailableError, StoreError) as e:
            logger.warning("Failed to register query chunks", query_log_id=query_log_id, error=str(e))
            degraded.append("chunk_registration")
        return query_log_id

    async def submit_feedback(self, query_log_id: int, rating: int, comment: Optional[str] = None) -> int:
        """
        Record a rating and fold it into the stats of the cited chunks.

        Returns:
            Number of chunk stats rows updated

        Raises:
            pydantic.ValidationError: if the rating is outside 1-5.
            NotFoundError: if the query log does not exist.
            CircuitOpenError: if the relational store is rejecting calls.
        """
        feedback = FeedbackRequest(query_log_id=query_log_id, rating=rating, comment=comment)
        await self.store.save_feedback(feedback.query_log_id, feedback.rating, feedback.comment)
        updated = await self.store.update_chunk_stats(feedback.query_log_id, feedback.rating)
        logger.info("Feedback recorded", query_log_id=query_log_id, rating=rating, chunks_updated=updated)
        return updated