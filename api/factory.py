"""Wiring of pipeline components from settings.

Shared resources (the circuit breaker, the embedding cache) are created
once here and passed to every component that needs them.
"""

from dataclasses import dataclass
from typing import Optional

from api.composer.citation_validator import CitationValidator
from api.composer.generator import AnswerGenerator
from api.llm.client import ChatOpenAILanguageModel, LanguageModel
from api.orchestrators.query_orchestrator import QueryPipeline
from api.retrieval import Retriever
from libs.caching.embedding_cache import CachingEmbedder, EmbeddingCache
from libs.caching.semantic_cache import SemanticCache
from libs.common.settings import Settings
from libs.resilience.circuit_breaker import CircuitBreaker
from libs.storage.relational_store import RelationalStore
from libs.vector import build_vector_index
from libs.vector.embeddings import Embedder, OpenAIEmbedder
from libs.vector.index import VectorIndex


@dataclass
class Components:
    """Long-lived collaborators shared by the pipeline and the batch jobs."""

    settings: Settings
    breaker: CircuitBreaker
    store: RelationalStore
    index: VectorIndex
    embedder: CachingEmbedder
    cache: SemanticCache


def build_components(
    settings: Settings,
    index: Optional[VectorIndex] = None,
    embedder: Optional[Embedder] = None,
) -> Components:
    breaker = CircuitBreaker(
        name="relational-store",
        failure_threshold=settings.breaker_failure_threshold,
        open_timeout_seconds=settings.breaker_open_timeout_seconds,
        half_open_successes=settings.breaker_half_open_successes,
    )
    store = RelationalStore(settings.database_path, breaker, timeout_seconds=settings.db_timeout_seconds)
    index = index or build_vector_index(settings)
    caching_embedder = CachingEmbedder(
        embedder or OpenAIEmbedder(settings.openai_api_key, settings.embedding_model, settings.embed_timeout_seconds),
        EmbeddingCache(settings.embedding_cache_ttl_seconds, settings.embedding_cache_max_entries),
        timeout_seconds=settings.embed_timeout_seconds,
    )
    cache = SemanticCache(
        caching_embedder,
        index,
        store,
        namespace=settings.learned_responses_namespace,
        similarity_threshold=settings.cache_similarity_threshold,
        default_min_quality=settings.cache_min_quality,
        neighbors=settings.cache_neighbors,
        quality_weight=settings.cache_quality_weight,
        similarity_weight=settings.cache_similarity_weight,
    )
    return Components(settings, breaker, store, index, caching_embedder, cache)


def build_pipeline(components: Components, llm: Optional[LanguageModel] = None) -> QueryPipeline:
    settings = components.settings
    llm = llm or ChatOpenAILanguageModel(settings.chat_model, settings.openai_api_key, settings.llm_timeout_seconds)
    return QueryPipeline(
        cache=components.cache,
        retriever=Retriever(components.embedder, components.index, default_top_k=settings.search_top_k),
        generator=AnswerGenerator(llm, temperature=settings.llm_temperature, max_tokens=settings.llm_max_tokens),
        validator=CitationValidator(),
        store=components.store,
        top_k=settings.search_top_k,
    )
