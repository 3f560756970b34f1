"""
Tests for SemanticCache.

Tests verify:
- Save then lookup of the same question hits with similarity ~1.0
- Similarity threshold and quality filter
- Ranking by 0.6 * quality + 0.4 * similarity
- Upstream failures reported as UNAVAILABLE, never raised
- Deletion only when the backing row still owns the embedding
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from libs.caching.embedding_cache import CachingEmbedder, EmbeddingCache
from libs.caching.semantic_cache import SemanticCache, embedding_id_for, normalize_query, parse_embedding_id
from libs.common.errors import EmbeddingError, VectorIndexError
from libs.models.records import LookupStatus, VectorMatch
from libs.vector.embeddings import OPENAI_EMBEDDINGS_URL, OpenAIEmbedder
from libs.vector.milvus import MilvusVectorIndex

MILVUS_ENDPOINT = "https://in03-abc.api.gcp-us-west1.zillizcloud.com:443"


async def _learn(store, semantic_cache, question, answer, quality):
    entry = await store.insert_learned_response(normalize_query(question), answer, quality)
    embedding_id = embedding_id_for(entry.id)
    await store.set_learned_response_embedding_id(entry.id, embedding_id)
    assert await semantic_cache.save(embedding_id, question)
    return entry.id, embedding_id


def test_normalize_query():
    """Queries are lowercased and whitespace collapsed."""
    assert normalize_query("  ¿Cuál es el   PRECIO?\n") == "¿cuál es el precio?"


def test_embedding_id_round_trip():
    """Embedding ids carry the learned response id."""
    assert embedding_id_for(42) == "learned-42"
    assert parse_embedding_id("learned-42") == 42
    assert parse_embedding_id("chunk-42") is None


@pytest.mark.asyncio
async def test_save_then_lookup_hits(store, semantic_cache):
    """A saved question is found again with similarity near 1."""
    await _learn(store, semantic_cache, "¿Cuál es el precio del lote 12?", "El lote 12 cuesta 1,200,000 MXN [1].", 0.9)

    result = await semantic_cache.lookup("¿cuál es el precio del  lote 12?")

    assert result.status == LookupStatus.HIT
    assert result.hit
    assert result.similarity == pytest.approx(1.0)
    assert result.entry.answer == "El lote 12 cuesta 1,200,000 MXN [1]."


@pytest.mark.asyncio
async def test_round_trip_with_zero_quality_bar(store, semantic_cache):
    """Lookup returns the saved embedding id."""
    _, embedding_id = await _learn(store, semantic_cache, "Horario de la oficina de ventas", "De 9 a 18 h.", 0.0)

    result = await semantic_cache.lookup("Horario de la oficina de ventas", min_quality=0.0)

    assert result.entry.embedding_id == embedding_id
    assert result.similarity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_empty_namespace_is_miss(semantic_cache):
    """An empty namespace is a miss."""
    result = await semantic_cache.lookup("¿Qué amenidades tiene Amura?")
    assert result.status == LookupStatus.MISS
    assert not result.hit


@pytest.mark.asyncio
async def test_dissimilar_question_is_miss(store, semantic_cache):
    """A dissimilar question is a miss."""
    await _learn(store, semantic_cache, "precio del lote 12", "1,200,000 MXN", 0.9)

    result = await semantic_cache.lookup("horario de la oficina de ventas en mérida")
    assert result.status == LookupStatus.MISS


@pytest.mark.asyncio
async def test_low_quality_entry_is_miss(store, semantic_cache):
    """Entries below the quality bar are skipped."""
    await _learn(store, semantic_cache, "precio del lote 12", "1,200,000 MXN", 0.5)

    assert (await semantic_cache.lookup("precio del lote 12")).status == LookupStatus.MISS
    assert (await semantic_cache.lookup("precio del lote 12", min_quality=0.4)).hit


@pytest.mark.asyncio
async def test_ranking_blends_quality_and_similarity(store, semantic_cache, vector_index):
    """Candidates rank by quality and similarity combined."""
    first_id, first_embedding = await _learn(store, semantic_cache, "pregunta uno", "respuesta uno", 0.8)
    second_id, second_embedding = await _learn(store, semantic_cache, "pregunta dos", "respuesta dos", 1.0)

    # 0.6*0.8 + 0.4*0.99 = 0.876 vs 0.6*1.0 + 0.4*0.85 = 0.94
    async def fixed_query(namespace, vector, top_k, filter=None):
        return [
            VectorMatch(id=first_embedding, score=0.99),
            VectorMatch(id=second_embedding, score=0.85),
        ]

    vector_index.query = fixed_query
    result = await semantic_cache.lookup("pregunta")

    assert result.hit
    assert result.entry.id == second_id
    assert result.similarity == pytest.approx(0.85)


@pytest.mark.asyncio
async def test_orphan_vector_is_ignored(semantic_cache):
    """A vector without a backing row is a miss."""
    assert await semantic_cache.save("learned-999", "precio del lote 12")

    result = await semantic_cache.lookup("precio del lote 12")
    assert result.status == LookupStatus.MISS


@pytest.mark.asyncio
async def test_embedder_failure_is_unavailable(semantic_cache, fake_embedder):
    """An embedder failure is reported as UNAVAILABLE."""
    fake_embedder.error = EmbeddingError("embedder down")

    result = await semantic_cache.lookup("precio del lote 12")

    assert result.status == LookupStatus.UNAVAILABLE
    assert "EmbeddingError" in result.error
    assert semantic_cache.get_stats().unavailable == 1


@pytest.mark.asyncio
async def test_index_failure_is_unavailable(semantic_cache, vector_index):
    """An index failure is reported as UNAVAILABLE."""
    async def broken_query(namespace, vector, top_k, filter=None):
        raise VectorIndexError("index down")

    vector_index.query = broken_query
    result = await semantic_cache.lookup("precio del lote 12")
    assert result.status == LookupStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_store_failure_is_unavailable(store, semantic_cache, breaker):
    """An open breaker is reported as UNAVAILABLE."""
    await _learn(store, semantic_cache, "precio del lote 12", "1,200,000 MXN", 0.9)

    for _ in range(breaker.failure_threshold):
        breaker.record_failure(ConnectionRefusedError("connection refused"))

    result = await semantic_cache.lookup("precio del lote 12")
    assert result.status == LookupStatus.UNAVAILABLE
    assert "CircuitOpenError" in result.error


@pytest.mark.asyncio
async def test_save_failure_returns_false(semantic_cache, fake_embedder):
    """A failed save returns False."""
    fake_embedder.error = EmbeddingError("embedder down")
    assert await semantic_cache.save("learned-1", "precio") is False


@pytest.mark.asyncio
async def test_delete_owned_embedding(store, semantic_cache, vector_index):
    """An owned embedding is deleted."""
    _, embedding_id = await _learn(store, semantic_cache, "precio del lote 12", "1,200,000 MXN", 0.9)

    assert await semantic_cache.delete(embedding_id)
    assert vector_index.count(semantic_cache.namespace) == 0


@pytest.mark.asyncio
async def test_delete_refuses_when_row_points_elsewhere(store, semantic_cache, vector_index):
    """A vector replaced on its row is kept."""
    entry_id, embedding_id = await _learn(store, semantic_cache, "precio del lote 12", "1,200,000 MXN", 0.9)
    await store.set_learned_response_embedding_id(entry_id, "learned-other")

    assert await semantic_cache.delete(embedding_id) is False
    assert vector_index.count(semantic_cache.namespace) == 1


@pytest.mark.asyncio
async def test_delete_refuses_when_row_missing(semantic_cache, vector_index):
    """A vector without a row or a valid id is kept."""
    await semantic_cache.save("learned-77", "precio del lote 12")

    assert await semantic_cache.delete("learned-77") is False
    assert await semantic_cache.delete("not-an-id") is False
    assert vector_index.count(semantic_cache.namespace) == 1


@pytest.mark.asyncio
async def test_non_json_index_reply_is_unavailable(store, caching_embedder, monkeypatch):
    """A gateway HTML page from Milvus degrades the lookup instead of raising."""
    gateway_page = httpx.Response(200, text="<html>gateway</html>", request=httpx.Request("POST", MILVUS_ENDPOINT))
    monkeypatch.setattr(httpx.AsyncClient, "post", AsyncMock(return_value=gateway_page))
    index = MilvusVectorIndex(MILVUS_ENDPOINT, "token", "realty_chunks")

    result = await SemanticCache(caching_embedder, index, store).lookup("cual es el precio del lote 12")

    assert result.status == LookupStatus.UNAVAILABLE
    assert "VectorIndexError" in result.error


@pytest.mark.asyncio
async def test_malformed_embedding_reply_is_unavailable(store, vector_index, monkeypatch):
    """An embedding body without vectors degrades the lookup instead of raising."""
    body = httpx.Response(200, json={"object": "list"}, request=httpx.Request("POST", OPENAI_EMBEDDINGS_URL))
    monkeypatch.setattr(httpx.AsyncClient, "post", AsyncMock(return_value=body))
    embedder = CachingEmbedder(OpenAIEmbedder("sk-test"), EmbeddingCache(ttl_seconds=3600, max_entries=100))

    result = await SemanticCache(embedder, vector_index, store).lookup("cual es el precio del lote 12")

    assert result.status == LookupStatus.UNAVAILABLE
    assert "EmbeddingError" in result.error
