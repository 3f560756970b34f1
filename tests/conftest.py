"""
Pytest configuration and fixtures for the pipeline tests.

Provides shared fixtures for:
- Test environment settings
- A temporary SQLite relational store behind a circuit breaker
- An in-memory vector index and a deterministic fake embedder
- A fake language model
- A manual clock for breaker timing
"""

import hashlib
from datetime import datetime, timezone
from typing import Dict, List

import numpy as np
import pytest

from api.composer.citation_validator import CitationValidator
from api.composer.generator import AnswerGenerator
from api.orchestrators.query_orchestrator import QueryPipeline
from api.retrieval import Retriever
from libs.caching.embedding_cache import CachingEmbedder, EmbeddingCache
from libs.caching.semantic_cache import SemanticCache
from libs.common.errors import LanguageModelError
from libs.common.settings import get_settings
from libs.resilience.circuit_breaker import CircuitBreaker
from libs.storage.relational_store import RelationalStore
from libs.vector.memory import InMemoryVectorIndex

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)
EMBEDDING_DIM = 64


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbedder:
    """Bag-of-words hashing embedder: equal texts give equal vectors."""

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim
        self.calls: List[List[str]] = []
        self.error: Exception = None

    def vector_for(self, text: str) -> List[float]:
        vector = np.zeros(self.dim)
        for word in text.split():
            bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        return vector.tolist()

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vector_for(text) for text in texts]


class FakeLanguageModel:
    """Returns a canned reply and records the messages it was sent."""

    def __init__(self, reply: str = "Respuesta de prueba [1]."):
        self.reply = reply
        self.calls: List[Dict] = []
        self.error: Exception = None

    async def complete(self, messages, temperature, max_tokens) -> str:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("REALTY_APP_ENV", "test")
    monkeypatch.delenv("REALTY_REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def now():
    """Fixed current time seen by the store."""
    return NOW


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(name="test-store", failure_threshold=5, open_timeout_seconds=30, half_open_successes=2, clock=clock)


@pytest.fixture
async def store(tmp_path, breaker):
    """Initialized SQLite store in a temporary directory."""
    relational_store = RelationalStore(str(tmp_path / "test.db"), breaker, timeout_seconds=5, clock=lambda: NOW)
    await relational_store.initialize()
    return relational_store


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def caching_embedder(fake_embedder):
    return CachingEmbedder(fake_embedder, EmbeddingCache(ttl_seconds=3600, max_entries=100))


@pytest.fixture
def semantic_cache(caching_embedder, vector_index, store):
    return SemanticCache(caching_embedder, vector_index, store)


@pytest.fixture
def fake_llm():
    return FakeLanguageModel()


@pytest.fixture
def pipeline(semantic_cache, caching_embedder, vector_index, store, fake_llm):
    return QueryPipeline(
        cache=semantic_cache,
        retriever=Retriever(caching_embedder, vector_index, default_top_k=5),
        generator=AnswerGenerator(fake_llm),
        validator=CitationValidator(),
        store=store,
    )


@pytest.fixture
def failing_llm(fake_llm):
    fake_llm.error = LanguageModelError("model down")
    return fake_llm
