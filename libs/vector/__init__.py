"""Vector index and embedder adapters."""

from libs.common.settings import Settings
from libs.vector.index import VectorIndex
from libs.vector.memory import InMemoryVectorIndex
from libs.vector.milvus import MilvusVectorIndex


def build_vector_index(settings: Settings) -> VectorIndex:
    """Create the vector index selected by ``settings.vector_backend``."""
    if settings.vector_backend == "milvus":
        return MilvusVectorIndex(
            endpoint=settings.milvus_endpoint,
            token=settings.milvus_token,
            collection=settings.milvus_collection,
            query_timeout_seconds=settings.vector_query_timeout_seconds,
            upsert_timeout_seconds=settings.vector_upsert_timeout_seconds,
        )
    return InMemoryVectorIndex()


__all__ = ["InMemoryVectorIndex", "MilvusVectorIndex", "VectorIndex", "build_vector_index"]
