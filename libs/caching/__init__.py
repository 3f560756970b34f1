"""
Caching utilities.

- Embedding cache shared by the semantic cache and the retriever
- Semantic cache of learned answers
- Redis client management
"""

from libs.caching.embedding_cache import CachingEmbedder, EmbeddingCache
from libs.caching.semantic_cache import SemanticCache, normalize_query

__all__ = ["CachingEmbedder", "EmbeddingCache", "SemanticCache", "normalize_query"]
