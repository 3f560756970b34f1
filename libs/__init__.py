"""Shared libraries for the realty retrieval-answer pipeline.

This package contains reusable components:
- common: Settings, logging configuration and the error taxonomy
- caching: Embedding cache, semantic cache and the Redis client
- resilience: Circuit breaker guarding the relational store
- storage: Relational store for learned responses, chunk stats and query logs
- vector: Vector index and embedder adapters
- jobs: Single-instance locking for batch jobs
"""
