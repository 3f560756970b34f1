"""Application settings for the real-estate retrieval-answer pipeline."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings, loaded from ``REALTY_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="REALTY_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "test", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Relational store (SQLite) and job lock (Redis)
    database_path: str = "./data/realty_rag.db"
    redis_url: str | None = None

    # Vector index
    vector_backend: Literal["memory", "milvus"] = "memory"
    milvus_endpoint: str | None = None
    milvus_token: str | None = None
    milvus_collection: str = "realty_chunks"
    learned_responses_namespace: str = "learned_responses"

    # OpenAI (the API key is also read without the prefix)
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REALTY_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    embedding_model: str = "text-embedding-3-large"
    chat_model: str = "gpt-4o-mini"
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=2048, ge=1)

    # Retrieval
    search_top_k: int = Field(default=5, ge=1, le=100)

    # Semantic cache of learned responses
    cache_similarity_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    cache_min_quality: float = Field(default=0.7, ge=-1.0, le=1.0)
    cache_neighbors: int = Field(default=5, ge=1)
    cache_quality_weight: float = 0.6
    cache_similarity_weight: float = 0.4
    embedding_cache_ttl_seconds: float = 3600.0
    embedding_cache_max_entries: int = 100

    # Circuit breaker around the relational store
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_open_timeout_seconds: float = Field(default=30.0, gt=0)
    breaker_half_open_successes: int = Field(default=2, ge=1)

    # Per-call timeouts (seconds)
    embed_timeout_seconds: float = 30.0
    vector_query_timeout_seconds: float = 15.0
    vector_upsert_timeout_seconds: float = 30.0
    llm_timeout_seconds: float = 60.0
    db_timeout_seconds: float = 10.0

    # Batch jobs
    feedback_window_hours: int = Field(default=24, ge=1)
    stale_chunk_days: int = Field(default=60, ge=1)
    low_performance_fail_ratio: int = Field(default=3, ge=1)
    low_performance_min_samples: int = Field(default=3, ge=1)
    job_lock_ttl_seconds: int = 3600

    @field_validator("milvus_endpoint")
    @classmethod
    def validate_milvus_endpoint(cls, v: str | None) -> str | None:
        """Milvus Cloud only exposes the HTTP API over https."""
        if v is not None and v and not v.startswith("https://"):
            raise ValueError("Milvus endpoint must start with https://")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def is_test(self) -> bool:
        """Check if running under the test suite."""
        return self.app_env == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
