"""Runtime configuration for the replyrag services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="replyrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    data_dir: Path = Path("./data")

    # Chroma
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection_prefix: str = "replyrag"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    chroma_ephemeral: bool = False

    # Catalog / content item metadata (read-only JSON export)
    catalog_path: Path | None = None

    # Hosted gateway
    use_hosted_models: bool = False
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = 1536
    embedding_batch_size: int = 64
    completion_model: str = "gpt-4o-mini"
    completion_max_tokens: int = 2000
    completion_temperature: float = 0.7
    gateway_timeout_seconds: float = 30.0
    gateway_max_attempts: int = 3
    gateway_backoff_min_seconds: float = 1.0
    gateway_backoff_max_seconds: float = 20.0
    gateway_max_concurrency: int = 4

    # Ingestion
    transcript_chunk_chars: int = 1600
    transcript_chunk_overlap: int = 240
    catalog_chunk_chars: int = 480
    catalog_chunk_overlap: int = 80
    catalog_summary_max_chars: int = 500
    ingest_batch_size: int = 20
    ingest_batch_pause_seconds: float = 1.5

    # Hybrid retrieval
    retrieval_top_k: int = 6
    retrieval_max_top_k: int = 50
    retrieval_min_score: float = 0.0
    retrieval_semantic_weight: float = 0.7
    retrieval_lexical_weight: float = 0.3
    retrieval_candidate_multiplier: int = 2

    # Pools
    pool_max_size: int = 200
    pool_min_relevance: float = 0.1
    pool_tag_weight: float = 0.3
    pool_category_weight: float = 0.3
    pool_price_weight: float = 0.2
    pool_brand_weight: float = 0.2
    pool_price_tolerance: float = 0.1

    # Price-aware re-ranking
    rerank_semantic_weight: float = 0.6
    rerank_price_weight: float = 0.4
    budget_tolerance: float = 0.2
    budget_min_price: float = 100.0

    # Answer composition
    answer_max_transcript_chunks: int = 3
    answer_max_catalog_candidates: int = 8
    answer_max_comment_chunks: int = 3
    answer_catalog_search_k: int = 20
    answer_min_score: float = 0.2
    answer_max_links: int = 3
    answer_max_context_tokens: int = 2800
    answer_reserved_tokens: int = 500
    answer_repair_attempts: int = 1
    answer_require_pool: bool = False

    # Batch orchestration
    batch_max_workers: int = 4
    batch_max_queries: int = 50

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def effective_openai_key(self) -> str | None:
        if self.openai_api_key:
            return self.openai_api_key
        import os

        return os.getenv("OPENAI_API_KEY")


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
