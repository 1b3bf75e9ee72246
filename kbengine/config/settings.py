"""
Settings Management

Provides centralized, type-safe deployment configuration using Pydantic.
Supports environment variables, .env files, and hierarchical config.

Design decisions:
- Using pydantic-settings for validation and type coercion
- Immutable settings after initialization (frozen model)
- The embedding dimension is configured once and shared by the
  embedding service and every vector table
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VectorStoreSettings(BaseSettings):
    """Vector store (PostgreSQL + pgvector) connection configuration."""

    model_config = SettingsConfigDict(env_prefix="VECTOR_DB_")

    provider: Literal["pgvector", "memory"] = "pgvector"

    host: str = Field(default="localhost")
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="knowledge")
    user: str = Field(default="postgres")
    password: SecretStr | None = Field(default=None)

    # Pool
    min_pool_size: int = Field(default=1, ge=1)
    max_pool_size: int = Field(default=10, ge=1)
    command_timeout: float = Field(default=60.0, gt=0)

    # HNSW index parameters
    hnsw_m: int = Field(default=16, ge=2)
    hnsw_ef_construction: int = Field(default=64, ge=4)

    @property
    def dsn(self) -> str:
        """Construct PostgreSQL DSN for connection."""
        auth = self.user
        if self.password:
            auth += f":{self.password.get_secret_value()}"
        return f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"


class EmbeddingSettings(BaseSettings):
    """Embedding provider configuration."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")

    provider: Literal["local", "openai"] = "local"

    # Fixed per deployment; changing it requires migrate_dimension
    dimension: int = Field(default=512, ge=1)

    # Local (sentence-transformers) settings
    model: str = Field(default="BAAI/bge-small-zh-v1.5")
    device: str = Field(default="cpu")

    # OpenAI settings
    openai_model: str = Field(default="text-embedding-3-small")
    openai_api_key: SecretStr | None = Field(default=None)
    openai_base_url: str | None = Field(default=None)

    # Query embeddings are cached, ingestion embeddings never are
    query_cache_size: int = Field(default=256, ge=0)


class RerankerSettings(BaseSettings):
    """Cross-encoder reranker configuration."""

    model_config = SettingsConfigDict(env_prefix="RERANKER_")

    enabled: bool = Field(default=True)
    model_name: str = Field(default="cross-encoder/ms-marco-MiniLM-L-6-v2")
    batch_size: int = Field(default=32, ge=1)

    # Candidates fetched per requested result when reranking
    candidate_multiplier: int = Field(default=2, ge=1)

    # Hybrid reranking weights
    similarity_weight: float = Field(default=0.7, ge=0.0)
    type_weight: float = Field(default=0.2, ge=0.0)
    position_weight: float = Field(default=0.1, ge=0.0)


class ChunkingSettings(BaseSettings):
    """Text chunking configuration."""

    model_config = SettingsConfigDict(env_prefix="CHUNKING_")

    chunk_size: int = Field(default=1000, ge=1)
    overlap: int = Field(default=150, ge=0)

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ChunkingSettings":
        if self.overlap >= self.chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")
        return self


class IngestionSettings(BaseSettings):
    """Batch sizing policy for ingestion."""

    model_config = SettingsConfigDict(env_prefix="INGESTION_")

    max_batch_size: int = Field(default=50, ge=1)
    large_file_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    medium_file_bytes: int = Field(default=20 * 1024 * 1024, ge=1)
    many_chunks: int = Field(default=1000, ge=1)

    large_file_batch_size: int = Field(default=10, ge=1)
    medium_file_batch_size: int = Field(default=20, ge=1)
    many_chunks_batch_size: int = Field(default=25, ge=1)
    normal_batch_size: int = Field(default=50, ge=1)


class QuerySettings(BaseSettings):
    """Query defaults."""

    model_config = SettingsConfigDict(env_prefix="QUERY_")

    default_top_k: int = Field(default=10, ge=1)
    min_score: float = Field(default=0.5, ge=-1.0, le=1.0)

    # Share of top_k drawn from structured knowledge, the rest from files
    knowledge_share: float = Field(default=0.7, ge=0.0, le=1.0)

    # Similarity above which a new QA question counts as a duplicate
    duplicate_qa_min_score: float = Field(default=0.85, ge=-1.0, le=1.0)


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(env_prefix="OBS_")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: str | None = Field(default=None)


class Settings(BaseSettings):
    """
    Master settings aggregator.

    This is the single source of truth for all configuration.
    Sub-settings are composed here to maintain clear boundaries.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,  # Immutable after creation
    )

    app_name: str = Field(default="kbengine")
    environment: Literal["development", "staging", "production"] = "development"

    # Component settings (composed)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    reranker: RerankerSettings = Field(default_factory=RerankerSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure only one settings instance exists.
    This is safe because settings are frozen/immutable.
    """
    return Settings()
