"""
Knowledge Base Factory

Assembles a KnowledgeBase and its services from Settings.
"""

from kbengine.config.settings import Settings, get_settings
from kbengine.knowledge.chunking import StreamingChunker
from kbengine.knowledge.embeddings import EmbeddingService, LocalEmbeddings, OpenAIEmbeddings
from kbengine.knowledge.ingestion import IngestionPipeline
from kbengine.knowledge.repository import (
    InMemoryKnowledgeRepository,
    KnowledgeRepository,
    PostgresKnowledgeRepository,
)
from kbengine.knowledge.reranker import HybridWeights, RerankerConfig, RerankingService
from kbengine.knowledge.service import KnowledgeBase
from kbengine.knowledge.vector_store import InMemoryVectorStore, PgVectorStore, VectorStore
from kbengine.observability.logging import configure_logging


def create_embeddings(settings: Settings) -> EmbeddingService:
    """Embedding service for the configured provider."""
    cfg = settings.embedding
    if cfg.provider == "openai":
        return OpenAIEmbeddings(
            api_key=cfg.openai_api_key.get_secret_value() if cfg.openai_api_key else None,
            model=cfg.openai_model,
            dimension=cfg.dimension,
            base_url=cfg.openai_base_url,
            query_cache_size=cfg.query_cache_size,
        )
    return LocalEmbeddings(
        model_name=cfg.model,
        dimension=cfg.dimension,
        device=cfg.device,
        query_cache_size=cfg.query_cache_size,
    )


def create_stores(settings: Settings) -> tuple[VectorStore, KnowledgeRepository]:
    """Vector store and entry repository; the Postgres pair shares one pool."""
    cfg = settings.vector_store
    if cfg.provider == "memory":
        return InMemoryVectorStore(settings.embedding.dimension), InMemoryKnowledgeRepository()

    store = PgVectorStore(
        dsn=cfg.dsn,
        dimension=settings.embedding.dimension,
        min_pool_size=cfg.min_pool_size,
        max_pool_size=cfg.max_pool_size,
        command_timeout=cfg.command_timeout,
        hnsw_m=cfg.hnsw_m,
        hnsw_ef_construction=cfg.hnsw_ef_construction,
    )
    return store, PostgresKnowledgeRepository(store.get_pool)


def create_knowledge_base(
    settings: Settings | None = None,
    embeddings: EmbeddingService | None = None,
    reranker: RerankingService | None = None,
) -> KnowledgeBase:
    """
    Create a KnowledgeBase wired from settings.

    Explicit services replace the ones settings would build, which is
    how tests swap in deterministic embeddings.

    Args:
        settings: Deployment settings, defaults to get_settings()
        embeddings: Optional embedding service override
        reranker: Optional reranker override

    Returns:
        An uninitialized KnowledgeBase; use it as an async context manager
    """
    settings = settings or get_settings()
    configure_logging(settings.observability)

    embeddings = embeddings or create_embeddings(settings)
    store, repository = create_stores(settings)

    if reranker is None and settings.reranker.enabled:
        reranker = RerankingService(
            RerankerConfig(
                enabled=True,
                model_name=settings.reranker.model_name,
                batch_size=settings.reranker.batch_size,
                hybrid_weights=HybridWeights(
                    similarity=settings.reranker.similarity_weight,
                    type_priority=settings.reranker.type_weight,
                    position=settings.reranker.position_weight,
                ),
            )
        )

    chunker = StreamingChunker(
        chunk_size=settings.chunking.chunk_size,
        overlap=settings.chunking.overlap,
    )
    pipeline = IngestionPipeline(chunker, embeddings, store, settings.ingestion)

    return KnowledgeBase(
        repository=repository,
        store=store,
        embeddings=embeddings,
        pipeline=pipeline,
        reranker=reranker,
        settings=settings,
    )
