"""
Knowledge Module

Chunking, embedding, vector storage, reranking, knowledge entries and
ingestion, composed behind the KnowledgeBase facade.
"""

from kbengine.knowledge.chunking import DEFAULT_SEPARATORS, StreamingChunker
from kbengine.knowledge.embeddings import EmbeddingService, LocalEmbeddings, OpenAIEmbeddings
from kbengine.knowledge.ingestion import IngestionLocks, IngestionPipeline, batch_size_for
from kbengine.knowledge.parsers import (
    DocumentParser,
    DocxParser,
    PDFParser,
    TextParser,
    parser_for,
    sanitize_text,
)
from kbengine.knowledge.repository import (
    InMemoryKnowledgeRepository,
    KnowledgeRepository,
    PostgresKnowledgeRepository,
)
from kbengine.knowledge.reranker import RerankerConfig, RerankingService
from kbengine.knowledge.service import KnowledgeBase
from kbengine.knowledge.vector_store import (
    InMemoryVectorStore,
    PgVectorStore,
    SearchScope,
    VectorStore,
    merge_hits,
)

__all__ = [
    # Chunking
    "StreamingChunker",
    "DEFAULT_SEPARATORS",
    # Parsing
    "DocumentParser",
    "TextParser",
    "PDFParser",
    "DocxParser",
    "parser_for",
    "sanitize_text",
    # Embeddings
    "EmbeddingService",
    "LocalEmbeddings",
    "OpenAIEmbeddings",
    # Vector store
    "VectorStore",
    "PgVectorStore",
    "InMemoryVectorStore",
    "SearchScope",
    "merge_hits",
    # Reranking
    "RerankingService",
    "RerankerConfig",
    # Repository
    "KnowledgeRepository",
    "InMemoryKnowledgeRepository",
    "PostgresKnowledgeRepository",
    # Ingestion
    "IngestionPipeline",
    "IngestionLocks",
    "batch_size_for",
    # Facade
    "KnowledgeBase",
]
