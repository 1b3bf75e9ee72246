"""
Test Configuration

Shared fixtures. Nothing here needs a database or a downloaded model:
embeddings are deterministic token hashes and stores live in memory.
"""

import pytest
import pytest_asyncio

from kbengine.config.settings import (
    EmbeddingSettings,
    RerankerSettings,
    Settings,
    VectorStoreSettings,
)
from kbengine.knowledge.chunking import StreamingChunker
from kbengine.knowledge.ingestion import IngestionPipeline
from kbengine.knowledge.repository import InMemoryKnowledgeRepository
from kbengine.knowledge.service import KnowledgeBase
from kbengine.knowledge.vector_store import InMemoryVectorStore
from kbengine.observability.logging import BufferHandler, ConsoleHandler, configure_logging
from tests.fixtures import TEST_DIMENSION, FakeEmbeddings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        embedding=EmbeddingSettings(dimension=TEST_DIMENSION),
        vector_store=VectorStoreSettings(provider="memory"),
        reranker=RerankerSettings(enabled=False),
    )


@pytest.fixture
def embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore(TEST_DIMENSION)


@pytest.fixture
def repository() -> InMemoryKnowledgeRepository:
    return InMemoryKnowledgeRepository()


@pytest.fixture
def chunker() -> StreamingChunker:
    return StreamingChunker(chunk_size=1000, overlap=150)


@pytest.fixture
def pipeline(chunker, embeddings, store, settings) -> IngestionPipeline:
    return IngestionPipeline(chunker, embeddings, store, settings.ingestion)


@pytest_asyncio.fixture
async def knowledge_base(repository, store, embeddings, pipeline, settings):
    """Initialized knowledge base over in-memory backends, no reranker."""
    kb = KnowledgeBase(
        repository=repository,
        store=store,
        embeddings=embeddings,
        pipeline=pipeline,
        settings=settings,
    )
    async with kb:
        yield kb


@pytest.fixture
def log_buffer():
    """Capture every log record emitted during the test."""
    buffer = BufferHandler()
    configure_logging(handlers=[buffer])
    yield buffer
    configure_logging(handlers=[ConsoleHandler()])


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
