"""
Core Module

Contains the types and exceptions shared by every knowledge engine
component. Nothing here performs I/O.
"""

from kbengine.core.exceptions import (
    ConfigurationError,
    DimensionMismatchError,
    DuplicateEntryError,
    EmbedError,
    EntryNotFoundError,
    KnowledgeEngineError,
    KnowledgeValidationError,
    MetadataValidationError,
    ParseError,
    RerankError,
    StoreConnectionError,
    StoreError,
)
from kbengine.core.types import (
    METADATA_MODELS,
    BusinessKnowledgeMetadata,
    CleanupReport,
    FileMetadata,
    IngestionResult,
    KnowledgeEntry,
    KnowledgeMetadata,
    KnowledgeType,
    QAPairMetadata,
    QueryOptions,
    QueryResult,
    RankedResult,
    SearchHit,
    SemanticModelMetadata,
    SynonymMetadata,
    TextSegment,
    VectorRecord,
    validate_metadata,
)

__all__ = [
    # Types
    "KnowledgeType",
    "KnowledgeMetadata",
    "SemanticModelMetadata",
    "QAPairMetadata",
    "SynonymMetadata",
    "BusinessKnowledgeMetadata",
    "FileMetadata",
    "METADATA_MODELS",
    "validate_metadata",
    "KnowledgeEntry",
    "TextSegment",
    "VectorRecord",
    "SearchHit",
    "RankedResult",
    "QueryOptions",
    "QueryResult",
    "IngestionResult",
    "CleanupReport",
    # Exceptions
    "KnowledgeEngineError",
    "ConfigurationError",
    "ParseError",
    "EmbedError",
    "DimensionMismatchError",
    "StoreError",
    "StoreConnectionError",
    "KnowledgeValidationError",
    "MetadataValidationError",
    "EntryNotFoundError",
    "DuplicateEntryError",
    "RerankError",
]
