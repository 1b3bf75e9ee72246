"""
Exception Hierarchy

Defines all exceptions raised by the knowledge engine.
Exceptions carry structured context so ingestion results and logs can
report what failed without parsing messages.

Design decisions:
- All exceptions inherit from KnowledgeEngineError for easy catching
- Recoverable errors (embed, store) are separate from fatal ones
  (parse, dimension mismatch) so callers can branch on type
- Error codes enable programmatic handling
"""

from typing import Any


class KnowledgeEngineError(Exception):
    """
    Base exception for all knowledge engine errors.

    Provides structured error information including:
    - Human-readable message
    - Machine-readable error code
    - Additional context for debugging
    """

    error_code: str = "KNOWLEDGE_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.error_code
        self.context = context or {}
        self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for structured results."""
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


# ============================================================
# Configuration Errors
# ============================================================

class ConfigurationError(KnowledgeEngineError):
    """Error in configuration or settings."""

    error_code = "CONFIGURATION_ERROR"


# ============================================================
# Ingestion Errors
# ============================================================

class ParseError(KnowledgeEngineError):
    """Source document is corrupt or of an unsupported format."""

    error_code = "PARSE_ERROR"


class EmbedError(KnowledgeEngineError):
    """Embedding a single text failed. Recoverable: the chunk is skipped."""

    error_code = "EMBED_ERROR"


class DimensionMismatchError(KnowledgeEngineError):
    """
    Embedding dimension differs from the deployment dimension.

    Fatal. Requires an explicit migration and is never coerced.
    """

    error_code = "DIMENSION_MISMATCH"

    def __init__(
        self,
        message: str,
        *,
        expected: int,
        actual: int,
        **kwargs: Any,
    ):
        kwargs.setdefault("context", {})
        kwargs["context"].update({"expected": expected, "actual": actual})
        super().__init__(message, **kwargs)
        self.expected = expected
        self.actual = actual


# ============================================================
# Vector Store Errors
# ============================================================

class StoreError(KnowledgeEngineError):
    """A store read or write failed. Recoverable per batch."""

    error_code = "STORE_ERROR"


class StoreConnectionError(StoreError):
    """The store is unreachable."""

    error_code = "STORE_CONNECTION_ERROR"


# ============================================================
# Knowledge Entry Errors
# ============================================================

class KnowledgeValidationError(KnowledgeEngineError):
    """An entry violates a write-time invariant."""

    error_code = "KNOWLEDGE_VALIDATION_ERROR"


class MetadataValidationError(KnowledgeValidationError):
    """Typed metadata is missing required keys or has invalid values."""

    error_code = "METADATA_VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        knowledge_type: str,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("context", {})
        kwargs["context"].update({"type": knowledge_type, "errors": errors or []})
        super().__init__(message, **kwargs)
        self.knowledge_type = knowledge_type
        self.errors = errors or []


class EntryNotFoundError(KnowledgeEngineError):
    """Knowledge entry does not exist."""

    error_code = "ENTRY_NOT_FOUND"


class DuplicateEntryError(KnowledgeEngineError):
    """An equivalent entry already exists."""

    error_code = "DUPLICATE_ENTRY"


# ============================================================
# Reranking Errors
# ============================================================

class RerankError(KnowledgeEngineError):
    """Cross-encoder scoring failed."""

    error_code = "RERANK_ERROR"
