"""
Core Types and Data Structures

Defines the fundamental types shared by every knowledge engine component:
the knowledge type enum, typed per-type metadata, knowledge entries,
vector records and the result objects returned to callers.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, ValidationError, model_validator

from kbengine.core.exceptions import KnowledgeValidationError, MetadataValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def strip_nul(value: Any) -> Any:
    """Remove NUL characters from strings nested anywhere in value."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {strip_nul(k): strip_nul(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [strip_nul(v) for v in value]
    return value


class KnowledgeType(str, Enum):
    """
    Kinds of knowledge the engine stores.

    Every type owns exactly one vector table named ``<value>_vectors``.
    """

    SEMANTIC_MODEL = "semantic_model"
    QA_PAIR = "qa_pair"
    SYNONYM = "synonym"
    BUSINESS_KNOWLEDGE = "business_knowledge"
    FILE = "file"

    @property
    def table_name(self) -> str:
        return f"{self.value}_vectors"

    @classmethod
    def knowledge_types(cls) -> list["KnowledgeType"]:
        """All types except raw file chunks."""
        return [t for t in cls if t is not cls.FILE]


# ============================================================
# Typed Metadata
# ============================================================

class KnowledgeMetadata(BaseModel):
    """Base metadata shared by all knowledge types."""

    model_config = ConfigDict(extra="allow")

    entity_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _strip_nul(cls, data: Any) -> Any:
        return strip_nul(data) if isinstance(data, dict) else data


class SemanticModelMetadata(KnowledgeMetadata):
    """Metadata for a database or table semantic model."""

    database_name: str = Field(min_length=1)
    table_name: str | None = None
    semantic_model_id: str | None = None
    is_database_level: bool = False
    model_type: str | None = None

    @property
    def natural_key(self) -> tuple[str, bool]:
        return (self.database_name, self.is_database_level)


class QAPairMetadata(KnowledgeMetadata):
    """Metadata for a question/answer pair."""

    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)


class SynonymMetadata(KnowledgeMetadata):
    """Metadata for a noun and its synonyms."""

    noun: str = Field(min_length=1)
    synonyms: list[str] = Field(min_length=1)


class BusinessKnowledgeMetadata(KnowledgeMetadata):
    """Metadata for free-form business knowledge, optionally backed by a file."""

    category: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    file_id: str | None = None
    filename: str | None = None


class FileMetadata(KnowledgeMetadata):
    """Metadata for an uploaded file."""

    file_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


METADATA_MODELS: dict[KnowledgeType, type[KnowledgeMetadata]] = {
    KnowledgeType.SEMANTIC_MODEL: SemanticModelMetadata,
    KnowledgeType.QA_PAIR: QAPairMetadata,
    KnowledgeType.SYNONYM: SynonymMetadata,
    KnowledgeType.BUSINESS_KNOWLEDGE: BusinessKnowledgeMetadata,
    KnowledgeType.FILE: FileMetadata,
}


def validate_metadata(
    knowledge_type: KnowledgeType,
    data: dict[str, Any] | KnowledgeMetadata | None,
) -> KnowledgeMetadata:
    """
    Validate metadata against the model for its knowledge type.

    Raises:
        MetadataValidationError: If required keys are missing or invalid
    """
    model = METADATA_MODELS[KnowledgeType(knowledge_type)]
    if isinstance(data, model):
        return data
    if isinstance(data, KnowledgeMetadata):
        data = data.model_dump()

    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise MetadataValidationError(
            f"Invalid metadata for knowledge type '{knowledge_type.value}'",
            knowledge_type=knowledge_type.value,
            errors=errors,
            cause=e,
        ) from e


# ============================================================
# Knowledge Entries
# ============================================================

class KnowledgeEntry(BaseModel):
    """
    A logical unit of stored knowledge.

    An entry owns zero or more vector records. Entries form a hierarchy
    at most one level deep: a child's parent is always a parent entry.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: KnowledgeType
    title: str = ""
    content: str = ""
    metadata: SerializeAsAny[KnowledgeMetadata]
    parent_id: str | None = None

    # Owner scope, None means shared
    user_id: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Populated by listings that include children
    children: list["KnowledgeEntry"] | None = None

    @model_validator(mode="before")
    @classmethod
    def _typed_metadata(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data:
            data = dict(data)
            data["metadata"] = validate_metadata(
                KnowledgeType(data["type"]), data.get("metadata")
            )
            for key in ("title", "content"):
                if isinstance(data.get(key), str):
                    data[key] = strip_nul(data[key])
        return data

    @model_validator(mode="after")
    def _check_parent(self) -> "KnowledgeEntry":
        if self.parent_id is not None and self.parent_id == self.id:
            raise KnowledgeValidationError(
                "An entry cannot be its own parent",
                context={"entry_id": self.id},
            )
        return self

    @property
    def is_parent(self) -> bool:
        return self.parent_id is None

    @property
    def entity_id(self) -> str | None:
        return self.metadata.entity_id

    @property
    def file_id(self) -> str | None:
        return getattr(self.metadata, "file_id", None)


# ============================================================
# Vectors and Search Results
# ============================================================

@dataclass
class TextSegment:
    """A pre-split piece of text handed over by a parser."""

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorRecord:
    """
    One embedded chunk belonging to a knowledge entry.

    The id is derived from the owning entry and chunk index so that
    re-upserting the same chunk overwrites it.
    """

    knowledge_entry_id: str
    type: KnowledgeType
    content: str
    embedding: list[float]
    chunk_index: int = 0
    user_id: str | None = None
    entity_id: str | None = None
    file_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.knowledge_entry_id}:{self.chunk_index}"
        self.content = strip_nul(self.content)
        self.metadata = strip_nul(self.metadata)


@dataclass
class SearchHit:
    """A vector search candidate."""

    id: str
    knowledge_entry_id: str
    type: KnowledgeType
    content: str
    score: float
    chunk_index: int = 0
    user_id: str | None = None
    entity_id: str | None = None
    file_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    # Position within its own type's result list
    rank: int = 0


@dataclass
class RankedResult:
    """A final, ranked query result."""

    id: str
    knowledge_entry_id: str
    type: KnowledgeType
    content: str
    score: float
    original_score: float
    rerank_score: float | None = None
    hybrid_score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_hit(cls, hit: SearchHit, rerank_score: float | None = None) -> "RankedResult":
        return cls(
            id=hit.id,
            knowledge_entry_id=hit.knowledge_entry_id,
            type=hit.type,
            content=hit.content,
            score=rerank_score if rerank_score is not None else hit.score,
            original_score=hit.score,
            rerank_score=rerank_score,
            metadata={**hit.metadata, "file_id": hit.file_id, "entity_id": hit.entity_id},
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


class QueryOptions(BaseModel):
    """Options for a knowledge query."""

    types: list[KnowledgeType] | None = None
    file_ids: list[str] | None = None
    entity_id: str | None = None
    top_k: int = Field(default=10, ge=1, le=200)
    min_score: float = Field(default=0.5, ge=-1.0, le=1.0)

    # None defers to the deployment's reranker flag
    use_reranking: bool | None = None

    # Blend rerank scores with type priority and rank position
    enhanced_reranking: bool = False


@dataclass
class QueryResult:
    """Results of a query plus information about how they were produced."""

    results: list[RankedResult]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestionResult:
    """
    Structured outcome of ingesting one file or knowledge item.

    Ingestion never raises; failures are reported here instead.
    """

    embedded: bool
    bytes: int
    filename: str | None = None
    file_id: str | None = None
    chunks_total: int = 0
    chunks_embedded: int = 0
    chunks_stored: int = 0
    batches_failed: int = 0
    batch_size: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupReport:
    """Entries removed by a duplicate cleanup run."""

    duplicate_parents: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return len(self.duplicate_parents) + len(self.children) + len(self.orphans)
