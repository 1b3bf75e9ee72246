"""
Knowledge Base

Caller-facing facade over the knowledge engine: query, knowledge entry
management and file ingestion.

Design decisions:
- Every collaborator is injected; the knowledge base drives their
  initialize/close lifecycle and owns no globals
- Deleting an entry removes its vectors in the same operation
- Queries split top_k between structured knowledge and file chunks,
  then rerank the merged candidates
"""

import math
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from kbengine.config.settings import Settings
from kbengine.core.exceptions import (
    DimensionMismatchError,
    DuplicateEntryError,
    EmbedError,
    EntryNotFoundError,
    KnowledgeValidationError,
    StoreConnectionError,
    StoreError,
)
from kbengine.core.types import (
    CleanupReport,
    IngestionResult,
    KnowledgeEntry,
    KnowledgeType,
    QueryOptions,
    QueryResult,
    SearchHit,
    VectorRecord,
    validate_metadata,
)
from kbengine.knowledge.embeddings import EmbeddingService
from kbengine.knowledge.ingestion import IngestContent, IngestionPipeline
from kbengine.knowledge.repository import KnowledgeRepository
from kbengine.knowledge.reranker import RerankingService
from kbengine.knowledge.vector_store import VectorStore
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.knowledge")

# Keys of caller data that describe the entry rather than its metadata
_ENTRY_FIELDS = {"title", "content", "description"}


def render_content(knowledge_type: KnowledgeType, data: dict[str, Any]) -> str:
    """Text stored as an entry's content."""
    if knowledge_type is KnowledgeType.QA_PAIR:
        return f"Question: {data['question']}\nAnswer: {data['answer']}"
    if knowledge_type is KnowledgeType.SYNONYM:
        return f"Noun: {data['noun']}\nSynonyms: {', '.join(data['synonyms'])}"
    return data.get("content") or data.get("description") or ""


def render_title(knowledge_type: KnowledgeType, data: dict[str, Any]) -> str:
    if data.get("title"):
        return data["title"]
    if knowledge_type is KnowledgeType.QA_PAIR:
        return data["question"][:100]
    if knowledge_type is KnowledgeType.SYNONYM:
        return data["noun"]
    if knowledge_type is KnowledgeType.SEMANTIC_MODEL:
        return data.get("table_name") or data["database_name"]
    if knowledge_type is KnowledgeType.FILE:
        return data.get("filename", "")
    return ""


def render_table(database_name: str, table: dict[str, Any]) -> str:
    """Readable description of one table for its semantic model entry."""
    lines = [f"Database: {database_name}", f"Table: {table['table_name']}"]
    if table.get("description"):
        lines.append(f"Description: {table['description']}")

    columns = table.get("columns") or []
    if columns:
        lines.append("Columns:")
        for column in columns:
            line = f"- {column['name']}"
            if column.get("type"):
                line += f" ({column['type']})"
            if column.get("description"):
                line += f": {column['description']}"
            lines.append(line)
    return "\n".join(lines)


class KnowledgeBase:
    """
    Multi-tenant knowledge engine facade.

    Usage:
        async with KnowledgeBase(repository, store, embeddings, pipeline) as kb:
            await kb.add_knowledge("u1", KnowledgeType.QA_PAIR, {"question": ..., "answer": ...})
            result = await kb.query("how do refunds work?", user_id="u1")
    """

    def __init__(
        self,
        repository: KnowledgeRepository,
        store: VectorStore,
        embeddings: EmbeddingService,
        pipeline: IngestionPipeline,
        reranker: RerankingService | None = None,
        settings: Settings | None = None,
    ):
        self._repository = repository
        self._store = store
        self._embeddings = embeddings
        self._pipeline = pipeline
        self._reranker = reranker
        self._settings = settings or Settings()
        self._initialized = False

    @property
    def repository(self) -> KnowledgeRepository:
        return self._repository

    @property
    def store(self) -> VectorStore:
        return self._store

    # --- lifecycle -----------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._embeddings.dimension != self._store.dimension:
            raise DimensionMismatchError(
                "Embedding service and vector store disagree on dimension",
                expected=self._store.dimension,
                actual=self._embeddings.dimension,
            )
        await self._embeddings.initialize()
        await self._store.initialize()
        await self._repository.initialize()
        self._initialized = True
        logger.info("Knowledge base ready", dimension=self._store.dimension)

    async def close(self) -> None:
        await self._repository.close()
        await self._store.close()
        await self._embeddings.close()
        if self._reranker is not None:
            self._reranker.close()
        self._initialized = False

    async def __aenter__(self) -> "KnowledgeBase":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- query ---------------------------------------------------------

    async def query(
        self,
        query: str,
        user_id: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """
        Search knowledge and files, then rerank.

        Raises:
            EmbedError: If the query cannot be embedded
            DimensionMismatchError: If the store needs a migration
            StoreConnectionError: If the store is unreachable
        """
        started = time.perf_counter()
        options = options or QueryOptions(
            top_k=self._settings.query.default_top_k,
            min_score=self._settings.query.min_score,
        )
        use_reranking = (
            options.use_reranking
            if options.use_reranking is not None
            else self._settings.reranker.enabled
        ) and self._reranker is not None

        types = options.types or list(KnowledgeType)
        knowledge_types = [t for t in types if t is not KnowledgeType.FILE]
        search_files = KnowledgeType.FILE in types
        knowledge_k, file_k = self._split_top_k(options.top_k, bool(knowledge_types), search_files)
        multiplier = self._settings.reranker.candidate_multiplier if use_reranking else 1

        with logger.context(user_id=user_id, entity_id=options.entity_id):
            embedding = await self._embeddings.embed_query(query)

            hits: list[SearchHit] = []
            if knowledge_k:
                hits.extend(
                    await self._store.search(
                        embedding,
                        knowledge_types,
                        knowledge_k * multiplier,
                        options.min_score,
                        user_id=user_id,
                        entity_id=options.entity_id,
                    )
                )
            if file_k:
                hits.extend(await self._search_files(embedding, file_k * multiplier, user_id, options))

            hits.sort(key=lambda h: h.score, reverse=True)

            if use_reranking and options.enhanced_reranking:
                results, reranked = await self._reranker.enhanced_rerank_async(query, hits, options.top_k)
            elif use_reranking:
                results, reranked = await self._reranker.rerank_async(query, hits, options.top_k)
            else:
                results, reranked = RerankingService.fallback(hits, options.top_k), False

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "Query served",
                candidates=len(hits),
                results=len(results),
                reranked=reranked,
                query_time_ms=round(elapsed_ms, 2),
            )

        return QueryResult(
            results=results,
            metadata={
                "total": len(results),
                "candidates": len(hits),
                "reranked": reranked,
                "enhanced_reranking": any(r.hybrid_score is not None for r in results),
                "types": [t.value for t in types],
                "top_k": options.top_k,
                "query_time_ms": round(elapsed_ms, 2),
                "embedding_dimension": self._embeddings.dimension,
            },
        )

    def _split_top_k(self, top_k: int, search_knowledge: bool, search_files: bool) -> tuple[int, int]:
        if search_knowledge and search_files:
            knowledge_k = max(1, round(top_k * self._settings.query.knowledge_share))
            return knowledge_k, max(1, top_k - knowledge_k)
        if search_knowledge:
            return top_k, 0
        return 0, top_k if search_files else 0

    async def _search_files(
        self,
        embedding: list[float],
        limit: int,
        user_id: str | None,
        options: QueryOptions,
    ) -> list[SearchHit]:
        hits = await self._store.search(
            embedding,
            [KnowledgeType.FILE],
            limit,
            options.min_score,
            user_id=user_id,
            entity_id=options.entity_id,
            file_ids=options.file_ids,
        )
        if not options.file_ids or len(hits) >= math.ceil(limit * 0.5):
            return hits

        # Too little in the selected files, widen to every file in scope
        logger.debug("Few hits in selected files, searching all files", hits=len(hits))
        seen = {h.id for h in hits}
        wider = await self._store.search(
            embedding,
            [KnowledgeType.FILE],
            limit,
            options.min_score,
            user_id=user_id,
            entity_id=options.entity_id,
        )
        return hits + [h for h in wider if h.id not in seen]

    # --- knowledge entries ---------------------------------------------

    async def add_knowledge(
        self,
        user_id: str | None,
        knowledge_type: KnowledgeType | str,
        data: dict[str, Any],
        *,
        parent_id: str | None = None,
    ) -> KnowledgeEntry:
        """
        Create a knowledge entry and index its content.

        Raises:
            MetadataValidationError: If type-specific fields are missing
            DuplicateEntryError: If a QA pair with the same or a near-identical
                question exists
            EntryNotFoundError: If parent_id does not exist
        """
        knowledge_type = KnowledgeType(knowledge_type)
        entry = self._build_entry(user_id, knowledge_type, data, parent_id=parent_id)

        if knowledge_type is KnowledgeType.QA_PAIR:
            existing = await self._repository.find_qa(entry.metadata.question, entry.entity_id)
            if existing is not None:
                raise DuplicateEntryError(
                    "A QA pair with this question already exists",
                    context={"existing_id": existing.id},
                )
            similar = await self._similar_question(entry)
            if similar is not None:
                raise DuplicateEntryError(
                    "A QA pair with a near-identical question already exists",
                    context={"existing_id": similar.knowledge_entry_id, "similarity": round(similar.score, 4)},
                )

        with logger.context(user_id=user_id, knowledge_entry_id=entry.id):
            await self._repository.add(entry)
            await self._index_entry(entry)
        return entry

    async def add_knowledge_batch(
        self,
        user_id: str | None,
        entries: Sequence[dict[str, Any]],
    ) -> list[KnowledgeEntry]:
        """
        Add several entries; invalid ones are logged and skipped.

        Each item holds ``type`` and ``data``, and optionally ``parent_id``.
        """
        added = []
        for position, item in enumerate(entries):
            try:
                added.append(
                    await self.add_knowledge(
                        user_id,
                        item["type"],
                        item.get("data") or {},
                        parent_id=item.get("parent_id"),
                    )
                )
            except (KnowledgeValidationError, DuplicateEntryError, EntryNotFoundError, KeyError, ValueError) as e:
                logger.warning("Skipping invalid batch entry", error=e, position=position)
        logger.info("Knowledge batch added", requested=len(entries), added=len(added))
        return added

    async def update_knowledge(
        self,
        entry_id: str,
        user_id: str | None,
        knowledge_type: KnowledgeType | str,
        data: dict[str, Any],
    ) -> KnowledgeEntry:
        """
        Replace an entry's content and metadata, then re-index it.

        Raises:
            EntryNotFoundError: If the entry does not exist for this user
            KnowledgeValidationError: If the type differs from the stored one
        """
        knowledge_type = KnowledgeType(knowledge_type)
        current = await self._owned_entry(entry_id, user_id)
        if current.type is not knowledge_type:
            raise KnowledgeValidationError(
                "The type of an entry cannot change",
                context={"entry_id": entry_id, "current": current.type.value, "requested": knowledge_type.value},
            )

        fresh = self._build_entry(current.user_id, knowledge_type, data, parent_id=current.parent_id)
        if knowledge_type is KnowledgeType.QA_PAIR:
            existing = await self._repository.find_qa(fresh.metadata.question, fresh.entity_id)
            if existing is not None and existing.id != entry_id:
                raise DuplicateEntryError(
                    "A QA pair with this question already exists",
                    context={"existing_id": existing.id},
                )

        updated = current.model_copy(
            update={"title": fresh.title, "content": fresh.content, "metadata": fresh.metadata}
        )
        with logger.context(user_id=user_id, knowledge_entry_id=entry_id):
            updated = await self._repository.update(updated)
            await self._index_entry(updated)
        return updated

    async def delete_knowledge(self, entry_id: str, user_id: str | None) -> bool:
        """
        Delete an entry, its children and every vector they own.

        Returns False if the entry does not exist for this user.
        """
        try:
            await self._owned_entry(entry_id, user_id)
        except EntryNotFoundError:
            return False

        with logger.context(user_id=user_id, knowledge_entry_id=entry_id):
            deleted = await self._repository.delete(entry_id, on_delete=self._drop_vectors)
            logger.info("Knowledge entry deleted", deleted=deleted)
        return deleted

    async def add_database_semantic_model(
        self,
        user_id: str | None,
        database_name: str,
        tables: Sequence[dict[str, Any]],
        *,
        description: str | None = None,
        entity_id: str | None = None,
    ) -> list[KnowledgeEntry]:
        """
        Store a database-level semantic model with one child per table.

        Returns the parent followed by its children.
        """
        summary = description or (
            f"Database: {database_name}\nTables: {', '.join(t['table_name'] for t in tables)}"
        )
        parent = await self.add_knowledge(
            user_id,
            KnowledgeType.SEMANTIC_MODEL,
            {
                "database_name": database_name,
                "is_database_level": True,
                "model_type": "database",
                "content": summary,
                "entity_id": entity_id,
            },
        )

        entries = [parent]
        for table in tables:
            entries.append(
                await self.add_knowledge(
                    user_id,
                    KnowledgeType.SEMANTIC_MODEL,
                    {
                        "database_name": database_name,
                        "table_name": table["table_name"],
                        "is_database_level": False,
                        "model_type": "table",
                        "content": render_table(database_name, table),
                        "entity_id": entity_id,
                    },
                    parent_id=parent.id,
                )
            )
        return entries

    async def list_knowledge(
        self,
        user_id: str | None = None,
        knowledge_type: KnowledgeType | None = None,
        entity_id: str | None = None,
        include_children: bool = False,
        limit: int = 100,
        skip: int = 0,
    ) -> list[KnowledgeEntry]:
        return await self._repository.list_entries(
            user_id=user_id,
            knowledge_type=knowledge_type,
            entity_id=entity_id,
            include_children=include_children,
            limit=limit,
            skip=skip,
        )

    async def cleanup(self) -> CleanupReport:
        """Remove duplicate parents and orphans along with their vectors."""
        return await self._repository.cleanup_duplicates(on_delete=self._drop_vectors)

    # --- files ---------------------------------------------------------

    async def ingest_file(
        self,
        user_id: str | None,
        file_id: str,
        content: IngestContent,
        *,
        entity_id: str | None = None,
        filename: str | None = None,
        file_size: int | None = None,
    ) -> IngestionResult:
        """Chunk, embed and store an uploaded file's text. Never raises."""
        return await self._pipeline.ingest(
            content,
            file_id=file_id,
            user_id=user_id,
            entity_id=entity_id,
            filename=filename,
            file_size=file_size,
        )

    async def ingest_path(
        self,
        user_id: str | None,
        file_id: str,
        path: str | Path,
        *,
        entity_id: str | None = None,
        filename: str | None = None,
    ) -> IngestionResult:
        """Parse a file on disk and ingest it. Never raises."""
        return await self._pipeline.ingest_path(
            path,
            file_id=file_id,
            user_id=user_id,
            entity_id=entity_id,
            filename=filename,
        )

    async def delete_file(self, file_id: str) -> int:
        """Drop every vector stored for a file."""
        return await self._store.delete_by_file(file_id)

    async def migrate_dimension(self, new_dimension: int) -> dict[str, str]:
        """
        Move every vector table to a new dimension.

        Vectors of the old dimension are dropped and must be re-ingested
        with an embedding model of the new dimension.
        """
        status = await self._store.migrate_dimension(new_dimension)
        logger.info("Dimension migration finished", dimension=new_dimension, tables=status)
        return status

    # --- internals -----------------------------------------------------

    def _build_entry(
        self,
        user_id: str | None,
        knowledge_type: KnowledgeType,
        data: dict[str, Any],
        *,
        parent_id: str | None,
    ) -> KnowledgeEntry:
        metadata = validate_metadata(
            knowledge_type,
            {k: v for k, v in data.items() if k not in _ENTRY_FIELDS},
        )
        fields = {**data, **metadata.model_dump()}
        return KnowledgeEntry(
            type=knowledge_type,
            title=render_title(knowledge_type, fields),
            content=render_content(knowledge_type, fields),
            metadata=metadata,
            parent_id=parent_id,
            user_id=user_id,
        )

    async def _owned_entry(self, entry_id: str, user_id: str | None) -> KnowledgeEntry:
        entry = await self._repository.get(entry_id)
        if entry is None or (entry.user_id is not None and entry.user_id != user_id):
            raise EntryNotFoundError(
                f"Knowledge entry {entry_id} not found",
                context={"entry_id": entry_id},
            )
        return entry

    async def _drop_vectors(self, entry: KnowledgeEntry) -> None:
        removed = await self._store.delete_by_entry(entry.id)
        if entry.file_id:
            removed += await self._store.delete_by_file(entry.file_id)
        logger.debug("Dropped entry vectors", knowledge_entry_id=entry.id, removed=removed)

    def _vector_metadata(self, entry: KnowledgeEntry) -> dict[str, Any]:
        return {
            **entry.metadata.model_dump(mode="json", exclude_none=True),
            "title": entry.title,
            "parent_id": entry.parent_id,
        }

    async def _index_entry(self, entry: KnowledgeEntry) -> None:
        """
        Embed an entry's content into its type's table.

        Failures are logged and leave the entry without vectors; a later
        update re-indexes it.
        """
        if entry.type is KnowledgeType.BUSINESS_KNOWLEDGE and entry.file_id:
            logger.debug("Entry is backed by file vectors, not embedding", file_id=entry.file_id)
            return

        if entry.type is KnowledgeType.QA_PAIR:
            await self._index_question(entry)
            return

        if not entry.content.strip():
            await self._store.delete_by_entry(entry.id, [entry.type])
            return

        result = await self._pipeline.ingest(
            entry.content,
            knowledge_entry_id=entry.id,
            knowledge_type=entry.type,
            file_id=entry.file_id,
            user_id=entry.user_id,
            entity_id=entry.entity_id,
            metadata=self._vector_metadata(entry),
        )
        if not result.embedded:
            logger.error("Knowledge entry stored without vectors", reason=result.error)

    async def _similar_question(self, entry: KnowledgeEntry) -> SearchHit | None:
        """
        Closest stored QA pair whose question is semantically the same.

        A failing lookup never blocks the add.
        """
        try:
            embedding = await self._embeddings.embed_query(entry.metadata.question)
            hits = await self._store.search(
                embedding,
                [KnowledgeType.QA_PAIR],
                1,
                self._settings.query.duplicate_qa_min_score,
                user_id=entry.user_id,
                entity_id=entry.entity_id,
            )
        except (EmbedError, StoreError, DimensionMismatchError) as e:
            logger.warning("Similar question lookup failed, not blocking add", error=e)
            return None
        return hits[0] if hits else None

    async def _index_question(self, entry: KnowledgeEntry) -> None:
        """QA pairs are matched on the question alone but return the full pair."""
        try:
            embedding = await self._embeddings.embed(entry.metadata.question)
            await self._store.delete_by_entry(entry.id, [entry.type])
            await self._store.upsert(
                [
                    VectorRecord(
                        knowledge_entry_id=entry.id,
                        type=entry.type,
                        content=entry.content,
                        embedding=embedding,
                        user_id=entry.user_id,
                        entity_id=entry.entity_id,
                        metadata=self._vector_metadata(entry),
                    )
                ]
            )
        except (DimensionMismatchError, StoreConnectionError):
            raise
        except (EmbedError, StoreError) as e:
            logger.error("Knowledge entry stored without vectors", error=e)
