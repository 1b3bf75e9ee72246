"""
Vector Store

Store and search chunk embeddings in one table per knowledge type.

Design decisions:
- Abstract interface for backend independence
- One table and one HNSW (cosine) index per knowledge type, so each
  type's index is maintained and migrated independently
- Multi-type search reads each table on its own and merges; a failing
  table degrades to no results for that type
- Dimension is fixed per deployment; mismatches are rejected, never coerced
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import asyncpg
import numpy as np
from asyncpg import exceptions as pg_exc
from pgvector.asyncpg import register_vector

from kbengine.core.exceptions import DimensionMismatchError, StoreConnectionError, StoreError
from kbengine.core.types import KnowledgeType, SearchHit, VectorRecord
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.vector_store")


@dataclass
class SearchScope:
    """
    Tenant scope applied to every search.

    A user sees their own rows plus shared rows (no owner).
    """

    user_id: str | None = None
    entity_id: str | None = None
    file_ids: list[str] | None = None


def merge_hits(
    groups: Sequence[Sequence[SearchHit]],
    types: Sequence[KnowledgeType],
    top_k: int,
) -> list[SearchHit]:
    """
    Merge per-type candidate lists.

    Ordered by score descending, then by rank within the hit's own type,
    then by the order types were requested in.
    """
    order = {t: i for i, t in enumerate(types)}
    merged = [hit for group in groups for hit in group]
    merged.sort(key=lambda h: (-h.score, h.rank, order.get(h.type, len(order))))
    return merged[:top_k]


class VectorStore(ABC):
    """
    Abstract vector store interface.

    Provides storage and similarity search for chunk embeddings.
    """

    def __init__(self, dimension: int):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        """Expected embedding dimension."""
        return self._dimension

    async def initialize(self) -> None:
        """Create tables and indexes, verify the dimension."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace records by id. Returns the number written."""

    @abstractmethod
    async def delete_by_entry(
        self,
        knowledge_entry_id: str,
        types: Iterable[KnowledgeType] | None = None,
    ) -> int:
        """Delete every chunk of an entry. Returns the number deleted."""

    @abstractmethod
    async def delete_by_file(self, file_id: str) -> int:
        """Delete every chunk belonging to a file. Returns the number deleted."""

    @abstractmethod
    async def count(
        self,
        knowledge_type: KnowledgeType | None = None,
        *,
        knowledge_entry_id: str | None = None,
        file_id: str | None = None,
    ) -> int:
        """Count stored chunks matching the filters."""

    @abstractmethod
    async def migrate_dimension(self, new_dimension: int) -> dict[str, str]:
        """
        Move every table to a new embedding dimension.

        Returns a status per table: migrated, skipped or failed.
        """

    @abstractmethod
    async def _search_type(
        self,
        knowledge_type: KnowledgeType,
        query_embedding: list[float],
        limit: int,
        min_score: float,
        scope: SearchScope,
    ) -> list[SearchHit]:
        """Search a single type's table, best first."""

    async def search(
        self,
        query_embedding: Sequence[float],
        types: Sequence[KnowledgeType] | None = None,
        top_k: int = 10,
        min_score: float = 0.5,
        *,
        user_id: str | None = None,
        entity_id: str | None = None,
        file_ids: Sequence[str] | None = None,
    ) -> list[SearchHit]:
        """
        Similarity search across knowledge types.

        Raises:
            DimensionMismatchError: If the query dimension differs from the store's
            StoreConnectionError: If the store is unreachable
        """
        query = [float(x) for x in query_embedding]
        self._check_dimension(len(query))

        types = list(types) if types else list(KnowledgeType)
        scope = SearchScope(
            user_id=user_id,
            entity_id=entity_id,
            file_ids=list(file_ids) if file_ids else None,
        )

        groups = []
        for knowledge_type in types:
            try:
                hits = await self._search_type(knowledge_type, query, top_k, min_score, scope)
            except StoreConnectionError:
                raise
            except StoreError as e:
                logger.warning(
                    "Search failed for one knowledge type, continuing without it",
                    error=e,
                    type=knowledge_type.value,
                )
                continue

            for rank, hit in enumerate(hits):
                hit.rank = rank
            groups.append(hits)

        return merge_hits(groups, types, top_k)

    def _check_dimension(self, actual: int) -> None:
        if actual != self._dimension:
            raise DimensionMismatchError(
                f"Vector has dimension {actual}, store expects {self._dimension}",
                expected=self._dimension,
                actual=actual,
            )

    def _check_records(self, records: Sequence[VectorRecord]) -> None:
        for record in records:
            self._check_dimension(len(record.embedding))


# ============================================================
# PostgreSQL + pgvector
# ============================================================

CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    pg_exc.PostgresConnectionError,
    pg_exc.ConnectionDoesNotExistError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
)

_COLUMNS = "id, knowledge_entry_id, user_id, entity_id, file_id, chunk_index, content, metadata"


def _decode_metadata(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return dict(value or {})


def _affected(status: str) -> int:
    """Row count from a command status such as 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PgVectorStore(VectorStore):
    """
    PostgreSQL vector store using the pgvector extension.

    Tables are named ``<type>_vectors`` and carry an HNSW index named
    ``idx_<table>_embedding_hnsw``. Each upsert batch is one transaction;
    a failed batch never rolls back batches committed before it.
    """

    def __init__(
        self,
        dsn: str,
        dimension: int,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout: float = 60.0,
        hnsw_m: int = 16,
        hnsw_ef_construction: int = 64,
        pool: Any = None,
    ):
        super().__init__(dimension)
        self._dsn = dsn
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._command_timeout = command_timeout
        self._hnsw_m = hnsw_m
        self._hnsw_ef_construction = hnsw_ef_construction
        self._pool = pool
        self._owns_pool = pool is None

    @staticmethod
    async def _init_connection(conn) -> None:
        await register_vector(conn)

    async def _get_pool(self):
        if self._pool is None:
            try:
                conn = await asyncpg.connect(self._dsn, timeout=self._command_timeout)
                try:
                    await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
                finally:
                    await conn.close()

                self._pool = await asyncpg.create_pool(
                    self._dsn,
                    min_size=self._min_pool_size,
                    max_size=self._max_pool_size,
                    command_timeout=self._command_timeout,
                    init=self._init_connection,
                )
            except CONNECTION_ERRORS as e:
                raise StoreConnectionError(
                    f"Cannot connect to vector store: {e}", cause=e
                ) from e
            logger.info("Vector store pool created", max_pool_size=self._max_pool_size)
        return self._pool

    async def get_pool(self):
        """Shared asyncpg pool, created on first use."""
        return await self._get_pool()

    def _index_sql(self, table: str) -> str:
        return (
            f"CREATE INDEX IF NOT EXISTS idx_{table}_embedding_hnsw ON {table} "
            f"USING hnsw (embedding vector_cosine_ops) "
            f"WITH (m = {self._hnsw_m}, ef_construction = {self._hnsw_ef_construction})"
        )

    def _table_sql(self, table: str) -> list[str]:
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                knowledge_entry_id TEXT NOT NULL,
                user_id TEXT,
                entity_id TEXT,
                file_id TEXT,
                chunk_index INTEGER NOT NULL DEFAULT 0,
                content TEXT NOT NULL,
                embedding vector({self._dimension}) NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            self._index_sql(table),
            f"CREATE INDEX IF NOT EXISTS idx_{table}_knowledge_entry_id ON {table} (knowledge_entry_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_file_id ON {table} (file_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_entity_id ON {table} (entity_id)",
        ]

    async def initialize(self) -> None:
        pool = await self._get_pool()

        async with self._errors("initialize"):
            async with pool.acquire() as conn:
                for knowledge_type in KnowledgeType:
                    table = knowledge_type.table_name
                    for statement in self._table_sql(table):
                        await conn.execute(statement)

                    existing = await conn.fetchval(
                        "SELECT atttypmod FROM pg_attribute "
                        "WHERE attrelid = $1::regclass AND attname = 'embedding'",
                        table,
                    )
                    if existing is not None and existing > 0 and existing != self._dimension:
                        raise DimensionMismatchError(
                            f"Table {table} stores {existing}-dimensional vectors, "
                            f"deployment expects {self._dimension}; run migrate_dimension",
                            expected=self._dimension,
                            actual=existing,
                            context={"table": table},
                        )

        logger.info("Vector tables ready", dimension=self._dimension)

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
        self._pool = None

    def _errors(self, operation: str, **context: Any) -> "StoreErrors":
        return StoreErrors(operation, context)

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        if not records:
            return 0
        self._check_records(records)

        by_type: dict[KnowledgeType, list[tuple]] = {}
        for r in records:
            by_type.setdefault(r.type, []).append(
                (
                    r.id,
                    r.knowledge_entry_id,
                    r.user_id,
                    r.entity_id,
                    r.file_id,
                    r.chunk_index,
                    r.content,
                    np.asarray(r.embedding, dtype=np.float32),
                    json.dumps(r.metadata, ensure_ascii=False, default=str),
                )
            )

        pool = await self._get_pool()
        async with self._errors("upsert", records=len(records)):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for knowledge_type, rows in by_type.items():
                        await conn.executemany(
                            f"""
                            INSERT INTO {knowledge_type.table_name}
                                (id, knowledge_entry_id, user_id, entity_id, file_id,
                                 chunk_index, content, embedding, metadata)
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                            ON CONFLICT (id) DO UPDATE SET
                                knowledge_entry_id = EXCLUDED.knowledge_entry_id,
                                user_id = EXCLUDED.user_id,
                                entity_id = EXCLUDED.entity_id,
                                file_id = EXCLUDED.file_id,
                                chunk_index = EXCLUDED.chunk_index,
                                content = EXCLUDED.content,
                                embedding = EXCLUDED.embedding,
                                metadata = EXCLUDED.metadata
                            """,
                            rows,
                        )

        return len(records)

    async def _delete_where(self, column: str, value: str, types: Iterable[KnowledgeType]) -> int:
        pool = await self._get_pool()
        deleted = 0
        async with self._errors("delete", column=column, value=value):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for knowledge_type in types:
                        status = await conn.execute(
                            f"DELETE FROM {knowledge_type.table_name} WHERE {column} = $1",
                            value,
                        )
                        deleted += _affected(status)
        return deleted

    async def delete_by_entry(
        self,
        knowledge_entry_id: str,
        types: Iterable[KnowledgeType] | None = None,
    ) -> int:
        deleted = await self._delete_where(
            "knowledge_entry_id", knowledge_entry_id, types or list(KnowledgeType)
        )
        logger.debug("Deleted entry vectors", knowledge_entry_id=knowledge_entry_id, deleted=deleted)
        return deleted

    async def delete_by_file(self, file_id: str) -> int:
        deleted = await self._delete_where("file_id", file_id, list(KnowledgeType))
        logger.debug("Deleted file vectors", file_id=file_id, deleted=deleted)
        return deleted

    async def count(
        self,
        knowledge_type: KnowledgeType | None = None,
        *,
        knowledge_entry_id: str | None = None,
        file_id: str | None = None,
    ) -> int:
        conditions = []
        args: list[Any] = []
        if knowledge_entry_id is not None:
            args.append(knowledge_entry_id)
            conditions.append(f"knowledge_entry_id = ${len(args)}")
        if file_id is not None:
            args.append(file_id)
            conditions.append(f"file_id = ${len(args)}")
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

        types = [knowledge_type] if knowledge_type else list(KnowledgeType)
        pool = await self._get_pool()
        total = 0
        async with self._errors("count"):
            async with pool.acquire() as conn:
                for t in types:
                    total += await conn.fetchval(f"SELECT count(*) FROM {t.table_name}{where}", *args)
        return total

    async def _search_type(
        self,
        knowledge_type: KnowledgeType,
        query_embedding: list[float],
        limit: int,
        min_score: float,
        scope: SearchScope,
    ) -> list[SearchHit]:
        args: list[Any] = [np.asarray(query_embedding, dtype=np.float32), min_score]
        conditions = ["1 - (embedding <=> $1) >= $2"]

        if scope.user_id is not None:
            args.append(scope.user_id)
            conditions.append(f"(user_id = ${len(args)} OR user_id IS NULL)")
        if scope.entity_id is not None:
            args.append(scope.entity_id)
            conditions.append(f"entity_id = ${len(args)}")
        if scope.file_ids:
            args.append(scope.file_ids)
            conditions.append(f"file_id = ANY(${len(args)}::text[])")

        args.append(limit)
        sql = (
            f"SELECT {_COLUMNS}, 1 - (embedding <=> $1) AS similarity "
            f"FROM {knowledge_type.table_name} "
            f"WHERE {' AND '.join(conditions)} "
            f"ORDER BY embedding <=> $1 "
            f"LIMIT ${len(args)}"
        )

        pool = await self._get_pool()
        async with self._errors("search", type=knowledge_type.value):
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)

        return [
            SearchHit(
                id=row["id"],
                knowledge_entry_id=row["knowledge_entry_id"],
                type=knowledge_type,
                content=row["content"],
                score=float(row["similarity"]),
                chunk_index=row["chunk_index"],
                user_id=row["user_id"],
                entity_id=row["entity_id"],
                file_id=row["file_id"],
                metadata=_decode_metadata(row["metadata"]),
            )
            for row in rows
        ]

    async def migrate_dimension(self, new_dimension: int) -> dict[str, str]:
        pool = await self._get_pool()
        status: dict[str, str] = {}

        for knowledge_type in KnowledgeType:
            table = knowledge_type.table_name
            try:
                async with pool.acquire() as conn:
                    exists = await conn.fetchval("SELECT to_regclass($1)", table)
                    if exists is None:
                        logger.info("Table absent, skipping dimension migration", table=table)
                        status[table] = "skipped"
                        continue

                    async with conn.transaction():
                        await conn.execute(f"DROP INDEX IF EXISTS idx_{table}_embedding_hnsw")
                        dropped = await conn.execute(
                            f"DELETE FROM {table} WHERE vector_dims(embedding) <> $1",
                            new_dimension,
                        )
                        await conn.execute(
                            f"ALTER TABLE {table} ALTER COLUMN embedding TYPE vector({new_dimension})"
                        )
                        await conn.execute(self._index_sql(table))

                status[table] = "migrated"
                logger.info(
                    "Migrated table dimension",
                    table=table,
                    dimension=new_dimension,
                    rows_dropped=_affected(dropped),
                )
            except CONNECTION_ERRORS as e:
                raise StoreConnectionError(f"Vector store unreachable: {e}", cause=e) from e
            except pg_exc.PostgresError as e:
                logger.error("Dimension migration failed for table", error=e, table=table)
                status[table] = "failed"

        failed = [table for table, outcome in status.items() if outcome == "failed"]
        if failed:
            # Some columns still hold the old dimension; keep rejecting new vectors
            logger.error(
                "Dimension migration incomplete, keeping current dimension",
                dimension=self._dimension,
                failed_tables=failed,
            )
        else:
            self._dimension = new_dimension
        return status


class StoreErrors:
    """
    Translate driver errors into store errors.

    Shared by every asyncpg-backed store; ``label`` names the store in
    error messages.
    """

    def __init__(self, operation: str, context: dict[str, Any], label: str = "Vector store"):
        self._operation = operation
        self._context = context
        self._label = label

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None or isinstance(exc, (StoreError, DimensionMismatchError)):
            return False
        context = {"operation": self._operation, **self._context}
        if isinstance(exc, CONNECTION_ERRORS):
            raise StoreConnectionError(
                f"{self._label} unreachable during {self._operation}: {exc}",
                context=context,
                cause=exc,
            ) from exc
        if isinstance(exc, (pg_exc.PostgresError, pg_exc.InterfaceError)):
            raise StoreError(
                f"{self._label} {self._operation} failed: {exc}",
                context=context,
                cause=exc,
            ) from exc
        return False


# ============================================================
# In-memory
# ============================================================

class InMemoryVectorStore(VectorStore):
    """
    In-memory vector store for testing and development.

    Uses brute-force cosine similarity.
    """

    def __init__(self, dimension: int, types: Iterable[KnowledgeType] | None = None):
        super().__init__(dimension)
        self._tables: dict[KnowledgeType, dict[str, VectorRecord]] = {
            t: {} for t in (types if types is not None else KnowledgeType)
        }

    def _table(self, knowledge_type: KnowledgeType) -> dict[str, VectorRecord]:
        try:
            return self._tables[knowledge_type]
        except KeyError:
            raise StoreError(
                f"Table {knowledge_type.table_name} does not exist",
                context={"type": knowledge_type.value},
            ) from None

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        self._check_records(records)
        for record in records:
            self._table(record.type)[record.id] = record
        return len(records)

    async def delete_by_entry(
        self,
        knowledge_entry_id: str,
        types: Iterable[KnowledgeType] | None = None,
    ) -> int:
        deleted = 0
        for knowledge_type in types or list(self._tables):
            table = self._tables.get(knowledge_type, {})
            for record_id in [i for i, r in table.items() if r.knowledge_entry_id == knowledge_entry_id]:
                del table[record_id]
                deleted += 1
        return deleted

    async def delete_by_file(self, file_id: str) -> int:
        deleted = 0
        for table in self._tables.values():
            for record_id in [i for i, r in table.items() if r.file_id == file_id]:
                del table[record_id]
                deleted += 1
        return deleted

    async def count(
        self,
        knowledge_type: KnowledgeType | None = None,
        *,
        knowledge_entry_id: str | None = None,
        file_id: str | None = None,
    ) -> int:
        tables = [self._tables.get(knowledge_type, {})] if knowledge_type else self._tables.values()
        return sum(
            1
            for table in tables
            for r in table.values()
            if (knowledge_entry_id is None or r.knowledge_entry_id == knowledge_entry_id)
            and (file_id is None or r.file_id == file_id)
        )

    async def _search_type(
        self,
        knowledge_type: KnowledgeType,
        query_embedding: list[float],
        limit: int,
        min_score: float,
        scope: SearchScope,
    ) -> list[SearchHit]:
        candidates = [
            r
            for r in self._table(knowledge_type).values()
            if (scope.user_id is None or r.user_id in (None, scope.user_id))
            and (scope.entity_id is None or r.entity_id == scope.entity_id)
            and (not scope.file_ids or r.file_id in scope.file_ids)
        ]
        if not candidates:
            return []

        query = np.asarray(query_embedding, dtype=np.float32)
        matrix = np.asarray([r.embedding for r in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(candidates), dtype=np.float32), where=norms > 0)

        hits = [
            SearchHit(
                id=r.id,
                knowledge_entry_id=r.knowledge_entry_id,
                type=knowledge_type,
                content=r.content,
                score=float(score),
                chunk_index=r.chunk_index,
                user_id=r.user_id,
                entity_id=r.entity_id,
                file_id=r.file_id,
                metadata=dict(r.metadata),
            )
            for r, score in zip(candidates, scores)
            if score >= min_score
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    async def migrate_dimension(self, new_dimension: int) -> dict[str, str]:
        status: dict[str, str] = {}
        for knowledge_type in KnowledgeType:
            table = self._tables.get(knowledge_type)
            if table is None:
                logger.info("Table absent, skipping dimension migration", table=knowledge_type.table_name)
                status[knowledge_type.table_name] = "skipped"
                continue
            for record_id in [i for i, r in table.items() if len(r.embedding) != new_dimension]:
                del table[record_id]
            status[knowledge_type.table_name] = "migrated"

        self._dimension = new_dimension
        return status
