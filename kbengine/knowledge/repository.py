"""
Knowledge Repository

CRUD over knowledge entries with parent/child hierarchy and duplicate
cleanup.

Design decisions:
- Hierarchy invariants are checked on every write in the base class,
  so every backend enforces them the same way
- Deletion runs an optional callback before each row is removed, which
  lets the caller drop the entry's vectors in the same operation
- Cleanup is written once against the abstract primitives and is
  idempotent: a clean set is left untouched
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from kbengine.core.exceptions import (
    EntryNotFoundError,
    KnowledgeValidationError,
)
from kbengine.core.types import (
    CleanupReport,
    KnowledgeEntry,
    KnowledgeType,
    SemanticModelMetadata,
    utcnow,
)
from kbengine.knowledge.vector_store import StoreErrors
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.repository")

OnDelete = Callable[[KnowledgeEntry], Awaitable[Any]]


def natural_key(entry: KnowledgeEntry) -> tuple | None:
    """
    Key under which at most one parent entry may exist.

    Only semantic models carry one: the database name and whether the
    entry describes the whole database. Owners are not part of the key.
    """
    if entry.type is KnowledgeType.SEMANTIC_MODEL and isinstance(entry.metadata, SemanticModelMetadata):
        return entry.metadata.natural_key
    return None


class KnowledgeRepository(ABC):
    """
    Abstract knowledge entry repository.

    Backends implement storage primitives; hierarchy rules, cascading
    deletes and cleanup live here.
    """

    async def initialize(self) -> None:
        """Create storage if needed."""

    async def close(self) -> None:
        """Release connections."""

    # --- storage primitives -------------------------------------------

    @abstractmethod
    async def get(self, entry_id: str) -> KnowledgeEntry | None:
        """Get an entry by id."""

    @abstractmethod
    async def _insert(self, entry: KnowledgeEntry) -> None:
        pass

    @abstractmethod
    async def _replace(self, entry: KnowledgeEntry) -> None:
        pass

    @abstractmethod
    async def _remove(self, entry_id: str) -> bool:
        pass

    @abstractmethod
    async def children(self, parent_id: str) -> list[KnowledgeEntry]:
        """Direct children of an entry, oldest first."""

    @abstractmethod
    async def all_entries(self, knowledge_type: KnowledgeType | None = None) -> list[KnowledgeEntry]:
        """Every entry, optionally of one type."""

    @abstractmethod
    async def _list_parents(
        self,
        user_id: str | None,
        knowledge_type: KnowledgeType | None,
        entity_id: str | None,
        limit: int,
        skip: int,
    ) -> list[KnowledgeEntry]:
        """Parent entries visible to user_id, newest first."""

    @abstractmethod
    async def find_qa(self, question: str, entity_id: str | None = None) -> KnowledgeEntry | None:
        """QA entry with exactly this question, within the entity scope."""

    # --- operations ----------------------------------------------------

    async def add(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """
        Store a new entry.

        Raises:
            EntryNotFoundError: If the parent does not exist
            KnowledgeValidationError: If the parent is itself a child
        """
        await self._check_parent(entry)
        await self._insert(entry)
        logger.debug("Added knowledge entry", knowledge_entry_id=entry.id, type=entry.type.value)
        return entry

    async def update(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """
        Replace a stored entry.

        Raises:
            EntryNotFoundError: If the entry or its parent does not exist
            KnowledgeValidationError: If the change breaks the hierarchy
        """
        if await self.get(entry.id) is None:
            raise EntryNotFoundError(f"Knowledge entry {entry.id} not found", context={"entry_id": entry.id})

        await self._check_parent(entry)
        if entry.parent_id is not None and await self.children(entry.id):
            raise KnowledgeValidationError(
                "An entry with children cannot become a child",
                context={"entry_id": entry.id, "parent_id": entry.parent_id},
            )

        updated = entry.model_copy(update={"updated_at": utcnow(), "children": None})
        await self._replace(updated)
        return updated

    async def delete(self, entry_id: str, on_delete: OnDelete | None = None) -> bool:
        """
        Delete an entry and all of its children.

        Children go first so no child ever points at a missing parent.
        Returns False if the entry does not exist.
        """
        entry = await self.get(entry_id)
        if entry is None:
            return False

        for child in await self.children(entry_id):
            await self._delete_one(child, on_delete)
        await self._delete_one(entry, on_delete)
        return True

    async def list_entries(
        self,
        user_id: str | None = None,
        knowledge_type: KnowledgeType | None = None,
        entity_id: str | None = None,
        include_children: bool = False,
        limit: int = 100,
        skip: int = 0,
    ) -> list[KnowledgeEntry]:
        """
        List parent entries, newest first.

        With include_children each parent carries its children.
        """
        parents = await self._list_parents(user_id, knowledge_type, entity_id, limit, skip)
        if not include_children:
            return parents

        return [
            parent.model_copy(update={"children": await self.children(parent.id)})
            for parent in parents
        ]

    async def cleanup_duplicates(self, on_delete: OnDelete | None = None) -> CleanupReport:
        """
        Remove duplicate parents and orphaned children.

        For each natural key only the most recently created parent
        survives; the others are deleted after their children. Children
        whose parent no longer exists are deleted afterwards.
        """
        report = CleanupReport()

        groups: dict[tuple, list[KnowledgeEntry]] = {}
        for entry in await self.all_entries(KnowledgeType.SEMANTIC_MODEL):
            key = natural_key(entry)
            if entry.is_parent and key is not None:
                groups.setdefault(key, []).append(entry)

        for key, group in groups.items():
            if len(group) < 2:
                continue

            group.sort(key=lambda e: (e.created_at, e.id), reverse=True)
            keep, stale = group[0], group[1:]
            logger.info(
                "Removing duplicate parent entries",
                database_name=key[0],
                is_database_level=key[1],
                kept=keep.id,
                removed=len(stale),
            )

            for parent in stale:
                for child in await self.children(parent.id):
                    await self._delete_one(child, on_delete)
                    report.children.append(child.id)
                await self._delete_one(parent, on_delete)
                report.duplicate_parents.append(parent.id)

        entries = await self.all_entries()
        existing = {e.id for e in entries}
        for entry in entries:
            if entry.parent_id is not None and entry.parent_id not in existing:
                await self._delete_one(entry, on_delete)
                report.orphans.append(entry.id)

        if report.total_deleted:
            logger.info(
                "Knowledge cleanup finished",
                duplicate_parents=len(report.duplicate_parents),
                children=len(report.children),
                orphans=len(report.orphans),
            )
        return report

    async def _delete_one(self, entry: KnowledgeEntry, on_delete: OnDelete | None) -> None:
        if on_delete is not None:
            await on_delete(entry)
        await self._remove(entry.id)

    async def _check_parent(self, entry: KnowledgeEntry) -> None:
        if entry.parent_id is None:
            return

        parent = await self.get(entry.parent_id)
        if parent is None:
            raise EntryNotFoundError(
                f"Parent entry {entry.parent_id} not found",
                context={"entry_id": entry.id, "parent_id": entry.parent_id},
            )
        if not parent.is_parent:
            raise KnowledgeValidationError(
                "Parent entry is itself a child",
                context={"entry_id": entry.id, "parent_id": entry.parent_id},
            )


def _visible(entry: KnowledgeEntry, user_id: str | None) -> bool:
    return user_id is None or entry.user_id in (None, user_id)


class InMemoryKnowledgeRepository(KnowledgeRepository):
    """Dict-backed repository for testing and development."""

    def __init__(self):
        self._entries: dict[str, KnowledgeEntry] = {}

    async def get(self, entry_id: str) -> KnowledgeEntry | None:
        return self._entries.get(entry_id)

    async def _insert(self, entry: KnowledgeEntry) -> None:
        self._entries[entry.id] = entry.model_copy(update={"children": None})

    async def _replace(self, entry: KnowledgeEntry) -> None:
        self._entries[entry.id] = entry

    async def _remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    async def children(self, parent_id: str) -> list[KnowledgeEntry]:
        found = [e for e in self._entries.values() if e.parent_id == parent_id]
        return sorted(found, key=lambda e: e.created_at)

    async def all_entries(self, knowledge_type: KnowledgeType | None = None) -> list[KnowledgeEntry]:
        return [e for e in self._entries.values() if knowledge_type is None or e.type is knowledge_type]

    async def _list_parents(
        self,
        user_id: str | None,
        knowledge_type: KnowledgeType | None,
        entity_id: str | None,
        limit: int,
        skip: int,
    ) -> list[KnowledgeEntry]:
        parents = [
            e
            for e in self._entries.values()
            if e.is_parent
            and _visible(e, user_id)
            and (knowledge_type is None or e.type is knowledge_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        parents.sort(key=lambda e: e.created_at, reverse=True)
        return parents[skip : skip + limit]

    async def find_qa(self, question: str, entity_id: str | None = None) -> KnowledgeEntry | None:
        question = question.strip()
        for entry in self._entries.values():
            if (
                entry.type is KnowledgeType.QA_PAIR
                and entry.metadata.question.strip() == question
                and (entity_id is None or entry.entity_id == entity_id)
            ):
                return entry
        return None


class PostgresKnowledgeRepository(KnowledgeRepository):
    """
    PostgreSQL repository.

    Entries live in ``knowledge_entries`` with JSONB metadata. Shares the
    asyncpg pool with the vector store when one is passed in.
    """

    _COLUMNS = "id, type, title, content, metadata, parent_id, user_id, created_at, updated_at"

    def __init__(self, pool_provider: Callable[[], Awaitable[Any]]):
        self._pool_provider = pool_provider

    async def _fetch(self, sql: str, *args: Any) -> list[Any]:
        pool = await self._pool_provider()
        async with StoreErrors("query", {}, label="Knowledge store"):
            async with pool.acquire() as conn:
                return await conn.fetch(sql, *args)

    async def _execute(self, sql: str, *args: Any) -> str:
        pool = await self._pool_provider()
        async with StoreErrors("write", {}, label="Knowledge store"):
            async with pool.acquire() as conn:
                return await conn.execute(sql, *args)

    async def initialize(self) -> None:
        await self._execute(
            """
            CREATE TABLE IF NOT EXISTS knowledge_entries (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                parent_id TEXT,
                user_id TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
        for statement in (
            "CREATE INDEX IF NOT EXISTS idx_knowledge_entries_type ON knowledge_entries (type)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_entries_parent_id ON knowledge_entries (parent_id)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_entries_user_id ON knowledge_entries (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_knowledge_entries_entity_id "
            "ON knowledge_entries ((metadata->>'entity_id'))",
        ):
            await self._execute(statement)

    @staticmethod
    def _to_entry(row: Any) -> KnowledgeEntry:
        metadata = row["metadata"]
        return KnowledgeEntry(
            id=row["id"],
            type=row["type"],
            title=row["title"],
            content=row["content"],
            metadata=json.loads(metadata) if isinstance(metadata, str) else dict(metadata),
            parent_id=row["parent_id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _params(entry: KnowledgeEntry) -> tuple:
        return (
            entry.id,
            entry.type.value,
            entry.title,
            entry.content,
            json.dumps(entry.metadata.model_dump(mode="json"), ensure_ascii=False),
            entry.parent_id,
            entry.user_id,
            entry.created_at,
            entry.updated_at,
        )

    async def get(self, entry_id: str) -> KnowledgeEntry | None:
        rows = await self._fetch(f"SELECT {self._COLUMNS} FROM knowledge_entries WHERE id = $1", entry_id)
        return self._to_entry(rows[0]) if rows else None

    async def _insert(self, entry: KnowledgeEntry) -> None:
        await self._execute(
            f"INSERT INTO knowledge_entries ({self._COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9)",
            *self._params(entry),
        )

    async def _replace(self, entry: KnowledgeEntry) -> None:
        await self._execute(
            "UPDATE knowledge_entries SET type = $2, title = $3, content = $4, metadata = $5::jsonb, "
            "parent_id = $6, user_id = $7, created_at = $8, updated_at = $9 WHERE id = $1",
            *self._params(entry),
        )

    async def _remove(self, entry_id: str) -> bool:
        status = await self._execute("DELETE FROM knowledge_entries WHERE id = $1", entry_id)
        return status.endswith(" 1")

    async def children(self, parent_id: str) -> list[KnowledgeEntry]:
        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM knowledge_entries WHERE parent_id = $1 ORDER BY created_at",
            parent_id,
        )
        return [self._to_entry(r) for r in rows]

    async def all_entries(self, knowledge_type: KnowledgeType | None = None) -> list[KnowledgeEntry]:
        if knowledge_type is None:
            rows = await self._fetch(f"SELECT {self._COLUMNS} FROM knowledge_entries")
        else:
            rows = await self._fetch(
                f"SELECT {self._COLUMNS} FROM knowledge_entries WHERE type = $1",
                knowledge_type.value,
            )
        return [self._to_entry(r) for r in rows]

    async def _list_parents(
        self,
        user_id: str | None,
        knowledge_type: KnowledgeType | None,
        entity_id: str | None,
        limit: int,
        skip: int,
    ) -> list[KnowledgeEntry]:
        conditions = ["parent_id IS NULL"]
        args: list[Any] = []
        if user_id is not None:
            args.append(user_id)
            conditions.append(f"(user_id = ${len(args)} OR user_id IS NULL)")
        if knowledge_type is not None:
            args.append(knowledge_type.value)
            conditions.append(f"type = ${len(args)}")
        if entity_id is not None:
            args.append(entity_id)
            conditions.append(f"metadata->>'entity_id' = ${len(args)}")
        args.extend([limit, skip])

        rows = await self._fetch(
            f"SELECT {self._COLUMNS} FROM knowledge_entries WHERE {' AND '.join(conditions)} "
            f"ORDER BY created_at DESC LIMIT ${len(args) - 1} OFFSET ${len(args)}",
            *args,
        )
        return [self._to_entry(r) for r in rows]

    async def find_qa(self, question: str, entity_id: str | None = None) -> KnowledgeEntry | None:
        args: list[Any] = [KnowledgeType.QA_PAIR.value, question.strip()]
        sql = (
            f"SELECT {self._COLUMNS} FROM knowledge_entries "
            "WHERE type = $1 AND btrim(metadata->>'question') = $2"
        )
        if entity_id is not None:
            args.append(entity_id)
            sql += " AND metadata->>'entity_id' = $3"
        rows = await self._fetch(sql + " LIMIT 1", *args)
        return self._to_entry(rows[0]) if rows else None
