"""
Test Fixtures

Test doubles shared by unit and integration tests: deterministic
embeddings, a store wrapper that records calls, and a fake asyncpg pool.
"""

import asyncio
import hashlib
import re
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import Any

import numpy as np

from kbengine.core.exceptions import EmbedError, StoreConnectionError, StoreError
from kbengine.knowledge.embeddings import EmbeddingService
from kbengine.knowledge.vector_store import InMemoryVectorStore

TEST_DIMENSION = 32


def embed_words(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    """Deterministic bag-of-words vector."""
    vector = np.zeros(dimension, dtype=np.float64)
    for token in re.findall(r"\w+", text.lower()):
        vector[int(hashlib.md5(token.encode()).hexdigest(), 16) % dimension] += 1.0
    if not vector.any():
        vector[0] = 1.0
    return (vector / np.linalg.norm(vector)).tolist()


class FakeEmbeddings(EmbeddingService):
    """
    Bag-of-words embeddings hashed into a small vector.

    Texts sharing words are similar; identical texts have similarity 1.
    Texts containing any marker in ``fail_on`` raise EmbedError.
    """

    def __init__(
        self,
        dimension: int = TEST_DIMENSION,
        fail_on: Sequence[str] = (),
        output_dimension: int | None = None,
        query_cache_size: int = 0,
        delay: float = 0.0,
    ):
        super().__init__(dimension, query_cache_size)
        self.fail_on = list(fail_on)
        self.calls: list[str] = []
        self.delay = delay
        self._output_dimension = output_dimension or dimension
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        await super().close()
        self.closed = True

    async def _embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if any(marker in text for marker in self.fail_on):
            raise EmbedError("Injected embedding failure")
        return embed_words(text, self._output_dimension)


class RecordingStore(InMemoryVectorStore):
    """
    In-memory store that records writes and can fail on demand.

    ``fail_upserts`` lists 1-based upsert call numbers that raise
    StoreError; ``disconnect_on`` is the call number that raises
    StoreConnectionError.
    """

    def __init__(self, dimension: int = TEST_DIMENSION, fail_upserts: Sequence[int] = (), disconnect_on: int | None = None):
        super().__init__(dimension)
        self.events: list[tuple[str, Any]] = []
        self.upsert_calls = 0
        self.fail_upserts = set(fail_upserts)
        self.disconnect_on = disconnect_on

    async def upsert(self, records):
        self.upsert_calls += 1
        self.events.append(("upsert", [r.id for r in records]))
        await asyncio.sleep(0)
        if self.upsert_calls == self.disconnect_on:
            raise StoreConnectionError("connection refused")
        if self.upsert_calls in self.fail_upserts:
            raise StoreError("deadlock detected")
        return await super().upsert(records)

    async def delete_by_file(self, file_id):
        self.events.append(("delete_by_file", file_id))
        return await super().delete_by_file(file_id)

    async def delete_by_entry(self, knowledge_entry_id, types=None):
        self.events.append(("delete_by_entry", knowledge_entry_id))
        return await super().delete_by_entry(knowledge_entry_id, types)


# ============================================================
# Fake asyncpg
# ============================================================

class FakeConnection:
    """Records SQL and answers from canned results."""

    def __init__(self, pool: "FakePool"):
        self._pool = pool

    def _record(self, kind: str, sql: str, args: tuple) -> None:
        normalized = " ".join(sql.split())
        self._pool.statements.append((kind, normalized, args))
        for fragment, exc in self._pool.errors.items():
            if fragment in normalized:
                raise exc

    async def execute(self, sql: str, *args: Any) -> str:
        self._record("execute", sql, args)
        if sql.lstrip().upper().startswith("DELETE"):
            return f"DELETE {self._pool.delete_count}"
        return "OK"

    async def executemany(self, sql: str, rows: Sequence[tuple]) -> None:
        self._record("executemany", sql, tuple(rows))

    async def fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        self._record("fetch", sql, args)
        return list(self._pool.rows)

    async def fetchval(self, sql: str, *args: Any) -> Any:
        self._record("fetchval", sql, args)
        for fragment, value in self._pool.values.items():
            if fragment in sql:
                return value
        return None

    @asynccontextmanager
    async def transaction(self):
        self._pool.transactions += 1
        yield


class FakePool:
    """Stands in for an asyncpg pool."""

    def __init__(self):
        self.statements: list[tuple[str, str, tuple]] = []
        self.rows: list[dict[str, Any]] = []
        self.values: dict[str, Any] = {}
        self.errors: dict[str, BaseException] = {}
        self.delete_count = 0
        self.transactions = 0
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)

    async def close(self) -> None:
        self.closed = True

    def sql(self, kind: str | None = None) -> list[str]:
        return [s for k, s, _ in self.statements if kind is None or k == kind]
