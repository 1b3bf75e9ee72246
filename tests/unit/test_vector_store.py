"""
Unit Tests - Vector Store

Tests for the in-memory store and multi-type search merging.
"""

import pytest

from kbengine.core.exceptions import DimensionMismatchError, StoreConnectionError, StoreError
from kbengine.core.types import KnowledgeType, SearchHit, VectorRecord
from kbengine.knowledge.vector_store import InMemoryVectorStore, merge_hits
from kbengine.observability.logging import LogLevel
from tests.fixtures import TEST_DIMENSION, embed_words


def record(entry_id, text, knowledge_type=KnowledgeType.FILE, chunk_index=0, **kwargs):
    return VectorRecord(
        knowledge_entry_id=entry_id,
        type=knowledge_type,
        content=text,
        embedding=embed_words(text),
        chunk_index=chunk_index,
        **kwargs,
    )


def hit(hit_id, knowledge_type, score, rank=0):
    return SearchHit(
        id=hit_id,
        knowledge_entry_id=hit_id,
        type=knowledge_type,
        content=hit_id,
        score=score,
        rank=rank,
    )


class BrokenTableStore(InMemoryVectorStore):
    """Search on one type fails."""

    def __init__(self, broken: KnowledgeType, error: Exception):
        super().__init__(TEST_DIMENSION)
        self._broken = broken
        self._error = error

    async def _search_type(self, knowledge_type, query_embedding, limit, min_score, scope):
        if knowledge_type is self._broken:
            raise self._error
        return await super()._search_type(knowledge_type, query_embedding, limit, min_score, scope)


class TestMergeHits:
    """Tests for merging per-type results."""

    def test_orders_by_score(self):
        merged = merge_hits(
            [[hit("a", KnowledgeType.QA_PAIR, 0.7)], [hit("b", KnowledgeType.FILE, 0.9)]],
            [KnowledgeType.QA_PAIR, KnowledgeType.FILE],
            top_k=10,
        )

        assert [h.id for h in merged] == ["b", "a"]

    def test_ties_broken_by_rank_then_type_order(self):
        merged = merge_hits(
            [
                [hit("qa0", KnowledgeType.QA_PAIR, 0.8, rank=1)],
                [hit("f0", KnowledgeType.FILE, 0.8, rank=0), hit("f1", KnowledgeType.FILE, 0.8, rank=1)],
            ],
            [KnowledgeType.QA_PAIR, KnowledgeType.FILE],
            top_k=10,
        )

        assert [h.id for h in merged] == ["f0", "qa0", "f1"]

    def test_truncates_to_top_k(self):
        groups = [[hit(f"h{i}", KnowledgeType.FILE, 1 - i / 10, rank=i) for i in range(5)]]

        assert len(merge_hits(groups, [KnowledgeType.FILE], top_k=3)) == 3


class TestInMemoryVectorStore:
    """Tests for InMemoryVectorStore."""

    @pytest.mark.asyncio
    async def test_upsert_and_search(self, store):
        await store.upsert(
            [
                record("doc1", "invoices are paid within thirty days"),
                record("doc2", "the office closes at six"),
            ]
        )

        hits = await store.search(embed_words("invoices are paid within thirty days"), [KnowledgeType.FILE], min_score=0.1)

        assert hits[0].knowledge_entry_id == "doc1"
        assert all(h.score >= 0.1 for h in hits)

    @pytest.mark.asyncio
    async def test_upsert_replaces_same_id(self, store):
        await store.upsert([record("doc1", "old text")])
        await store.upsert([record("doc1", "new text")])

        assert await store.count(KnowledgeType.FILE) == 1
        hits = await store.search(embed_words("new text"), [KnowledgeType.FILE])
        assert hits[0].content == "new text"

    @pytest.mark.asyncio
    async def test_rejects_wrong_dimension(self, store):
        bad = VectorRecord(
            knowledge_entry_id="doc1",
            type=KnowledgeType.FILE,
            content="x",
            embedding=[0.1] * (TEST_DIMENSION + 1),
        )

        with pytest.raises(DimensionMismatchError):
            await store.upsert([bad])
        with pytest.raises(DimensionMismatchError):
            await store.search([0.1] * 3)

    @pytest.mark.asyncio
    async def test_user_scope_includes_shared_rows(self, store):
        """A user sees their own rows and shared rows, never another user's."""
        text = "holiday schedule"
        await store.upsert(
            [
                record("mine", text, user_id="alice"),
                record("shared", text),
                record("theirs", text, user_id="bob"),
            ]
        )

        hits = await store.search(embed_words(text), [KnowledgeType.FILE], user_id="alice")

        assert {h.knowledge_entry_id for h in hits} == {"mine", "shared"}

    @pytest.mark.asyncio
    async def test_entity_and_file_filters(self, store):
        text = "pricing table"
        await store.upsert(
            [
                record("a", text, entity_id="team1", file_id="f1"),
                record("b", text, entity_id="team1", file_id="f2"),
                record("c", text, entity_id="team2", file_id="f1"),
            ]
        )
        query = embed_words(text)

        by_entity = await store.search(query, [KnowledgeType.FILE], entity_id="team1")
        by_file = await store.search(query, [KnowledgeType.FILE], entity_id="team1", file_ids=["f2"])

        assert {h.knowledge_entry_id for h in by_entity} == {"a", "b"}
        assert [h.knowledge_entry_id for h in by_file] == ["b"]

    @pytest.mark.asyncio
    async def test_min_score_filters(self, store):
        await store.upsert([record("doc1", "alpha beta gamma")])

        hits = await store.search(embed_words("completely unrelated words"), [KnowledgeType.FILE], min_score=0.99)

        assert hits == []

    @pytest.mark.asyncio
    async def test_search_across_types(self, store):
        text = "customer churn definition"
        await store.upsert(
            [
                record("qa", text, knowledge_type=KnowledgeType.QA_PAIR),
                record("file", text, knowledge_type=KnowledgeType.FILE),
            ]
        )

        hits = await store.search(embed_words(text))

        assert {h.type for h in hits} == {KnowledgeType.QA_PAIR, KnowledgeType.FILE}

    @pytest.mark.asyncio
    async def test_missing_table_degrades(self, log_buffer):
        """A type without a table contributes nothing; others still answer."""
        store = InMemoryVectorStore(TEST_DIMENSION, types=[KnowledgeType.FILE])
        await store.upsert([record("doc1", "contract renewal")])

        hits = await store.search(
            embed_words("contract renewal"),
            [KnowledgeType.SYNONYM, KnowledgeType.FILE],
        )

        assert [h.knowledge_entry_id for h in hits] == ["doc1"]
        assert "Search failed for one knowledge type, continuing without it" in log_buffer.messages(
            LogLevel.WARNING
        )

    @pytest.mark.asyncio
    async def test_connection_error_propagates(self):
        store = BrokenTableStore(KnowledgeType.QA_PAIR, StoreConnectionError("refused"))

        with pytest.raises(StoreConnectionError):
            await store.search(embed_words("anything"), [KnowledgeType.QA_PAIR])

    @pytest.mark.asyncio
    async def test_store_error_on_one_type_is_skipped(self):
        store = BrokenTableStore(KnowledgeType.QA_PAIR, StoreError("syntax error"))
        await store.upsert([record("doc1", "contract renewal")])

        hits = await store.search(embed_words("contract renewal"), [KnowledgeType.QA_PAIR, KnowledgeType.FILE])

        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_delete_by_entry_and_file(self, store):
        await store.upsert(
            [
                record("e1", "one", chunk_index=0, file_id="f1"),
                record("e1", "two", chunk_index=1, file_id="f1"),
                record("e2", "three", knowledge_type=KnowledgeType.QA_PAIR),
                record("e3", "four", file_id="f2"),
            ]
        )

        assert await store.delete_by_entry("e2", [KnowledgeType.QA_PAIR]) == 1
        assert await store.delete_by_file("f1") == 2
        assert await store.count() == 1
        assert await store.count(file_id="f2") == 1

    @pytest.mark.asyncio
    async def test_migrate_dimension(self):
        store = InMemoryVectorStore(TEST_DIMENSION, types=[KnowledgeType.FILE, KnowledgeType.QA_PAIR])
        await store.upsert([record("doc1", "kept until migration")])

        status = await store.migrate_dimension(64)

        assert status["file_vectors"] == "migrated"
        assert status["qa_pair_vectors"] == "migrated"
        assert status["synonym_vectors"] == "skipped"
        assert store.dimension == 64
        assert await store.count() == 0


class TestVectorRecord:
    """Tests for VectorRecord."""

    def test_id_derived_from_entry_and_chunk(self):
        r = record("entry", "text", chunk_index=3)

        assert r.id == "entry:3"

    def test_nul_removed(self):
        r = VectorRecord(
            knowledge_entry_id="e",
            type=KnowledgeType.FILE,
            content="bad\x00text",
            embedding=[0.0],
            metadata={"title": "a\x00b"},
        )

        assert r.content == "badtext"
        assert r.metadata == {"title": "ab"}
