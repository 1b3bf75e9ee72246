"""
Unit Tests - Reranker

Tests for RerankingService with injected scorers.
"""

import pytest

from kbengine.core.types import KnowledgeType, SearchHit
from kbengine.knowledge.reranker import TYPE_PRIORITY, HybridWeights, RerankerConfig, RerankingService


def candidates():
    return [
        SearchHit(id="a", knowledge_entry_id="a", type=KnowledgeType.FILE, content="shipping rates", score=0.9),
        SearchHit(id="b", knowledge_entry_id="b", type=KnowledgeType.QA_PAIR, content="refund window", score=0.8),
        SearchHit(id="c", knowledge_entry_id="c", type=KnowledgeType.FILE, content="refund policy", score=0.7),
    ]


def keyword_scorer(pairs):
    return [float(passage.count("refund")) + (0.5 if "policy" in passage else 0.0) for _, passage in pairs]


class TestRerankingService:
    """Tests for rerank and its fallbacks."""

    def test_reorders_by_rerank_score(self):
        service = RerankingService(RerankerConfig(batch_size=2), scorer=keyword_scorer)

        results, reranked = service.rerank("refund policy", candidates(), top_n=2)

        assert reranked is True
        assert [r.id for r in results] == ["c", "b"]
        assert results[0].rerank_score == pytest.approx(1.5)
        assert results[0].original_score == pytest.approx(0.7)
        assert results[0].score == results[0].rerank_score

    def test_scores_in_batches(self):
        seen = []

        def scorer(pairs):
            seen.append(len(pairs))
            return keyword_scorer(pairs)

        service = RerankingService(RerankerConfig(batch_size=2), scorer=scorer)
        service.rerank("refund", candidates(), top_n=3)

        assert seen == [2, 1]

    def test_disabled_keeps_vector_order(self):
        service = RerankingService(RerankerConfig(enabled=False), scorer=keyword_scorer)

        results, reranked = service.rerank("refund policy", candidates(), top_n=3)

        assert reranked is False
        assert [r.id for r in results] == ["a", "b", "c"]
        assert all(r.rerank_score is None for r in results)

    def test_scorer_failure_falls_back(self, log_buffer):
        def broken(pairs):
            raise RuntimeError("CUDA out of memory")

        service = RerankingService(scorer=broken)

        results, reranked = service.rerank("refund", candidates(), top_n=2)

        assert reranked is False
        assert [r.id for r in results] == ["a", "b"]
        assert "Reranking failed, falling back to vector similarity order" in log_buffer.messages()

    def test_flat_scores_fall_back(self):
        service = RerankingService(scorer=lambda pairs: [0.25] * len(pairs))

        results, reranked = service.rerank("anything", candidates(), top_n=3)

        assert reranked is False
        assert [r.id for r in results] == ["a", "b", "c"]

    def test_wrong_score_count_falls_back(self):
        service = RerankingService(scorer=lambda pairs: [1.0])

        _, reranked = service.rerank("anything", candidates(), top_n=3)

        assert reranked is False

    def test_empty_candidates(self):
        service = RerankingService(scorer=keyword_scorer)

        assert service.rerank("q", [], top_n=5) == ([], False)

    def test_result_metadata_carries_scope(self):
        hit = SearchHit(
            id="x",
            knowledge_entry_id="x",
            type=KnowledgeType.FILE,
            content="text",
            score=0.6,
            file_id="f1",
            entity_id="team1",
            metadata={"filename": "a.txt"},
        )

        (result,) = RerankingService.fallback([hit], top_n=1)

        assert result.metadata == {"filename": "a.txt", "file_id": "f1", "entity_id": "team1"}
        assert result.to_dict()["type"] == "file"

    @pytest.mark.asyncio
    async def test_rerank_async(self):
        service = RerankingService(scorer=keyword_scorer)

        results, reranked = await service.rerank_async("refund policy", candidates(), top_n=1)

        assert reranked is True
        assert results[0].id == "c"


class TestEnhancedRerank:
    """Tests for hybrid reranking."""

    def test_type_priority_lifts_qa_pairs(self):
        """A QA pair overtakes a file with a slightly higher rerank score."""
        service = RerankingService(scorer=keyword_scorer)

        results, reranked = service.enhanced_rerank("refund policy", candidates(), top_n=3)

        assert reranked is True
        assert [r.id for r in results] == ["b", "c", "a"]
        assert all(r.hybrid_score == r.score for r in results)
        assert results[1].rerank_score == pytest.approx(1.5)

    def test_blends_vector_similarity_without_rerank_scores(self):
        service = RerankingService(RerankerConfig(enabled=False))
        hits = candidates()
        hits[1].score = 0.85

        results, reranked = service.enhanced_rerank("refund", hits, top_n=3)

        assert reranked is False
        assert [r.id for r in results] == ["b", "a", "c"]
        # 0.9 * 0.7 + 0.5 * 0.2 + 1.0 * 0.1
        assert results[1].hybrid_score == pytest.approx(0.83)
        assert results[1].original_score == pytest.approx(0.9)

    def test_custom_weights(self):
        service = RerankingService(RerankerConfig(enabled=False))
        weights = HybridWeights(similarity=0.0, type_priority=1.0, position=0.0)

        results, _ = service.enhanced_rerank("refund", candidates(), top_n=1, weights=weights)

        assert [r.id for r in results] == ["b"]
        assert results[0].hybrid_score == pytest.approx(TYPE_PRIORITY[KnowledgeType.QA_PAIR])

    def test_blend_failure_falls_back_to_plain_rerank(self, log_buffer):
        service = RerankingService(scorer=keyword_scorer)

        results, reranked = service.enhanced_rerank(
            "refund policy", candidates(), top_n=2, weights=HybridWeights(similarity="heavy")
        )

        assert reranked is True
        assert [r.id for r in results] == ["c", "b"]
        assert all(r.hybrid_score is None for r in results)
        assert "Hybrid reranking failed, using plain rerank" in log_buffer.messages()

    def test_empty_candidates(self):
        assert RerankingService(scorer=keyword_scorer).enhanced_rerank("q", [], top_n=3) == ([], False)

    @pytest.mark.asyncio
    async def test_enhanced_rerank_async(self):
        service = RerankingService(scorer=keyword_scorer)

        results, _ = await service.enhanced_rerank_async("refund policy", candidates(), top_n=1)

        assert results[0].id == "b"
