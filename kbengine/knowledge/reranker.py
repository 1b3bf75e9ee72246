"""
Reranker

Cross-encoder rescoring of vector search candidates.

Design decisions:
- Stateless transform: candidates in, ranked results out
- Never fails a query: an unavailable model, a scoring error or a
  degenerate score distribution all fall back to vector order
- Model loads lazily; a scorer callable can replace it
- Hybrid reranking blends relevance with a per-type prior and rank
  position, and degrades to the plain rerank if blending fails
"""

import asyncio
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace

from kbengine.core.exceptions import RerankError
from kbengine.core.types import KnowledgeType, RankedResult, SearchHit
from kbengine.observability.logging import get_logger

logger = get_logger("kbengine.reranker")

# (query, passage) pairs -> relevance scores
Scorer = Callable[[list[tuple[str, str]]], Sequence[float]]

# Scores closer than this are treated as identical
_FLAT_TOLERANCE = 1e-4

# Prior relevance of each knowledge type in hybrid reranking
TYPE_PRIORITY: dict[KnowledgeType, float] = {
    KnowledgeType.SEMANTIC_MODEL: 1.0,
    KnowledgeType.QA_PAIR: 1.0,
    KnowledgeType.BUSINESS_KNOWLEDGE: 0.8,
    KnowledgeType.SYNONYM: 0.6,
    KnowledgeType.FILE: 0.5,
}
_DEFAULT_PRIORITY = 0.5


@dataclass
class HybridWeights:
    """Weights of the hybrid score components."""

    similarity: float = 0.7
    type_priority: float = 0.2
    position: float = 0.1


@dataclass
class RerankerConfig:
    """Configuration for reranker."""

    enabled: bool = True
    model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    batch_size: int = 32
    device: str | None = None
    hybrid_weights: HybridWeights = field(default_factory=HybridWeights)


class RerankingService:
    """
    Cross-encoder reranking.

    Rescores the top vector-search candidates for better relevance.
    """

    def __init__(self, config: RerankerConfig | None = None, scorer: Scorer | None = None):
        self._config = config or RerankerConfig()
        self._scorer = scorer
        self._model = None
        self._load_failed = False

    @property
    def available(self) -> bool:
        return self._config.enabled and (self._scorer is not None or not self._load_failed)

    def _get_model(self):
        """Lazy load the cross-encoder model."""
        if self._model is None and not self._load_failed:
            try:
                from sentence_transformers import CrossEncoder

                self._model = CrossEncoder(self._config.model_name, device=self._config.device)
                logger.info("Loaded reranker model", model=self._config.model_name)
            except Exception as e:  # noqa: BLE001
                # Missing package, missing weights or bad device
                logger.warning("Reranker model unavailable, using vector order", error=e)
                self._load_failed = True
        return self._model

    def _score(self, query: str, passages: list[str]) -> list[float]:
        pairs = [(query, p) for p in passages]

        if self._scorer is not None:
            predict = self._scorer
        else:
            model = self._get_model()
            if model is None:
                raise RerankError("Reranker model is not available")
            predict = model.predict

        scores: list[float] = []
        for i in range(0, len(pairs), self._config.batch_size):
            batch = pairs[i : i + self._config.batch_size]
            scores.extend(float(s) for s in predict(batch))

        if len(scores) != len(pairs):
            raise RerankError(
                "Reranker returned the wrong number of scores",
                context={"expected": len(pairs), "actual": len(scores)},
            )
        return scores

    def rerank(
        self,
        query: str,
        candidates: Sequence[SearchHit],
        top_n: int,
    ) -> tuple[list[RankedResult], bool]:
        """
        Rerank candidates by relevance to query.

        Args:
            query: The search query
            candidates: Vector search hits, best first
            top_n: Number of results to return

        Returns:
            Ranked results and whether rerank scores were applied
        """
        if not candidates:
            return [], False

        if not self._config.enabled:
            return self.fallback(candidates, top_n), False

        try:
            scores = self._score(query, [c.content for c in candidates])
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "Reranking failed, falling back to vector similarity order",
                error=e,
                candidates=len(candidates),
            )
            return self.fallback(candidates, top_n), False

        if max(scores) - min(scores) < _FLAT_TOLERANCE:
            logger.debug("Rerank scores are flat, keeping vector order", candidates=len(candidates))
            return self.fallback(candidates, top_n), False

        results = [RankedResult.from_hit(hit, score) for hit, score in zip(candidates, scores)]
        results.sort(key=lambda r: r.rerank_score, reverse=True)
        return results[:top_n], True

    @staticmethod
    def fallback(candidates: Sequence[SearchHit], top_n: int) -> list[RankedResult]:
        """Vector similarity order, best first."""
        ordered = sorted(candidates, key=lambda h: h.score, reverse=True)
        return [RankedResult.from_hit(hit) for hit in ordered[:top_n]]

    def enhanced_rerank(
        self,
        query: str,
        candidates: Sequence[SearchHit],
        top_n: int,
        weights: HybridWeights | None = None,
    ) -> tuple[list[RankedResult], bool]:
        """
        Hybrid rerank: relevance, knowledge type and rank position combined.

        Twice ``top_n`` results of the plain rerank are rescored as

            similarity * w.similarity
            + TYPE_PRIORITY[type] * w.type_priority
            + (1 - position / count) * w.position

        where similarity is the rerank score squashed into (0, 1), or the
        vector similarity when no rerank score applied. Each result keeps
        the blended value in ``hybrid_score``.

        Returns:
            Ranked results and whether rerank scores were applied
        """
        if not candidates:
            return [], False

        weights = weights or self._config.hybrid_weights
        base, reranked = self.rerank(query, candidates, top_n * 2)

        try:
            blended = []
            for position, result in enumerate(base):
                if result.rerank_score is not None:
                    similarity = 1.0 / (1.0 + math.exp(-result.rerank_score))
                else:
                    similarity = result.original_score
                score = (
                    similarity * weights.similarity
                    + TYPE_PRIORITY.get(result.type, _DEFAULT_PRIORITY) * weights.type_priority
                    + (1.0 - position / len(base)) * weights.position
                )
                blended.append(replace(result, score=score, hybrid_score=score))
        except Exception as e:  # noqa: BLE001
            logger.warning("Hybrid reranking failed, using plain rerank", error=e, candidates=len(base))
            return base[:top_n], reranked

        blended.sort(key=lambda r: r.score, reverse=True)
        return blended[:top_n], reranked

    async def rerank_async(
        self,
        query: str,
        candidates: Sequence[SearchHit],
        top_n: int,
    ) -> tuple[list[RankedResult], bool]:
        """Run rerank in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.rerank, query, candidates, top_n)

    async def enhanced_rerank_async(
        self,
        query: str,
        candidates: Sequence[SearchHit],
        top_n: int,
        weights: HybridWeights | None = None,
    ) -> tuple[list[RankedResult], bool]:
        """Run enhanced_rerank in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.enhanced_rerank, query, candidates, top_n, weights)

    def close(self) -> None:
        self._model = None
