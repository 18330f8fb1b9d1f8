"""Merging and reranking of multi-route retrieval results."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from loguru import logger

from rag_context.config import HybridWeights, RerankingConfig, RerankingStrategy, ScoreWeights
from rag_context.types import FusedResult, RetrievalCandidate

CrossEncoderScorer = Callable[[str, Sequence[str]], Sequence[float]]


class CrossEncoderUnavailableError(RuntimeError):
    """Raised when no cross-encoder scorer is configured."""


def length_score(content: str) -> float:
    """Favors shorter content: 1 / (1 + log10(max(1, length / 100)))."""
    score = 1 / (1 + math.log10(max(1.0, len(content) / 100)))
    return min(1.0, max(0.0, score))


def position_score(index: int, total: int) -> float:
    if total == 0:
        return 0.0
    return 1 - index / total


def _finalize(candidates: Sequence[RetrievalCandidate], scores: Sequence[float]) -> list[FusedResult]:
    """Sort by new score and attach rank changes keyed by identity."""
    original_ranks: dict[str, int] = {}
    for index, candidate in enumerate(candidates):
        original_ranks.setdefault(candidate.identity, index)

    results = [
        FusedResult(
            chunk_id=candidate.chunk_id,
            document_id=candidate.document_id,
            content=candidate.content,
            original_score=candidate.score,
            fused_score=score,
            document_name=candidate.document_name,
            chunk_index=candidate.chunk_index,
        )
        for candidate, score in zip(candidates, scores, strict=True)
    ]
    results.sort(key=lambda item: item.fused_score, reverse=True)
    for new_index, item in enumerate(results):
        item.rank_change = original_ranks.get(item.identity, new_index) - new_index
    return results


class Reranker(ABC):
    """Reranker interface used after route merging."""

    @abstractmethod
    def rerank(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        """Return candidates in the final ranking order."""


class NoopReranker(Reranker):
    """Keeps the incoming order and scores."""

    def rerank(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        return [
            FusedResult(
                chunk_id=c.chunk_id,
                document_id=c.document_id,
                content=c.content,
                original_score=c.score,
                fused_score=c.score,
                document_name=c.document_name,
                chunk_index=c.chunk_index,
            )
            for c in candidates
        ]


class ScoreBasedReranker(Reranker):
    """Combines semantic, keyword, length and position signals.

    Weights act as independent multipliers; the combined score is not
    renormalized to [0, 1].
    """

    def __init__(self, weights: ScoreWeights | None = None) -> None:
        self.weights = weights or ScoreWeights()

    def rerank(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        weights = self.weights
        total = len(candidates)
        scores: list[float] = []
        for index, candidate in enumerate(candidates):
            semantic = candidate.score * 0.6
            keyword = candidate.score * 0.4
            scores.append(
                semantic * weights.semantic
                + keyword * weights.keyword
                + length_score(candidate.content) * weights.length
                + position_score(index, total) * weights.position
            )
        return _finalize(candidates, scores)


class CrossEncoderReranker(Reranker):
    """Scores (query, passage) pairs with a pluggable cross-encoder.

    Without a scorer, or when the scorer fails, this degrades to the
    score-based reranker.
    """

    def __init__(
        self,
        scorer: CrossEncoderScorer | None = None,
        fallback: Reranker | None = None,
    ) -> None:
        self.scorer = scorer
        self.fallback = fallback or ScoreBasedReranker()

    def rerank(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        try:
            return self.rerank_strict(query, candidates)
        except Exception as exc:
            logger.warning(f"Cross-encoder reranking unavailable, using score-based: {exc}")
            return self.fallback.rerank(query, candidates)

    def rerank_strict(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        if self.scorer is None:
            raise CrossEncoderUnavailableError("no cross-encoder scorer configured")
        scores = [float(s) for s in self.scorer(query, [c.content for c in candidates])]
        if len(scores) != len(candidates):
            raise ValueError(
                f"cross-encoder returned {len(scores)} scores for {len(candidates)} candidates"
            )
        return _finalize(candidates, scores)


class HybridReranker(Reranker):
    """Blends cross-encoder and score-based scores matched by identity."""

    def __init__(
        self,
        cross_encoder: CrossEncoderReranker,
        score_based: ScoreBasedReranker,
        cross_encoder_share: float = 0.7,
    ) -> None:
        self.cross_encoder = cross_encoder
        self.score_based = score_based
        self.cross_encoder_share = cross_encoder_share

    def rerank(self, query: str, candidates: Sequence[RetrievalCandidate]) -> list[FusedResult]:
        score_results = self.score_based.rerank(query, candidates)
        try:
            cross_results = self.cross_encoder.rerank_strict(query, candidates)
        except Exception as exc:
            logger.warning(f"Hybrid reranking lost its cross-encoder path: {exc}")
            return score_results

        cross_by_id = {item.identity: item.fused_score for item in cross_results}
        score_by_id = {item.identity: item.fused_score for item in score_results}
        share = self.cross_encoder_share
        blended = [
            cross_by_id.get(c.identity, 0.0) * share + score_by_id.get(c.identity, 0.0) * (1 - share)
            for c in candidates
        ]
        return _finalize(candidates, blended)


class FusionLayer:
    """Merges lexical and vector candidates and reranks them."""

    def __init__(
        self,
        config: RerankingConfig | None = None,
        cross_encoder: CrossEncoderScorer | None = None,
    ) -> None:
        self.config = config or RerankingConfig()
        score_based = ScoreBasedReranker(self.config.score_weights)
        cross = CrossEncoderReranker(cross_encoder, fallback=score_based)
        self._rerankers: dict[RerankingStrategy, Reranker] = {
            "score-based": score_based,
            "cross-encoder": cross,
            "hybrid": HybridReranker(cross, score_based, self.config.cross_encoder_share),
            "none": NoopReranker(),
        }

    def merge(
        self,
        semantic: Sequence[RetrievalCandidate],
        keyword: Sequence[RetrievalCandidate],
    ) -> list[RetrievalCandidate]:
        """Combine route results into one list with a single comparable score.

        Each route is normalized by its maximum score, weighted, and summed for
        candidates found by both routes. Route weights only apply when both
        routes returned candidates; a lone route keeps its normalized score.
        Near-duplicate content is collapsed.
        """
        if semantic and keyword:
            weights = self.config.hybrid_weights.normalized()
        else:
            weights = HybridWeights(semantic=1.0, keyword=1.0)
        merged: dict[str, RetrievalCandidate] = {}

        for item, norm in _normalize_by_max(semantic):
            merged[item.identity] = RetrievalCandidate(
                chunk_id=item.chunk_id,
                document_id=item.document_id,
                content=item.content,
                score=norm * weights.semantic,
                document_name=item.document_name,
                chunk_index=item.chunk_index,
                source="semantic",
                semantic_score=item.score,
            )

        for item, norm in _normalize_by_max(keyword):
            existing = merged.get(item.identity)
            if existing is not None:
                existing.score += norm * weights.keyword
                existing.keyword_score = item.score
                existing.source = "both"
                continue
            merged[item.identity] = RetrievalCandidate(
                chunk_id=item.chunk_id,
                document_id=item.document_id,
                content=item.content,
                score=norm * weights.keyword,
                document_name=item.document_name,
                chunk_index=item.chunk_index,
                source="keyword",
                keyword_score=item.score,
            )

        ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
        return self._deduplicate(ranked)

    def rerank(
        self,
        query: str,
        candidates: Sequence[RetrievalCandidate],
        *,
        strategy: RerankingStrategy | None = None,
        top_k: int | None = None,
        max_results: int | None = None,
        min_score: float | None = None,
    ) -> list[FusedResult]:
        strategy = strategy or self.config.strategy
        top_k = top_k or self.config.top_k
        max_results = max_results or self.config.max_results
        min_score = self.config.min_score if min_score is None else min_score

        window = list(candidates[:top_k])
        if not window:
            return []

        reranked = self._rerankers[strategy].rerank(query, window)
        if min_score > 0:
            reranked = [item for item in reranked if item.fused_score >= min_score]
        logger.debug(
            f"Reranked {len(window)} candidates with {strategy}, keeping {min(len(reranked), max_results)}"
        )
        return reranked[:max_results]

    def fuse(
        self,
        query: str,
        semantic: Sequence[RetrievalCandidate],
        keyword: Sequence[RetrievalCandidate],
        *,
        max_results: int | None = None,
        strategy: RerankingStrategy | None = None,
    ) -> list[FusedResult]:
        return self.rerank(
            query,
            self.merge(semantic, keyword),
            strategy=strategy,
            max_results=max_results,
        )

    def _deduplicate(self, ranked: list[RetrievalCandidate]) -> list[RetrievalCandidate]:
        threshold = self.config.dedup_similarity
        kept: list[RetrievalCandidate] = []
        kept_terms: list[set[str]] = []
        for candidate in ranked:
            terms = set(candidate.content.lower().split())
            if any(_jaccard(terms, other) >= threshold for other in kept_terms):
                continue
            kept.append(candidate)
            kept_terms.append(terms)
        return kept

    @staticmethod
    def precision_metrics(
        original: Sequence[RetrievalCandidate], reranked: Sequence[FusedResult]
    ) -> dict[str, float]:
        """Compare the mean score of the top five before and after reranking."""
        top_n = min(5, len(original), len(reranked))
        before = sum(c.score for c in original[:top_n]) / top_n if top_n else 0.0
        after = sum(r.fused_score for r in reranked[:top_n]) / top_n if top_n else 0.0
        improvement = (after - before) / before * 100 if before > 0 else 0.0
        average_rank_change = (
            sum(abs(r.rank_change) for r in reranked) / len(reranked) if reranked else 0.0
        )
        return {
            "original_precision": before,
            "reranked_precision": after,
            "improvement": improvement,
            "average_rank_change": average_rank_change,
        }


def _normalize_by_max(
    items: Sequence[RetrievalCandidate],
) -> list[tuple[RetrievalCandidate, float]]:
    if not items:
        return []
    high = max(item.score for item in items)
    return [(item, item.score / high if high > 0 else 0.0) for item in items]


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)
