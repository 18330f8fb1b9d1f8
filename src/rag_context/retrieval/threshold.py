"""Adaptive similarity threshold selection."""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Sequence

from loguru import logger

from rag_context.config import ThresholdConfig
from rag_context.retrieval.query_analyzer import detect_query_type
from rag_context.types import ScoreDistribution, ThresholdResult

SearchAtThreshold = Callable[[float], Awaitable[Sequence[object]]]


def analyze_distribution(scores: Sequence[float]) -> ScoreDistribution:
    """Summary statistics of a probe's scores (population std-dev)."""
    if not scores:
        return ScoreDistribution(
            scores=[],
            mean=0.0,
            median=0.0,
            std_dev=0.0,
            min=0.0,
            max=0.0,
            percentiles={"p25": 0.0, "p50": 0.0, "p75": 0.0, "p90": 0.0, "p95": 0.0},
        )

    ordered = sorted(scores)
    n = len(ordered)
    mean = sum(ordered) / n
    std_dev = math.sqrt(sum((s - mean) ** 2 for s in ordered) / n)
    median = ordered[n // 2]

    def percentile(p: float) -> float:
        return ordered[min(int(n * p), n - 1)]

    return ScoreDistribution(
        scores=ordered,
        mean=mean,
        median=median,
        std_dev=std_dev,
        min=ordered[0],
        max=ordered[-1],
        percentiles={
            "p25": percentile(0.25),
            "p50": median,
            "p75": percentile(0.75),
            "p90": percentile(0.90),
            "p95": percentile(0.95),
        },
    )


class ThresholdOptimizer:
    """Chooses a relevance cutoff per query."""

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self.config = config or ThresholdConfig()

    def _clamp(self, value: float) -> float:
        return max(self.config.min_threshold, min(self.config.max_threshold, value))

    def distribution_threshold(self, distribution: ScoreDistribution) -> float:
        config = self.config
        if not distribution.scores:
            return config.default_threshold

        percentiles = distribution.percentiles
        direct = {0.75: "p75", 0.90: "p90", 0.95: "p95"}
        key = next((name for p, name in direct.items() if math.isclose(p, config.percentile)), None)
        if key is not None:
            threshold = percentiles[key]
        else:
            p50, p75 = percentiles["p50"], percentiles["p75"]
            threshold = p50 + (p75 - p50) * (config.percentile - 0.5) / 0.25

        threshold = self._clamp(threshold)
        if distribution.std_dev < 0.1 and distribution.mean > 0.5:
            threshold = max(threshold, distribution.mean - 0.1)
        return threshold

    def calculate_threshold(
        self,
        query: str,
        initial_scores: Sequence[float] | None = None,
        *,
        min_results: int = 3,
        max_results: int = 10,
    ) -> ThresholdResult:
        """Pick a threshold from query type, probe statistics and one corrective pass."""
        config = self.config
        if not config.adaptive_enabled:
            return ThresholdResult(
                threshold=config.default_threshold,
                strategy="default",
                confidence=1.0,
                reasoning="Adaptive thresholds disabled, using default",
            )

        query_type = detect_query_type(query)
        threshold = config.query_type_thresholds.get(query_type, config.default_threshold)
        result = ThresholdResult(
            threshold=threshold,
            strategy="query-type",
            confidence=0.7,
            reasoning=f"Query type: {query_type}, using type-specific threshold",
            query_type=query_type,
        )

        if initial_scores and config.use_distribution_analysis:
            distribution = analyze_distribution(initial_scores)
            candidate = self.distribution_threshold(distribution)
            if config.min_threshold <= candidate <= config.max_threshold:
                result.threshold = candidate
                result.strategy = "distribution"
                result.confidence = 0.8
                result.reasoning = (
                    f"Distribution-based threshold (mean: {distribution.mean:.3f}, "
                    f"p75: {distribution.percentiles['p75']:.3f})"
                )

        if config.fallback_enabled and initial_scores is not None:
            count = len(initial_scores)
            before = result.threshold
            if count < min_results and before > config.min_threshold:
                result.threshold = max(config.min_threshold, before - config.fallback_lower_step)
                result.strategy = "fallback"
                result.confidence = 0.6
                result.reasoning = (
                    f"Fallback: lowered threshold from {before:.3f} to {result.threshold:.3f} "
                    f"(had {count} results, need {min_results})"
                )
            elif count > max_results and before < config.max_threshold:
                result.threshold = min(config.max_threshold, before + config.fallback_raise_step)
                result.strategy = "fallback"
                result.confidence = 0.6
                result.reasoning = (
                    f"Fallback: raised threshold from {before:.3f} to {result.threshold:.3f} "
                    f"(had {count} results, want at most {max_results})"
                )

        result.threshold = self._clamp(result.threshold)
        return result

    def get_threshold(
        self,
        query: str,
        initial_scores: Sequence[float] | None = None,
        *,
        min_results: int = 3,
        max_results: int = 10,
    ) -> float:
        return self.calculate_threshold(
            query, initial_scores, min_results=min_results, max_results=max_results
        ).threshold

    async def optimize_threshold(
        self,
        query: str,
        search: SearchAtThreshold,
        *,
        min_results: int = 3,
        max_results: int = 10,
        max_iterations: int = 5,
    ) -> ThresholdResult:
        """Re-query with an adjusted threshold until the count lands in range.

        Returns the best-seen threshold (count closest to the middle of the
        range) when no round lands in range.
        """
        config = self.config
        query_type = detect_query_type(query)
        threshold = self._clamp(config.query_type_thresholds.get(query_type, config.default_threshold))
        midpoint = (min_results + max_results) / 2
        best_threshold = threshold
        best_distance = math.inf
        best_count = 0

        for iteration in range(max_iterations):
            count = len(await search(threshold))
            logger.debug(
                f"Threshold optimization iteration {iteration}: threshold={threshold:.3f}, "
                f"results={count}, range=[{min_results}, {max_results}]"
            )
            if min_results <= count <= max_results:
                return ThresholdResult(
                    threshold=threshold,
                    strategy="adaptive",
                    confidence=0.9,
                    reasoning=f"Optimized threshold after {iteration + 1} iterations",
                    query_type=query_type,
                )

            distance = abs(count - midpoint)
            if distance < best_distance:
                best_threshold, best_distance, best_count = threshold, distance, count

            if count < min_results:
                adjusted = self._clamp(threshold - config.iterative_step)
            else:
                adjusted = self._clamp(threshold + config.iterative_step)
            if math.isclose(adjusted, threshold):
                break
            threshold = adjusted

        return ThresholdResult(
            threshold=best_threshold,
            strategy="adaptive",
            confidence=0.7,
            reasoning=f"Best threshold found gave {best_count} results",
            query_type=query_type,
        )
