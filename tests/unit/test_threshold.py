import math

import pytest
from pydantic import ValidationError

from rag_context.config import ThresholdConfig
from rag_context.retrieval.threshold import ThresholdOptimizer, analyze_distribution


def test_distribution_statistics() -> None:
    dist = analyze_distribution([0.8, 0.2, 0.6, 0.4])

    assert dist.scores == [0.2, 0.4, 0.6, 0.8]
    assert math.isclose(dist.mean, 0.5)
    assert dist.median == 0.6
    assert dist.percentiles["p75"] == 0.8
    assert math.isclose(dist.std_dev, math.sqrt(0.05))
    assert (dist.min, dist.max) == (0.2, 0.8)


def test_empty_distribution_is_all_zero() -> None:
    dist = analyze_distribution([])
    assert dist.mean == dist.std_dev == dist.max == 0.0


def test_adaptive_disabled_uses_default() -> None:
    optimizer = ThresholdOptimizer(ThresholdConfig(adaptive_enabled=False))
    result = optimizer.calculate_threshold("What is the capital of France")

    assert result.strategy == "default"
    assert result.threshold == 0.7


def test_query_type_threshold_without_probe_scores() -> None:
    optimizer = ThresholdOptimizer()
    result = optimizer.calculate_threshold("What is the capital of France")

    assert result.strategy == "query-type"
    assert result.query_type == "factual"
    assert result.threshold == 0.75
    assert optimizer.get_threshold("Tell me about Rome") == 0.60


def test_fallback_lowers_threshold_when_too_few_results() -> None:
    result = ThresholdOptimizer().calculate_threshold("What is BM25", [0.9], min_results=3)

    assert result.strategy == "fallback"
    assert math.isclose(result.threshold, 0.8)


def test_fallback_raises_threshold_when_too_many_results() -> None:
    optimizer = ThresholdOptimizer(ThresholdConfig(use_distribution_analysis=False))
    result = optimizer.calculate_threshold("What is BM25", [0.8] * 12, max_results=10)

    assert result.strategy == "fallback"
    assert math.isclose(result.threshold, 0.80)


def test_threshold_is_clamped_to_bounds() -> None:
    optimizer = ThresholdOptimizer(ThresholdConfig(use_distribution_analysis=False))
    result = optimizer.calculate_threshold("Tell me about Rome", [], min_results=3)

    assert result.threshold >= 0.3
    assert math.isclose(result.threshold, 0.5)


def test_invalid_bounds_are_rejected() -> None:
    with pytest.raises(ValidationError):
        ThresholdConfig(min_threshold=0.9, max_threshold=0.5)
    with pytest.raises(ValidationError):
        ThresholdConfig(query_type_thresholds={"factual": 0.99})


@pytest.mark.asyncio
async def test_optimize_threshold_steps_down_until_in_range() -> None:
    scores = [0.9, 0.85, 0.8, 0.72, 0.66, 0.61, 0.55]
    seen: list[float] = []

    async def search(threshold: float) -> list[float]:
        seen.append(threshold)
        return [score for score in scores if score >= threshold]

    result = await ThresholdOptimizer().optimize_threshold(
        "photosynthesis", search, min_results=6, max_results=10
    )

    assert result.strategy == "adaptive"
    assert math.isclose(result.threshold, 0.6)
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_optimize_threshold_returns_best_seen_when_range_unreachable() -> None:
    async def search(threshold: float) -> list[float]:
        return [1.0] * 20

    result = await ThresholdOptimizer().optimize_threshold(
        "photosynthesis", search, min_results=3, max_results=10, max_iterations=3
    )

    assert result.strategy == "adaptive"
    assert result.confidence == 0.7
    assert math.isclose(result.threshold, 0.7)
