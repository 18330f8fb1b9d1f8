"""Configuration models for the context assembly core."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

QueryType = Literal["factual", "conceptual", "procedural", "exploratory", "unknown"]
RerankingStrategy = Literal["cross-encoder", "score-based", "hybrid", "none"]
CompressionStrategy = Literal["summarization", "extraction", "truncation", "hybrid"]
TruncationMode = Literal["start", "end", "middle", "smart"]


class LexicalConfig(BaseModel):
    """Okapi BM25 parameters and search defaults."""

    k1: float = Field(default=1.2, gt=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    idf_floor: float = Field(default=0.1, gt=0.0)
    default_top_k: int = Field(default=10, ge=1)


class ThresholdConfig(BaseModel):
    """Configures adaptive similarity thresholds."""

    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    min_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    adaptive_enabled: bool = True
    fallback_enabled: bool = True
    use_distribution_analysis: bool = True
    percentile: float = Field(default=0.75, ge=0.0, le=1.0)
    fallback_lower_step: float = Field(default=0.1, gt=0.0)
    fallback_raise_step: float = Field(default=0.05, gt=0.0)
    iterative_step: float = Field(default=0.05, gt=0.0)
    query_type_thresholds: dict[QueryType, float] = Field(
        default_factory=lambda: {
            "factual": 0.75,
            "procedural": 0.70,
            "conceptual": 0.65,
            "exploratory": 0.60,
            "unknown": 0.70,
        }
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "ThresholdConfig":
        if self.min_threshold > self.max_threshold:
            raise ValueError("min_threshold must not exceed max_threshold")
        for query_type, value in self.query_type_thresholds.items():
            if not self.min_threshold <= value <= self.max_threshold:
                raise ValueError(
                    f"threshold for {query_type} ({value}) is outside "
                    f"[{self.min_threshold}, {self.max_threshold}]"
                )
        return self


class HybridWeights(BaseModel):
    """Relative weight of semantic vs keyword routes when merging."""

    semantic: float = Field(default=0.7, ge=0.0)
    keyword: float = Field(default=0.3, ge=0.0)

    def normalized(self) -> "HybridWeights":
        total = self.semantic + self.keyword
        if total <= 0:
            return HybridWeights(semantic=0.5, keyword=0.5)
        return HybridWeights(semantic=self.semantic / total, keyword=self.keyword / total)


class ScoreWeights(BaseModel):
    """Independent multipliers for the score-based reranker signals."""

    semantic: float = Field(default=0.4, ge=0.0)
    keyword: float = Field(default=0.3, ge=0.0)
    length: float = Field(default=0.2, ge=0.0)
    position: float = Field(default=0.1, ge=0.0)


class RerankingConfig(BaseModel):
    """Configures merge and rerank of retrieval candidates."""

    strategy: RerankingStrategy = "score-based"
    top_k: int = Field(default=20, ge=1)
    max_results: int = Field(default=10, ge=1)
    min_score: float = Field(default=0.3, ge=0.0)
    score_weights: ScoreWeights = Field(default_factory=ScoreWeights)
    hybrid_weights: HybridWeights = Field(default_factory=HybridWeights)
    cross_encoder_share: float = Field(default=0.7, ge=0.0, le=1.0)
    dedup_similarity: float = Field(default=0.85, gt=0.0, le=1.0)


class ContextSizingConfig(BaseModel):
    """Configures query-complexity driven context sizes."""

    min_chunks: int = Field(default=3, ge=0)
    max_chunks: int = Field(default=20, ge=1)
    default_chunks: int = Field(default=5, ge=0)
    min_web_results: int = Field(default=2, ge=0)
    max_web_results: int = Field(default=10, ge=0)
    simple_multiplier: float = Field(default=0.6, gt=0.0)
    moderate_multiplier: float = Field(default=1.0, gt=0.0)
    complex_multiplier: float = Field(default=1.5, gt=0.0)
    short_length: int = Field(default=20, ge=0)
    medium_length: int = Field(default=100, ge=0)
    short_multiplier: float = Field(default=0.7, gt=0.0)
    medium_multiplier: float = Field(default=1.0, gt=0.0)
    long_multiplier: float = Field(default=1.3, gt=0.0)
    query_type_adjustments: dict[QueryType, int] = Field(
        default_factory=lambda: {
            "factual": 0,
            "conceptual": 2,
            "procedural": 1,
            "exploratory": 3,
            "unknown": 0,
        }
    )
    balance_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    tokens_per_document: int = Field(default=300, ge=1)
    tokens_per_web_result: int = Field(default=400, ge=1)
    growth_step_tokens: int = Field(default=500, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ContextSizingConfig":
        if self.min_chunks > self.max_chunks:
            raise ValueError("min_chunks must not exceed max_chunks")
        if self.min_web_results > self.max_web_results:
            raise ValueError("min_web_results must not exceed max_web_results")
        return self


class BudgetAllocation(BaseModel):
    """Token budget ratios.

    `response_reserve` and `overhead` are fractions of the model limit; the
    four slice ratios apply to what is left after both are removed.
    """

    document_context: float = Field(default=0.50, ge=0.0)
    web_results: float = Field(default=0.20, ge=0.0)
    system_prompt: float = Field(default=0.05, ge=0.0)
    user_prompt: float = Field(default=0.05, ge=0.0)
    response_reserve: float = Field(default=0.15, ge=0.0)
    overhead: float = Field(default=0.05, ge=0.0)

    def total(self) -> float:
        return (
            self.document_context
            + self.web_results
            + self.system_prompt
            + self.user_prompt
            + self.response_reserve
            + self.overhead
        )


class CompressionConfig(BaseModel):
    """Configures soft-threshold context compression."""

    enabled: bool = True
    max_context_tokens: int = Field(default=8000, ge=1)
    compression_threshold: int = Field(default=10000, ge=1)
    strategy: CompressionStrategy = "hybrid"
    max_compression_time_ms: float = Field(default=2000.0, gt=0.0)
    summarization_max_tokens: int = Field(default=500, ge=1)
    summarization_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_key_points: int = Field(default=5, ge=1)
    truncation_mode: TruncationMode = "smart"
    min_reduction: float = Field(default=0.1, ge=0.0, lt=1.0)
    max_concurrency: int = Field(default=4, ge=1)

    @model_validator(mode="after")
    def _check_threshold(self) -> "CompressionConfig":
        if self.compression_threshold <= self.max_context_tokens:
            raise ValueError("compression_threshold must exceed max_context_tokens")
        return self


class PipelineConfig(BaseModel):
    """Aggregates component configs and per-request retrieval knobs."""

    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    threshold: ThresholdConfig = Field(default_factory=ThresholdConfig)
    reranking: RerankingConfig = Field(default_factory=RerankingConfig)
    sizing: ContextSizingConfig = Field(default_factory=ContextSizingConfig)
    allocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    default_model: str = "gpt-3.5-turbo"
    enable_web_search: bool = True
    prefer_documents: bool = False
    prefer_web: bool = False
    candidate_multiplier: int = Field(default=4, ge=1)
    lexical_min_score: float = Field(default=0.0, ge=0.0)
    system_prompt: str | None = None
