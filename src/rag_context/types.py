"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from rag_context.config import QueryType

IntentComplexity = Literal["simple", "moderate", "complex"]
ThresholdStrategy = Literal["default", "query-type", "distribution", "fallback", "adaptive"]
CandidateSource = Literal["semantic", "keyword", "both"]


@dataclass(slots=True)
class ChunkMetadata:
    """Indexing-side metadata attached to a chunk at ingestion time."""

    document_name: str = ""
    source: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class IndexedChunk:
    """A chunk owned by the lexical index once added."""

    chunk_id: str
    document_id: str
    content: str
    owner_id: str
    topic_id: str | None = None
    chunk_index: int | None = None
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)


@dataclass(slots=True)
class LexicalHit:
    """A BM25-scored lexical search result."""

    chunk: IndexedChunk
    score: float


@dataclass(slots=True)
class IndexStats:
    total_chunks: int
    total_terms: int
    average_length: float


@dataclass(slots=True)
class SearchFilters:
    """Exact-match predicates applied before scoring."""

    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: list[str] | None = None


@dataclass(slots=True)
class VectorMatch:
    """A result returned by the external vector search service."""

    chunk_id: str
    document_id: str
    content: str
    score: float
    chunk_index: int | None = None
    document_name: str = ""


@dataclass(slots=True)
class QueryComplexity:
    """Text-derived query features. Recomputed per call."""

    length: int
    word_count: int
    keywords: list[str]
    intent_complexity: IntentComplexity
    query_type: QueryType
    complexity_score: float

    @property
    def keyword_count(self) -> int:
        return len(self.keywords)


@dataclass(slots=True)
class ScoreDistribution:
    scores: list[float]
    mean: float
    median: float
    std_dev: float
    min: float
    max: float
    percentiles: dict[str, float]


@dataclass(slots=True)
class ThresholdResult:
    threshold: float
    strategy: ThresholdStrategy
    confidence: float
    reasoning: str
    query_type: QueryType | None = None


@dataclass(slots=True)
class RetrievalCandidate:
    """A merged retrieval result carrying one comparable score."""

    chunk_id: str
    document_id: str
    content: str
    score: float
    document_name: str = ""
    chunk_index: int | None = None
    source: CandidateSource = "semantic"
    semantic_score: float | None = None
    keyword_score: float | None = None

    @property
    def identity(self) -> str:
        position = self.chunk_id if self.chunk_index is None else self.chunk_index
        return f"{self.document_id}_{position}"


@dataclass(slots=True)
class FusedResult:
    """A reranked candidate. `rank_change` is positive when it moved up."""

    chunk_id: str
    document_id: str
    content: str
    original_score: float
    fused_score: float
    rank_change: int = 0
    document_name: str = ""
    chunk_index: int | None = None

    @property
    def identity(self) -> str:
        position = self.chunk_id if self.chunk_index is None else self.chunk_index
        return f"{self.document_id}_{position}"


@dataclass(slots=True)
class DocumentContext:
    """Display-side view of a document chunk handed to the prompt builder."""

    document_id: str
    document_name: str
    content: str
    score: float
    chunk_index: int | None = None


@dataclass(slots=True)
class WebSnippet:
    title: str
    url: str
    content: str
    score: float = 0.0


@dataclass(slots=True)
class AssembledContext:
    """The bounded evidence produced for one query."""

    document_chunks: list[DocumentContext] = field(default_factory=list)
    web_snippets: list[WebSnippet] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.document_chunks) + len(self.web_snippets)


@dataclass(slots=True)
class BudgetSlices:
    document_context: int = 0
    web_results: int = 0
    system_prompt: int = 0
    user_prompt: int = 0
    total: int = 0


@dataclass(slots=True)
class TokenBudget:
    """Per-request token allocation. Usage and remaining are updated in place."""

    model: str
    model_limit: int
    available_budget: int
    allocated_budget: int
    response_reserve: int
    overhead: int
    allocations: BudgetSlices
    usage: BudgetSlices
    remaining: BudgetSlices
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContextTokens:
    document_context: int
    web_results: int

    @property
    def total(self) -> int:
        return self.document_context + self.web_results


@dataclass(slots=True)
class BudgetCheck:
    fits: bool
    context_tokens: ContextTokens
    remaining: BudgetSlices
    warnings: list[str]
    errors: list[str]


@dataclass(slots=True)
class ContextSizing:
    """Recommended document/web item counts for one query."""

    document_chunks: int
    web_results: int
    complexity: QueryComplexity
    reasoning: str
    complexity_based: int = 0
    token_adjustment: int = 0
    balance_adjustment: int = 0


@dataclass(slots=True)
class CompressionStats:
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    strategy: str
    processing_time_ms: float
    items_compressed: int = 0
    items_passed_through: int = 0
