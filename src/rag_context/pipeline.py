"""Context assembly: retrieval, fusion, sizing, compression and budgeting."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from rag_context.config import PipelineConfig
from rag_context.context.budget import TokenBudgeter
from rag_context.context.compression import ContextCompressor
from rag_context.context.sizing import ContextSizer
from rag_context.ingest.embedder import Embedder
from rag_context.llm.base import LanguageModel
from rag_context.obs.tracing import Timer, UsageRecorder
from rag_context.retrieval.fusion import CrossEncoderScorer, FusionLayer
from rag_context.retrieval.lexical_index import LexicalIndex
from rag_context.retrieval.query_analyzer import QueryAnalyzer
from rag_context.retrieval.retriever import DualRouteRetriever
from rag_context.retrieval.threshold import ThresholdOptimizer
from rag_context.retrieval.vector_store import VectorSearchService
from rag_context.retrieval.web_search import WebSearchService
from rag_context.types import (
    AssembledContext,
    BudgetCheck,
    CompressionStats,
    ContextSizing,
    DocumentContext,
    FusedResult,
    SearchFilters,
    ThresholdResult,
    TokenBudget,
    WebSnippet,
)


@dataclass(slots=True)
class AssemblyResult:
    """Bounded context for one query plus the decisions that produced it."""

    context: AssembledContext
    budget: TokenBudget
    budget_check: BudgetCheck
    threshold: ThresholdResult
    sizing: ContextSizing
    compression: CompressionStats | None = None
    degraded_routes: list[str] = field(default_factory=list)
    latency_ms: float = 0.0


class ContextPipeline:
    """Assembles the evidence handed to the answer-generation model.

    The lexical index is owned by the caller and shared across requests; every
    other component is rebuilt from the effective config on each call.
    """

    def __init__(
        self,
        lexical_index: LexicalIndex,
        *,
        vector_search: VectorSearchService | None = None,
        embedder: Embedder | None = None,
        web_search: WebSearchService | None = None,
        llm: LanguageModel | None = None,
        cross_encoder: CrossEncoderScorer | None = None,
        usage_recorder: UsageRecorder | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.lexical_index = lexical_index
        self.vector_search = vector_search
        self.embedder = embedder
        self.web_search = web_search
        self.llm = llm
        self.cross_encoder = cross_encoder
        self.usage_recorder = usage_recorder or UsageRecorder()
        self.config = config or PipelineConfig()
        self.analyzer = QueryAnalyzer()

    async def assemble_context(
        self,
        query: str,
        filters: SearchFilters | None = None,
        model_name: str | None = None,
        config: PipelineConfig | None = None,
    ) -> AssemblyResult:
        config = config or self.config
        model = model_name or config.default_model
        budgeter = TokenBudgeter(config.allocation)
        sizer = ContextSizer(config.sizing, self.analyzer)
        optimizer = ThresholdOptimizer(config.threshold)

        with Timer() as timer:
            budget = budgeter.calculate_budget(
                model, system_prompt=config.system_prompt, user_prompt=query
            )
            sizing = sizer.select_adaptive_context(
                query,
                budget=budget,
                prefer_documents=config.prefer_documents,
                prefer_web=config.prefer_web,
            )
            threshold = optimizer.calculate_threshold(query)

            degraded: list[str] = []
            if query.strip():
                fused, snippets = await self._retrieve(
                    query, filters, config, sizing, threshold.threshold, degraded
                )
            else:
                fused, snippets = [], []

            context = AssembledContext(
                document_chunks=[_document_context(item) for item in fused],
                web_snippets=snippets,
            )
            sizing = sizer.refine_selection(context, budget, sizing, budgeter)
            context = AssembledContext(
                document_chunks=context.document_chunks[: sizing.document_chunks],
                web_snippets=context.web_snippets[: sizing.web_results],
            )

            compressor = ContextCompressor(config.compression, self.llm, budgeter)
            context, compression = await compressor.compress(context, query)
            context = budgeter.trim(context, budget)
            check = budgeter.check_budget(budget, context)

        logger.info(
            f"Assembled context for model {model}: {len(context.document_chunks)} documents, "
            f"{len(context.web_snippets)} web results, {check.context_tokens.total} tokens, "
            f"fits={check.fits}, {timer.elapsed_ms:.1f}ms"
        )
        self.usage_recorder.record(
            query=query,
            model=model,
            document_chunks=len(context.document_chunks),
            web_snippets=len(context.web_snippets),
            context_tokens=check.context_tokens.total,
            compressed=compression is not None,
            degraded_routes=degraded,
            latency_ms=timer.elapsed_ms,
        )
        return AssemblyResult(
            context=context,
            budget=budget,
            budget_check=check,
            threshold=threshold,
            sizing=sizing,
            compression=compression,
            degraded_routes=degraded,
            latency_ms=timer.elapsed_ms,
        )

    async def _retrieve(
        self,
        query: str,
        filters: SearchFilters | None,
        config: PipelineConfig,
        sizing: ContextSizing,
        threshold: float,
        degraded: list[str],
    ) -> tuple[list[FusedResult], list[WebSnippet]]:
        retriever = DualRouteRetriever(
            self.lexical_index, self.vector_search, self.embedder, config
        )
        fusion = FusionLayer(config.reranking, self.cross_encoder)

        routes, snippets = await asyncio.gather(
            retriever.retrieve(
                query, filters=filters, top_k=sizing.document_chunks, threshold=threshold
            ),
            self._search_web(query, config, sizing.web_results, degraded),
        )
        degraded.extend(routes.degraded)
        fused = fusion.fuse(
            query, routes.semantic, routes.keyword, max_results=sizing.document_chunks
        )
        return fused, snippets

    async def _search_web(
        self, query: str, config: PipelineConfig, max_results: int, degraded: list[str]
    ) -> list[WebSnippet]:
        if self.web_search is None or not config.enable_web_search or max_results <= 0:
            return []
        try:
            return await self.web_search.search(query, max_results=max_results)
        except Exception as exc:
            logger.warning(f"web search failed, continuing without it: {exc}")
            degraded.append("web")
            return []


def _document_context(item: FusedResult) -> DocumentContext:
    return DocumentContext(
        document_id=item.document_id,
        document_name=item.document_name,
        content=item.content,
        score=item.fused_score,
        chunk_index=item.chunk_index,
    )
