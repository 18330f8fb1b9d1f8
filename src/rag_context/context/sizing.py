"""Query-complexity driven sizing of document and web context."""

from __future__ import annotations

import math

from loguru import logger

from rag_context.config import ContextSizingConfig
from rag_context.context.budget import TokenBudgeter
from rag_context.retrieval.query_analyzer import QueryAnalyzer
from rag_context.types import AssembledContext, ContextSizing, QueryComplexity, TokenBudget


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class ContextSizer:
    """Decides how many document chunks and web snippets to request."""

    def __init__(
        self,
        config: ContextSizingConfig | None = None,
        analyzer: QueryAnalyzer | None = None,
    ) -> None:
        self.config = config or ContextSizingConfig()
        self.analyzer = analyzer or QueryAnalyzer()

    def chunk_count(self, complexity: QueryComplexity) -> int:
        """Document chunk count for an analyzed query, within [min_chunks, max_chunks]."""
        config = self.config
        intent_multiplier = {
            "simple": config.simple_multiplier,
            "moderate": config.moderate_multiplier,
            "complex": config.complex_multiplier,
        }[complexity.intent_complexity]
        count = _round_half_up(config.default_chunks * intent_multiplier)

        if complexity.length <= config.short_length:
            length_multiplier = config.short_multiplier
        elif complexity.length <= config.medium_length:
            length_multiplier = config.medium_multiplier
        else:
            length_multiplier = config.long_multiplier
        count = _round_half_up(count * length_multiplier)

        count += config.query_type_adjustments.get(complexity.query_type, 0)
        count += _round_half_up((complexity.complexity_score - 0.5) * 4)
        return _clamp(count, config.min_chunks, config.max_chunks)

    def select_context_size(self, query: str) -> int:
        return self.chunk_count(self.analyzer.analyze(query))

    def chunk_count_range(self, query: str) -> tuple[int, int, int]:
        """Return (min, max, recommended) chunk counts for `query`."""
        config = self.config
        recommended = self.select_context_size(query)
        spread = _round_half_up((config.max_chunks - config.min_chunks) * 0.3)
        return (
            max(config.min_chunks, recommended - spread),
            min(config.max_chunks, recommended + spread),
            recommended,
        )

    def balance(
        self,
        complexity: QueryComplexity,
        document_chunks: int,
        web_results: int,
        *,
        prefer_documents: bool = False,
        prefer_web: bool = False,
        balance_ratio: float | None = None,
    ) -> tuple[int, int]:
        """Split counts between documents and web by query type and preference."""
        ratio = self.config.balance_ratio if balance_ratio is None else balance_ratio
        documents, web = document_chunks, web_results

        if complexity.query_type in ("exploratory", "conceptual"):
            web = math.floor(web * 1.2)
            documents = math.floor(documents * 0.9)
        elif complexity.query_type == "factual":
            documents = math.floor(documents * 1.1)
            web = math.floor(web * 0.9)

        if prefer_documents:
            documents = math.floor(documents * 1.3)
            web = math.floor(web * 0.7)
        elif prefer_web:
            documents = math.floor(documents * 0.7)
            web = math.floor(web * 1.3)
        else:
            total = documents + web
            documents = math.floor(total * ratio)
            web = total - documents
        return documents, web

    def select_adaptive_context(
        self,
        query: str,
        *,
        budget: TokenBudget | None = None,
        prefer_documents: bool = False,
        prefer_web: bool = False,
        balance_ratio: float | None = None,
    ) -> ContextSizing:
        config = self.config
        ratio = config.balance_ratio if balance_ratio is None else balance_ratio
        complexity = self.analyzer.analyze(query)
        base_documents = self.chunk_count(complexity)
        base_web = _clamp(
            math.floor(base_documents * 0.8), config.min_web_results, config.max_web_results
        )

        documents, web = self.balance(
            complexity,
            base_documents,
            base_web,
            prefer_documents=prefer_documents,
            prefer_web=prefer_web,
            balance_ratio=ratio,
        )
        balance_adjustment = 1 if prefer_documents else -1 if prefer_web else 0

        token_adjustment = 0
        if budget is not None:
            documents, web, token_adjustment = self._fit_to_budget(
                documents, web, budget.remaining.total, ratio
            )

        documents = _clamp(documents, config.min_chunks, config.max_chunks)
        web = _clamp(web, config.min_web_results, config.max_web_results)

        parts = [
            f"Complexity: {complexity.intent_complexity} (score: {complexity.complexity_score:.2f})",
            f"Query type: {complexity.query_type}",
        ]
        if budget is not None:
            parts.append(f"Token budget: {budget.remaining.total} tokens available")
        if prefer_documents:
            parts.append("Preferring documents over web results")
        elif prefer_web:
            parts.append("Preferring web results over documents")
        else:
            parts.append(f"Balance ratio: {ratio * 100:.0f}% documents")
        if token_adjustment > 0:
            parts.append("Token budget allows additional context")
        elif token_adjustment < 0:
            parts.append("Token budget limits context size")
        reasoning = "; ".join(parts)

        logger.info(
            f"Adaptive context selected: {documents} document chunks, {web} web results "
            f"({complexity.intent_complexity}, {complexity.query_type})"
        )
        return ContextSizing(
            document_chunks=documents,
            web_results=web,
            complexity=complexity,
            reasoning=reasoning,
            complexity_based=base_documents,
            token_adjustment=token_adjustment,
            balance_adjustment=balance_adjustment,
        )

    def refine_selection(
        self,
        context: AssembledContext,
        budget: TokenBudget,
        selection: ContextSizing,
        budgeter: TokenBudgeter,
    ) -> ContextSizing:
        """Adjust counts once the actual retrieved context size is known."""
        config = self.config
        tokens = budgeter.count_context_tokens(context)
        available = budget.remaining.total
        documents, web = selection.document_chunks, selection.web_results

        if tokens.total > available:
            excess_ratio = (tokens.total - available) / tokens.total
            documents = max(config.min_chunks, math.floor(documents * (1 - excess_ratio * 0.5)))
            web = max(config.min_web_results, math.floor(web * (1 - excess_ratio * 0.5)))
            logger.info(
                f"Refined context selection for budget: {selection.document_chunks}->{documents} "
                f"documents, {selection.web_results}->{web} web results"
            )
        elif tokens.total < available * 0.5:
            extra = (available - tokens.total) // 350
            if extra > 0:
                doc_increase = max(0, min(config.max_chunks - documents, math.floor(extra * 0.6)))
                web_increase = max(0, min(config.max_web_results - web, extra - doc_increase))
                documents += doc_increase
                web += web_increase
        else:
            return selection

        return ContextSizing(
            document_chunks=documents,
            web_results=web,
            complexity=selection.complexity,
            reasoning=selection.reasoning + "; Refined based on actual context size",
            complexity_based=selection.complexity_based,
            token_adjustment=selection.token_adjustment,
            balance_adjustment=selection.balance_adjustment,
        )

    def _fit_to_budget(
        self, documents: int, web: int, available: int, ratio: float
    ) -> tuple[int, int, int]:
        config = self.config
        average_cost = (config.tokens_per_document + config.tokens_per_web_result) / 2
        max_items = math.floor(available / average_cost) if available > 0 else 0
        total = documents + web

        if total > max_items:
            scale = max_items / total
            documents = max(config.min_chunks, math.floor(documents * scale))
            web = max(config.min_web_results, math.floor(web * scale))
            return documents, web, -1

        step = config.growth_step_tokens
        if available > total * step:
            extra = (available - total * step) // step
            if extra > 0:
                doc_increase = max(0, min(config.max_chunks - documents, math.floor(extra * ratio)))
                web_increase = max(0, min(config.max_web_results - web, extra - doc_increase))
                if doc_increase or web_increase:
                    return documents + doc_increase, web + web_increase, 1
        return documents, web, 0
