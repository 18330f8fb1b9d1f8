"""Per-model token allocation, budget checks and greedy trimming."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

from loguru import logger

from rag_context.config import BudgetAllocation
from rag_context.context.tokens import ELLIPSIS, count_tokens, truncate_to_tokens
from rag_context.types import (
    AssembledContext,
    BudgetCheck,
    BudgetSlices,
    ContextTokens,
    DocumentContext,
    TokenBudget,
    WebSnippet,
)

MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-3.5-turbo-0125": 16385,
    "gpt-3.5-turbo-1106": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4-turbo-preview": 128000,
    "gpt-4-0125-preview": 128000,
    "gpt-4-1106-preview": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
}
DEFAULT_MODEL_LIMIT = 16385

# Substring fallbacks, most specific first.
_FAMILY_LIMITS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("gpt-4-turbo", "gpt-4o"), 128000),
    (("gpt-4-32k",), 32768),
    (("gpt-4",), 8192),
    (("gpt-3.5-turbo",), 16385),
)

MIN_TRUNCATION_TOKENS = 100
DOCUMENT_HEADROOM_TOKENS = 50
WEB_HEADROOM_TOKENS = 100
_SLICE_WARNING_PREFIXES = ("Document context exceeds allocation", "Web results exceed allocation")

_Item = TypeVar("_Item", DocumentContext, WebSnippet)


class TokenBudgetExceededError(RuntimeError):
    """Raised by strict budget calculation when prompts exceed their allocation."""


def document_text(document: DocumentContext) -> str:
    return f"[Document] {document.document_name}\n{document.content}"


def web_text(snippet: WebSnippet) -> str:
    return f"[Web Source] {snippet.title}\nURL: {snippet.url}\n{snippet.content}"


def _document_header(document: DocumentContext) -> str:
    return f"[Document] {document.document_name}\n"


def _web_header(snippet: WebSnippet) -> str:
    return f"[Web Source] {snippet.title}\nURL: {snippet.url}\n"


class TokenBudgeter:
    """Computes token budgets for a target model and fits context into them."""

    def __init__(self, allocation: BudgetAllocation | None = None) -> None:
        self.allocation = allocation or BudgetAllocation()

    def model_limit(self, model: str) -> int:
        if model in MODEL_TOKEN_LIMITS:
            return MODEL_TOKEN_LIMITS[model]
        for prefixes, limit in _FAMILY_LIMITS:
            if any(prefix in model for prefix in prefixes):
                return limit
        logger.warning(f"Unknown model {model!r}, using default token limit {DEFAULT_MODEL_LIMIT}")
        return DEFAULT_MODEL_LIMIT

    def calculate_budget(
        self,
        model: str,
        *,
        system_prompt: str | None = None,
        user_prompt: str | None = None,
        max_response_tokens: int | None = None,
        allocation: BudgetAllocation | None = None,
        strict: bool = False,
    ) -> TokenBudget:
        """Allocate the model's context window across the prompt components.

        Slices are taken from what is left after the response reserve and
        overhead. Prompt texts, when given, count as usage of their slices;
        otherwise the whole slice is treated as used. Overruns are reported as
        warnings, and raise only when `strict` is set.
        """
        ratios = _normalized(allocation or self.allocation)
        model_limit = self.model_limit(model)

        if max_response_tokens is not None:
            response_reserve = max_response_tokens
        else:
            response_reserve = math.floor(model_limit * ratios.response_reserve)
        overhead = math.floor(model_limit * ratios.overhead)
        available = model_limit - response_reserve - overhead

        allocations = BudgetSlices(
            document_context=math.floor(available * ratios.document_context),
            web_results=math.floor(available * ratios.web_results),
            system_prompt=math.floor(available * ratios.system_prompt),
            user_prompt=math.floor(available * ratios.user_prompt),
        )
        allocations.total = (
            allocations.document_context
            + allocations.web_results
            + allocations.system_prompt
            + allocations.user_prompt
        )

        usage = BudgetSlices(
            system_prompt=(
                count_tokens(system_prompt)
                if system_prompt is not None
                else allocations.system_prompt
            ),
            user_prompt=(
                count_tokens(user_prompt) if user_prompt is not None else allocations.user_prompt
            ),
        )
        usage.total = usage.system_prompt + usage.user_prompt

        budget = TokenBudget(
            model=model,
            model_limit=model_limit,
            available_budget=available,
            allocated_budget=allocations.total,
            response_reserve=response_reserve,
            overhead=overhead,
            allocations=allocations,
            usage=usage,
            remaining=BudgetSlices(),
        )
        _update_remaining(budget)

        if usage.system_prompt > allocations.system_prompt:
            budget.warnings.append(
                f"System prompt exceeds allocation: {usage.system_prompt} > {allocations.system_prompt}"
            )
        if usage.user_prompt > allocations.user_prompt:
            budget.warnings.append(
                f"User prompt exceeds allocation: {usage.user_prompt} > {allocations.user_prompt}"
            )
        if usage.total > available:
            budget.warnings.append(f"Total usage exceeds available budget: {usage.total} > {available}")

        if budget.warnings:
            if strict:
                raise TokenBudgetExceededError("; ".join(budget.warnings))
            for warning in budget.warnings:
                logger.warning(f"Token budget for {model}: {warning}")
        return budget

    def count_context_tokens(self, context: AssembledContext) -> ContextTokens:
        return ContextTokens(
            document_context=sum(count_tokens(document_text(d)) for d in context.document_chunks),
            web_results=sum(count_tokens(web_text(s)) for s in context.web_snippets),
        )

    def check_budget(self, budget: TokenBudget, context: AssembledContext) -> BudgetCheck:
        """Record the context's actual usage on `budget` and report whether it fits."""
        tokens = self.count_context_tokens(context)
        budget.usage.document_context = tokens.document_context
        budget.usage.web_results = tokens.web_results
        budget.usage.total = (
            tokens.total + budget.usage.system_prompt + budget.usage.user_prompt
        )
        _update_remaining(budget)

        remaining = budget.remaining
        warnings: list[str] = []
        errors: list[str] = []
        if remaining.document_context < 0:
            warnings.append(f"{_SLICE_WARNING_PREFIXES[0]} by {-remaining.document_context} tokens")
        if remaining.web_results < 0:
            warnings.append(f"{_SLICE_WARNING_PREFIXES[1]} by {-remaining.web_results} tokens")
        if remaining.total < 0:
            errors.append(f"Total tokens exceed available budget by {-remaining.total} tokens")

        fits = all(
            value >= 0
            for value in (
                remaining.document_context,
                remaining.web_results,
                remaining.system_prompt,
                remaining.user_prompt,
                remaining.total,
            )
        )
        budget.warnings[:] = [
            warning for warning in budget.warnings if not warning.startswith(_SLICE_WARNING_PREFIXES)
        ]
        budget.warnings.extend(warnings)
        return BudgetCheck(
            fits=fits,
            context_tokens=tokens,
            remaining=replace(remaining),
            warnings=warnings,
            errors=errors,
        )

    def trim(self, context: AssembledContext, budget: TokenBudget) -> AssembledContext:
        """Greedily keep the highest-scoring items that fit each slice.

        The first item that does not fit may be included once in truncated
        form; nothing after it in the same slice is added. The result never
        exceeds the per-slice or total remaining tokens of `budget`.
        """
        total_left = max(0, budget.remaining.total)
        document_cap = min(max(0, budget.remaining.document_context), total_left)
        documents, used = _fit_items(
            context.document_chunks,
            document_cap,
            document_text,
            _document_header,
            DOCUMENT_HEADROOM_TOKENS,
        )
        web_cap = min(max(0, budget.remaining.web_results), total_left - used)
        snippets, _ = _fit_items(
            context.web_snippets, web_cap, web_text, _web_header, WEB_HEADROOM_TOKENS
        )

        dropped = context.item_count - len(documents) - len(snippets)
        if dropped:
            logger.info(
                f"Trimmed context to budget: kept {len(documents)} documents and "
                f"{len(snippets)} web results, dropped {dropped}"
            )
        return AssembledContext(document_chunks=documents, web_snippets=snippets)

    def summary(self, budget: TokenBudget) -> str:
        usage, remaining = budget.usage, budget.remaining
        return (
            f"Model: {budget.model} ({budget.model_limit} tokens) | "
            f"Available: {budget.available_budget} | "
            f"Used: {usage.total} (documents {usage.document_context}, web {usage.web_results}, "
            f"system {usage.system_prompt}, user {usage.user_prompt}) | "
            f"Remaining: {remaining.total} | "
            f"Warnings: {len(budget.warnings)}"
        )


def _normalized(allocation: BudgetAllocation) -> BudgetAllocation:
    total = allocation.total()
    if total <= 0 or abs(total - 1.0) <= 0.01:
        return allocation
    return BudgetAllocation(
        document_context=allocation.document_context / total,
        web_results=allocation.web_results / total,
        system_prompt=allocation.system_prompt / total,
        user_prompt=allocation.user_prompt / total,
        response_reserve=allocation.response_reserve / total,
        overhead=allocation.overhead / total,
    )


def _update_remaining(budget: TokenBudget) -> None:
    allocations, usage = budget.allocations, budget.usage
    budget.remaining = BudgetSlices(
        document_context=allocations.document_context - usage.document_context,
        web_results=allocations.web_results - usage.web_results,
        system_prompt=allocations.system_prompt - usage.system_prompt,
        user_prompt=allocations.user_prompt - usage.user_prompt,
        total=budget.available_budget - usage.total,
    )


def _fit_items(
    items: list[_Item],
    cap: int,
    render: Callable[[_Item], str],
    header: Callable[[_Item], str],
    headroom: int,
) -> tuple[list[_Item], int]:
    ranked = sorted(items, key=lambda item: item.score, reverse=True)
    kept: list[_Item] = []
    used = 0
    for item in ranked:
        cost = count_tokens(render(item))
        if used + cost <= cap:
            kept.append(item)
            used += cost
            continue

        left = cap - used
        if left > MIN_TRUNCATION_TOKENS:
            content_tokens = left - headroom - count_tokens(header(item)) - count_tokens(ELLIPSIS)
            if content_tokens > 0:
                truncated = replace(
                    item, content=truncate_to_tokens(item.content, content_tokens) + ELLIPSIS
                )
                cost = count_tokens(render(truncated))
                if cost <= left:
                    kept.append(truncated)
                    used += cost
        break
    return kept, used
