import pytest

from rag_context.config import BudgetAllocation
from rag_context.context.budget import TokenBudgeter, TokenBudgetExceededError
from rag_context.context.tokens import count_tokens
from rag_context.types import AssembledContext, DocumentContext, WebSnippet


def _doc(name: str, words: int, score: float) -> DocumentContext:
    return DocumentContext(
        document_id=name,
        document_name=name,
        content=" ".join(["alpha"] * words),
        score=score,
    )


@pytest.mark.parametrize(
    ("model", "limit"),
    [
        ("gpt-3.5-turbo", 16385),
        ("gpt-4", 8192),
        ("gpt-4-32k", 32768),
        ("gpt-4o-mini", 128000),
        ("gpt-4o-2024-08-06", 128000),
        ("gpt-4-0613", 8192),
        ("some-other-model", 16385),
    ],
)
def test_model_limits(model: str, limit: int) -> None:
    assert TokenBudgeter().model_limit(model) == limit


def test_default_budget_allocation() -> None:
    budget = TokenBudgeter().calculate_budget("gpt-3.5-turbo")

    assert budget.response_reserve == 2457
    assert budget.overhead == 819
    assert budget.available_budget == 13109
    assert budget.allocations.document_context == 6554
    assert budget.allocations.web_results == 2621
    assert budget.allocations.system_prompt == 655
    assert budget.allocations.user_prompt == 655
    assert budget.allocated_budget == 6554 + 2621 + 655 + 655
    assert budget.remaining.total == 13109 - 655 - 655
    assert budget.warnings == []


def test_allocation_ratios_are_renormalized() -> None:
    doubled = BudgetAllocation(
        document_context=1.0,
        web_results=0.4,
        system_prompt=0.1,
        user_prompt=0.1,
        response_reserve=0.3,
        overhead=0.1,
    )
    budgeter = TokenBudgeter()

    scaled = budgeter.calculate_budget("gpt-3.5-turbo", allocation=doubled)
    default = budgeter.calculate_budget("gpt-3.5-turbo")

    assert scaled.allocations == default.allocations


def test_prompts_count_as_usage() -> None:
    budget = TokenBudgeter().calculate_budget(
        "gpt-4", system_prompt="You answer from context.", user_prompt="What is BM25?"
    )

    assert budget.usage.system_prompt == count_tokens("You answer from context.")
    assert budget.usage.user_prompt == 4
    assert budget.remaining.user_prompt == budget.allocations.user_prompt - 4


def test_oversized_prompt_warns_or_raises_in_strict_mode() -> None:
    budgeter = TokenBudgeter()
    long_prompt = "rule " * 1000

    budget = budgeter.calculate_budget("gpt-4", system_prompt=long_prompt)
    assert any("System prompt exceeds allocation" in w for w in budget.warnings)

    with pytest.raises(TokenBudgetExceededError):
        budgeter.calculate_budget("gpt-4", system_prompt=long_prompt, strict=True)


def test_context_tokens_include_source_headers() -> None:
    context = AssembledContext(
        document_chunks=[DocumentContext("d1", "Policy", "encrypt data", 0.9)],
        web_snippets=[WebSnippet(title="Guide", url="https://example.com/a", content="use keys")],
    )

    tokens = TokenBudgeter().count_context_tokens(context)

    assert tokens.document_context == count_tokens("[Document] Policy\nencrypt data")
    assert tokens.web_results == count_tokens("[Web Source] Guide\nURL: https://example.com/a\nuse keys")
    assert tokens.total == tokens.document_context + tokens.web_results


def test_check_budget_records_usage_and_reports_overflow() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")

    small = budgeter.check_budget(budget, AssembledContext(document_chunks=[_doc("a", 10, 1.0)]))
    assert small.fits
    assert budget.usage.document_context == small.context_tokens.document_context

    large = budgeter.check_budget(budget, AssembledContext(document_chunks=[_doc("a", 4000, 1.0)]))
    assert not large.fits
    assert any("Document context exceeds allocation" in w for w in large.warnings)
    assert large.errors == []
    assert large.remaining.document_context < 0


def test_repeated_checks_replace_slice_warnings() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")
    oversized = AssembledContext(document_chunks=[_doc("a", 4000, 1.0)])

    budgeter.check_budget(budget, oversized)
    budgeter.check_budget(budget, oversized)

    slice_warnings = [w for w in budget.warnings if w.startswith("Document context exceeds")]
    assert len(slice_warnings) == 1

    budgeter.check_budget(budget, AssembledContext(document_chunks=[_doc("a", 10, 1.0)]))
    assert not any(w.startswith("Document context exceeds") for w in budget.warnings)


def test_trim_keeps_items_in_score_order_and_drops_when_residual_is_small() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")
    budget.remaining.document_context = 300
    context = AssembledContext(
        document_chunks=[_doc("d1", 200, 0.9), _doc("d2", 200, 0.5), _doc("d3", 10, 0.8)]
    )

    trimmed = budgeter.trim(context, budget)

    assert [d.document_id for d in trimmed.document_chunks] == ["d1", "d3"]
    assert budgeter.count_context_tokens(trimmed).document_context <= 300


def test_trim_truncates_first_overflowing_item() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")
    budget.remaining.document_context = 400
    context = AssembledContext(
        document_chunks=[
            _doc("d1", 200, 0.9),
            _doc("d2", 200, 0.5),
            _doc("d3", 10, 0.8),
            _doc("d4", 5, 0.1),
        ]
    )

    trimmed = budgeter.trim(context, budget)

    assert [d.document_id for d in trimmed.document_chunks] == ["d1", "d3", "d2"]
    assert trimmed.document_chunks[-1].content.endswith("...")
    assert budgeter.count_context_tokens(trimmed).document_context <= 400
    assert context.document_chunks[1].content == " ".join(["alpha"] * 200)


def test_trim_respects_web_slice() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")
    budget.remaining.web_results = 50
    context = AssembledContext(
        web_snippets=[
            WebSnippet(title="t1", url="https://a.example", content="x " * 100, score=0.9),
            WebSnippet(title="t2", url="https://b.example", content="short", score=0.5),
        ]
    )

    trimmed = budgeter.trim(context, budget)

    assert [s.title for s in trimmed.web_snippets] == []
    assert budgeter.count_context_tokens(trimmed).web_results <= 50


def test_summary_mentions_model_and_usage() -> None:
    budgeter = TokenBudgeter()
    budget = budgeter.calculate_budget("gpt-4")

    summary = budgeter.summary(budget)

    assert "gpt-4" in summary
    assert "8192" in summary
    assert "Remaining" in summary
