"""Token counting and token-exact truncation shared by budgeting and compression."""

from __future__ import annotations

from rag_context.obs.tracing import estimate_token_count, token_spans

ELLIPSIS = "..."


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return estimate_token_count(text)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Return the longest prefix of `text` holding at most `max_tokens` tokens."""
    if max_tokens <= 0:
        return ""
    spans = token_spans(text)
    if len(spans) <= max_tokens:
        return text
    return text[: spans[max_tokens - 1][1]]


def keep_last_tokens(text: str, max_tokens: int) -> str:
    """Return the shortest suffix of `text` holding the last `max_tokens` tokens."""
    if max_tokens <= 0:
        return ""
    spans = token_spans(text)
    if len(spans) <= max_tokens:
        return text
    return text[spans[len(spans) - max_tokens][0] :]
