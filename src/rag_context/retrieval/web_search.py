"""Web search contract and a fixed-result adapter for local runs."""

from __future__ import annotations

from typing import Protocol

from rag_context.types import WebSnippet


class WebSearchService(Protocol):
    """Optional external web search consulted alongside the document routes."""

    async def search(self, query: str, *, max_results: int = 5) -> list[WebSnippet]:
        """Return snippets ordered by relevance."""


class StaticWebSearch:
    """Serves the same snippets for every query."""

    def __init__(self, snippets: list[WebSnippet] | None = None) -> None:
        self.snippets = list(snippets or [])

    async def search(self, query: str, *, max_results: int = 5) -> list[WebSnippet]:
        ranked = sorted(self.snippets, key=lambda snippet: snippet.score, reverse=True)
        return ranked[:max_results]
