"""Dual-route retriever issuing lexical and vector search concurrently."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from rag_context.config import PipelineConfig
from rag_context.ingest.embedder import Embedder
from rag_context.retrieval.lexical_index import LexicalIndex
from rag_context.retrieval.vector_store import VectorSearchService
from rag_context.types import LexicalHit, RetrievalCandidate, SearchFilters, VectorMatch


class RetrievalUnavailableError(RuntimeError):
    """Raised when every configured retrieval route failed."""


@dataclass(slots=True)
class RouteResults:
    semantic: list[RetrievalCandidate] = field(default_factory=list)
    keyword: list[RetrievalCandidate] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)


class DualRouteRetriever:
    """Runs the lexical index and the vector service side by side.

    Route candidates are oversampled relative to the requested count so that
    relevant chunks survive fusion and reranking. A failing route contributes
    zero results; only the failure of every route is an error.
    """

    def __init__(
        self,
        lexical_index: LexicalIndex,
        vector_search: VectorSearchService | None = None,
        embedder: Embedder | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        if vector_search is not None and embedder is None:
            raise ValueError("vector search requires an embedder for the query")
        self.lexical_index = lexical_index
        self.vector_search = vector_search
        self.embedder = embedder
        self.config = config or PipelineConfig()

    async def retrieve(
        self,
        query: str,
        *,
        filters: SearchFilters | None = None,
        top_k: int = 10,
        threshold: float = 0.0,
    ) -> RouteResults:
        filters = filters or SearchFilters()
        route_k = top_k * self.config.candidate_multiplier

        routes = {"keyword": self._lexical(query, filters, route_k)}
        if self.vector_search is not None:
            routes["semantic"] = self._semantic(query, filters, route_k, threshold)

        outcomes = await asyncio.gather(*routes.values(), return_exceptions=True)
        results = RouteResults()
        for name, outcome in zip(routes, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(f"{name} retrieval failed, continuing without it: {outcome}")
                results.degraded.append(name)
                continue
            setattr(results, name, outcome)

        if len(results.degraded) == len(routes):
            raise RetrievalUnavailableError(
                f"all retrieval routes failed: {', '.join(results.degraded)}"
            )
        logger.debug(
            f"Retrieved {len(results.keyword)} keyword and {len(results.semantic)} semantic candidates"
        )
        return results

    async def _lexical(
        self, query: str, filters: SearchFilters, top_k: int
    ) -> list[RetrievalCandidate]:
        hits = await asyncio.to_thread(
            self.lexical_index.search,
            query,
            owner_id=filters.owner_id,
            topic_id=filters.topic_id,
            document_ids=filters.document_ids,
            top_k=top_k,
            min_score=self.config.lexical_min_score,
        )
        return [_from_lexical(hit) for hit in hits]

    async def _semantic(
        self, query: str, filters: SearchFilters, top_k: int, threshold: float
    ) -> list[RetrievalCandidate]:
        assert self.vector_search is not None and self.embedder is not None
        embedding = self.embedder.embed_query(query)
        matches = await self.vector_search.search(
            embedding,
            owner_id=filters.owner_id,
            topic_id=filters.topic_id,
            document_ids=filters.document_ids,
            top_k=top_k,
            min_score=threshold,
        )
        return [_from_vector(match) for match in matches]


def _from_lexical(hit: LexicalHit) -> RetrievalCandidate:
    chunk = hit.chunk
    return RetrievalCandidate(
        chunk_id=chunk.chunk_id,
        document_id=chunk.document_id,
        content=chunk.content,
        score=hit.score,
        document_name=chunk.metadata.document_name,
        chunk_index=chunk.chunk_index,
        source="keyword",
        keyword_score=hit.score,
    )


def _from_vector(match: VectorMatch) -> RetrievalCandidate:
    return RetrievalCandidate(
        chunk_id=match.chunk_id,
        document_id=match.document_id,
        content=match.content,
        score=match.score,
        document_name=match.document_name,
        chunk_index=match.chunk_index,
        source="semantic",
        semantic_score=match.score,
    )
