"""Vector search contract and an in-memory reference adapter."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from math import sqrt
from typing import Protocol

from rag_context.types import IndexedChunk, VectorMatch


class VectorSearchService(Protocol):
    """External similarity search service, queried as an opaque dependency."""

    async def search(
        self,
        query_embedding: list[float],
        *,
        owner_id: str | None = None,
        topic_id: str | None = None,
        document_ids: Sequence[str] | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[VectorMatch]:
        """Return the most similar chunks, best first."""


@dataclass(slots=True)
class _StoredVector:
    chunk: IndexedChunk
    embedding: list[float]


class InMemoryVectorSearch:
    """Deterministic vector search used for tests and local prototyping."""

    def __init__(self) -> None:
        self._store: dict[str, _StoredVector] = {}

    def upsert(self, chunks: list[IndexedChunk], embeddings: list[list[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            self._store[chunk.chunk_id] = _StoredVector(chunk=chunk, embedding=embedding)

    def delete(self, chunk_id: str) -> None:
        self._store.pop(chunk_id, None)

    def delete_document(self, document_id: str) -> int:
        doomed = [cid for cid, record in self._store.items() if record.chunk.document_id == document_id]
        for chunk_id in doomed:
            del self._store[chunk_id]
        return len(doomed)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    async def search(
        self,
        query_embedding: list[float],
        *,
        owner_id: str | None = None,
        topic_id: str | None = None,
        document_ids: Sequence[str] | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[VectorMatch]:
        allowed = set(document_ids) if document_ids else None
        matches: list[VectorMatch] = []
        for record in self._store.values():
            chunk = record.chunk
            if owner_id is not None and chunk.owner_id != owner_id:
                continue
            if topic_id is not None and chunk.topic_id != topic_id:
                continue
            if allowed is not None and chunk.document_id not in allowed:
                continue
            score = _cosine_similarity(query_embedding, record.embedding)
            if score < min_score:
                continue
            matches.append(
                VectorMatch(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    content=chunk.content,
                    score=score,
                    chunk_index=chunk.chunk_index,
                    document_name=chunk.metadata.document_name,
                )
            )
        matches.sort(key=lambda item: item.score, reverse=True)
        return matches[:top_k]


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
