"""Turns chunk and query text into vectors for the semantic route."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from hashlib import blake2b
from math import sqrt

from rag_context.retrieval.lexical_index import tokenize


class Embedder(ABC):
    """Vectorizes text for `VectorSearchService` lookups.

    Chunks and queries must go through the same instance so their vectors
    share one space.
    """

    @abstractmethod
    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Vectors for indexed chunk contents, in input order."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Vector for a user query."""


class HashingEmbedder(Embedder):
    """Bag-of-terms vectors built with the hashing trick.

    Each term lands in one of `dimension` buckets with a hash-derived sign,
    weighted by how often it occurs. Vectors are scaled to unit length, so
    cosine similarity reduces to term overlap.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._vectorize(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._vectorize(text)

    def _vectorize(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for term, count in Counter(tokenize(text)).items():
            bucket, sign = self._bucket(term)
            vector[bucket] += sign * count
        return _unit_length(vector)

    def _bucket(self, term: str) -> tuple[int, float]:
        digest = blake2b(term.encode("utf-8"), digest_size=8).digest()
        bucket = int.from_bytes(digest[:4], "little") % self.dimension
        return bucket, (-1.0 if digest[4] & 1 else 1.0)


def _unit_length(vector: list[float]) -> list[float]:
    magnitude = sqrt(sum(component * component for component in vector))
    if magnitude == 0:
        return vector
    return [component / magnitude for component in vector]
