"""In-memory Okapi BM25 index for keyword retrieval."""

from __future__ import annotations

import math
import re
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from loguru import logger

from rag_context.config import LexicalConfig
from rag_context.types import IndexedChunk, IndexStats, LexicalHit

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    return _NON_WORD.sub(" ", text.lower()).split()


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred once waiting so a steady stream of searches cannot
    starve index updates.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class LexicalIndex:
    """BM25 inverted index over chunks for one tenant.

    Instances are constructed and owned by the caller; there is no shared
    process-wide index.
    """

    def __init__(self, config: LexicalConfig | None = None) -> None:
        self.config = config or LexicalConfig()
        self._lock = ReadWriteLock()
        self._chunks: dict[str, IndexedChunk] = {}
        self._postings: dict[str, set[str]] = {}
        self._term_freqs: dict[str, dict[str, int]] = {}
        self._lengths: dict[str, int] = {}
        self._total_length = 0
        self._average_length = 0.0

    def __len__(self) -> int:
        return len(self._chunks)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._chunks

    def add(self, chunk: IndexedChunk) -> bool:
        """Index one chunk. Returns False when it has no indexable terms."""
        terms = tokenize(chunk.content)
        if not terms:
            logger.warning(f"Chunk {chunk.chunk_id} has no terms after tokenization, skipping")
            return False
        with self._lock.write():
            self._insert(chunk, terms)
        return True

    def add_batch(self, chunks: Iterable[IndexedChunk]) -> int:
        added = 0
        for chunk in chunks:
            if self.add(chunk):
                added += 1
        logger.info(f"Added {added} chunks to lexical index ({len(self._chunks)} total)")
        return added

    def remove(self, chunk_id: str) -> bool:
        with self._lock.write():
            return self._delete(chunk_id)

    def remove_by_document(self, document_id: str) -> int:
        with self._lock.write():
            doomed = [cid for cid, chunk in self._chunks.items() if chunk.document_id == document_id]
            for chunk_id in doomed:
                self._delete(chunk_id)
        logger.info(f"Removed {len(doomed)} chunks of document {document_id} from lexical index")
        return len(doomed)

    def clear(self) -> None:
        with self._lock.write():
            self._chunks.clear()
            self._postings.clear()
            self._term_freqs.clear()
            self._lengths.clear()
            self._total_length = 0
            self._average_length = 0.0
        logger.info("Lexical index cleared")

    def stats(self) -> IndexStats:
        with self._lock.read():
            return IndexStats(
                total_chunks=len(self._chunks),
                total_terms=len(self._postings),
                average_length=self._average_length,
            )

    def idf(self, term: str) -> float:
        with self._lock.read():
            return self._idf(term.lower())

    def search(
        self,
        query: str,
        *,
        owner_id: str | None = None,
        topic_id: str | None = None,
        document_ids: Iterable[str] | None = None,
        top_k: int | None = None,
        min_score: float = 0.0,
    ) -> list[LexicalHit]:
        """Rank chunks against `query`.

        Filters are exact matches applied before scoring. Ordering is by score
        descending; equal scores keep insertion order.
        """
        query_terms = tokenize(query)
        if not query_terms:
            return []
        allowed_documents = set(document_ids) if document_ids else None
        limit = top_k or self.config.default_top_k

        with self._lock.read():
            if not self._chunks:
                return []
            idf_cache = {term: self._idf(term) for term in set(query_terms)}
            scored: list[LexicalHit] = []
            for chunk_id, chunk in self._chunks.items():
                if owner_id is not None and chunk.owner_id != owner_id:
                    continue
                if topic_id is not None and chunk.topic_id != topic_id:
                    continue
                if allowed_documents is not None and chunk.document_id not in allowed_documents:
                    continue
                score = self._score(chunk_id, query_terms, idf_cache)
                if score > 0:
                    scored.append(LexicalHit(chunk=chunk, score=score))

        # list.sort is stable, so ties stay in insertion order.
        scored.sort(key=lambda hit: hit.score, reverse=True)
        return [hit for hit in scored if hit.score >= min_score][:limit]

    def _insert(self, chunk: IndexedChunk, terms: list[str]) -> None:
        if chunk.chunk_id in self._chunks:
            self._delete(chunk.chunk_id)

        counts = dict(Counter(terms))
        self._chunks[chunk.chunk_id] = chunk
        self._term_freqs[chunk.chunk_id] = counts
        self._lengths[chunk.chunk_id] = len(terms)
        for term in counts:
            self._postings.setdefault(term, set()).add(chunk.chunk_id)
        self._total_length += len(terms)
        self._refresh_average()

    def _delete(self, chunk_id: str) -> bool:
        if self._chunks.pop(chunk_id, None) is None:
            return False
        for term in self._term_freqs.pop(chunk_id, {}):
            posting = self._postings.get(term)
            if posting is None:
                continue
            posting.discard(chunk_id)
            if not posting:
                del self._postings[term]
        self._total_length -= self._lengths.pop(chunk_id, 0)
        self._refresh_average()
        return True

    def _refresh_average(self) -> None:
        count = len(self._chunks)
        if count == 0:
            self._average_length = 0.0
            return
        self._average_length = self._total_length / count
        if self._average_length == 0:
            self._average_length = 1.0

    def _idf(self, term: str) -> float:
        posting = self._postings.get(term)
        if not posting:
            return 0.0
        total = len(self._chunks)
        df = len(posting)
        if df >= total:
            return self.config.idf_floor
        value = math.log((total - df + 0.5) / (df + 0.5))
        return max(self.config.idf_floor, value)

    def _score(self, chunk_id: str, query_terms: list[str], idf_cache: dict[str, float]) -> float:
        length = self._lengths.get(chunk_id, 0)
        freqs = self._term_freqs.get(chunk_id)
        if length == 0 or not freqs:
            return 0.0

        k1 = self.config.k1
        b = self.config.b
        average = self._average_length if self._average_length > 0 else length
        norm = 1 - b + b * (length / average)
        score = 0.0
        for term in query_terms:
            tf = freqs.get(term, 0)
            if tf == 0:
                continue
            idf = idf_cache[term]
            if idf == 0:
                continue
            score += idf * (tf * (k1 + 1)) / (tf + k1 * norm)
        return score
