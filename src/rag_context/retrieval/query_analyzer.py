"""Query type and complexity classification from text features."""

from __future__ import annotations

import re

from rag_context.config import QueryType
from rag_context.types import IntentComplexity, QueryComplexity

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does",
        "did", "will", "would", "should", "could", "may", "might", "can", "this", "that",
        "these", "those", "what", "which", "who", "whom", "whose", "where", "when", "why", "how",
    }
)

_CONCEPTUAL_PREFIX = re.compile(r"^(what does|what do|what means)", re.IGNORECASE)

# Checked in order; the first family with a matching pattern wins.
_TYPE_PATTERNS: tuple[tuple[QueryType, tuple[re.Pattern[str], ...]], ...] = (
    (
        "conceptual",
        (
            re.compile(r"\b(explain|understand|meaning|concept|theory|idea|definition)\b", re.IGNORECASE),
            _CONCEPTUAL_PREFIX,
        ),
    ),
    (
        "factual",
        (
            re.compile(r"^(what|who|when|where|which)\s+(is|are|was|were|did|does|do)", re.IGNORECASE),
            re.compile(r"^(how many|how much)", re.IGNORECASE),
            re.compile(r"^(who|what|when|where|which)\s+\w+", re.IGNORECASE),
        ),
    ),
    (
        "procedural",
        (
            re.compile(r"^(how to|how do|how can|how should)", re.IGNORECASE),
            re.compile(r"\b(steps|process|method|procedure|guide|tutorial|way to)\b", re.IGNORECASE),
        ),
    ),
    (
        "exploratory",
        (
            re.compile(
                r"^(tell me about|learn about|information about|know about|find out about)",
                re.IGNORECASE,
            ),
            re.compile(r"\b(overview|introduction|background|general)\b", re.IGNORECASE),
        ),
    ),
)

_INTENT_SCORES: dict[IntentComplexity, float] = {"simple": 0.3, "moderate": 0.6, "complex": 0.9}


def extract_keywords(query: str) -> list[str]:
    words = (re.sub(r"[^\w]", "", word) for word in query.lower().split())
    return [word for word in words if len(word) > 2 and word not in STOP_WORDS]


def detect_query_type(query: str) -> QueryType:
    text = query.strip()
    for query_type, patterns in _TYPE_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return query_type
    return "unknown"


class QueryAnalyzer:
    """Stateless classifier of query type and complexity."""

    def analyze(self, query: str) -> QueryComplexity:
        length = len(query)
        word_count = len(query.split())
        keywords = extract_keywords(query)
        query_type = detect_query_type(query)
        intent = self._intent(length, len(keywords), query_type)

        length_score = min(1.0, length / 200)
        keyword_score = min(1.0, len(keywords) / 10)
        if query_type == "exploratory":
            type_score = 0.9
        elif query_type == "conceptual":
            type_score = 0.7
        else:
            type_score = 0.5

        complexity_score = (
            length_score * 0.2
            + keyword_score * 0.3
            + _INTENT_SCORES[intent] * 0.3
            + type_score * 0.2
        )
        return QueryComplexity(
            length=length,
            word_count=word_count,
            keywords=keywords,
            intent_complexity=intent,
            query_type=query_type,
            complexity_score=complexity_score,
        )

    def detect_type(self, query: str) -> QueryType:
        return detect_query_type(query)

    def is_complex(self, query: str) -> bool:
        return self.analyze(query).complexity_score > 0.6

    @staticmethod
    def _intent(length: int, keyword_count: int, query_type: QueryType) -> IntentComplexity:
        if length < 50 and keyword_count <= 2 and query_type == "factual":
            return "simple"
        if (length > 150 or keyword_count > 5) and query_type in ("exploratory", "conceptual"):
            return "complex"
        return "moderate"
