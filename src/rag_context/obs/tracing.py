"""Timing, token estimation, and pipeline usage recording."""

from __future__ import annotations

import re
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class UsageRecord:
    record_id: str
    timestamp_utc: str
    query: str
    model: str
    document_chunks: int
    web_snippets: int
    context_tokens: int
    compressed: bool
    degraded_routes: list[str]
    latency_ms: float


class UsageRecorder:
    """In-memory store of pipeline runs for the metrics endpoint.

    Recording is a side effect of context assembly, so `record` never raises:
    any failure is logged and the record is dropped.
    """

    def __init__(self, max_records: int = 1000) -> None:
        self._records: dict[str, UsageRecord] = {}
        self._max_records = max_records

    def record(
        self,
        *,
        query: str,
        model: str,
        document_chunks: int,
        web_snippets: int,
        context_tokens: int,
        compressed: bool,
        degraded_routes: list[str],
        latency_ms: float,
    ) -> UsageRecord | None:
        try:
            record = UsageRecord(
                record_id=str(uuid.uuid4()),
                timestamp_utc=datetime.now(timezone.utc).isoformat(),
                query=query[:200],
                model=model,
                document_chunks=document_chunks,
                web_snippets=web_snippets,
                context_tokens=context_tokens,
                compressed=compressed,
                degraded_routes=list(degraded_routes),
                latency_ms=latency_ms,
            )
            self._records[record.record_id] = record
            while len(self._records) > self._max_records:
                self._records.pop(next(iter(self._records)))
            return record
        except Exception as exc:
            logger.warning(f"Failed to record pipeline usage: {exc}")
            return None

    def get(self, record_id: str) -> UsageRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(f"Usage record not found: {record_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[UsageRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate usage metrics across recorded runs."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_context_tokens": 0.0,
                "total_context_tokens": 0,
                "compressed_requests": 0,
                "degraded_requests": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        total_tokens = sum(record.context_tokens for record in records)

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_context_tokens": total_tokens / total,
            "total_context_tokens": total_tokens,
            "compressed_requests": sum(1 for record in records if record.compressed),
            "degraded_requests": sum(1 for record in records if record.degraded_routes),
        }


class Timer:
    """Simple context timer used by the pipeline."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


def token_spans(text: str) -> list[tuple[int, int]]:
    """Character spans of each estimated token, in order."""
    return [match.span() for match in _TOKEN_PATTERN.finditer(text)]


def configure_logging(level: str = "INFO") -> None:
    """Route library logs to stderr at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
