"""Soft-threshold compression of assembled context."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import replace
from typing import TypeVar

from loguru import logger

from rag_context.config import CompressionConfig, CompressionStrategy, TruncationMode
from rag_context.context.budget import TokenBudgeter
from rag_context.context.tokens import (
    ELLIPSIS,
    count_tokens,
    keep_last_tokens,
    truncate_to_tokens,
)
from rag_context.llm.base import LanguageModel
from rag_context.types import AssembledContext, CompressionStats, DocumentContext, WebSnippet

_SENTENCE = re.compile(r"[^.!?]+[.!?]+")
_ELLIPSIS_TOKENS = count_tokens(ELLIPSIS)

_Item = TypeVar("_Item", DocumentContext, WebSnippet)


def truncate(text: str, max_tokens: int, mode: TruncationMode = "smart") -> str:
    """Cut `text` to at most `max_tokens` tokens, marking the cut with an ellipsis.

    start: keep the end. end: keep the beginning. middle: keep both ends.
    smart: keep whole leading sentences, falling back to a word cut when the
    first sentence alone is too long.
    """
    if count_tokens(text) <= max_tokens:
        return text
    if max_tokens <= _ELLIPSIS_TOKENS:
        return truncate_to_tokens(text, max_tokens)

    keep = max_tokens - _ELLIPSIS_TOKENS
    if mode == "start":
        return ELLIPSIS + keep_last_tokens(text, keep)
    if mode == "end":
        return truncate_to_tokens(text, keep) + ELLIPSIS
    if mode == "middle":
        tail = keep // 2
        head = truncate_to_tokens(text, keep - tail)
        return head + ELLIPSIS + (keep_last_tokens(text, tail) if tail else "")

    result = ""
    used = 0
    for sentence in _SENTENCE.findall(text):
        sentence_tokens = count_tokens(sentence)
        if used + sentence_tokens > keep:
            break
        result += sentence
        used += sentence_tokens
    if not result:
        result = truncate_to_tokens(text, keep)
    if len(result) < len(text):
        result += ELLIPSIS
    return result


def summarization_prompt(content: str, query: str | None) -> str:
    focus = f' in relation to the query "{query}"' if query else ""
    return (
        f"Summarize the following content{focus}. Preserve all key facts, numbers, dates, "
        "and important details. Keep the summary concise but comprehensive.\n\n"
        f"Content:\n{content}"
    )


def extraction_prompt(content: str, query: str | None, max_key_points: int) -> str:
    focus = f' in relation to the query "{query}"' if query else ""
    return (
        f"Extract the {max_key_points} most important key points from the following "
        f"content{focus}. Format as a bulleted list. Preserve facts, numbers, and dates.\n\n"
        f"Content:\n{content}"
    )


class ContextCompressor:
    """Reduces oversized context items once the total passes a soft threshold.

    Each item gets an equal share of the target token count. Language model
    calls run concurrently under a semaphore and share one wall-clock deadline;
    items that have not started when the deadline passes are returned as-is.
    """

    def __init__(
        self,
        config: CompressionConfig | None = None,
        llm: LanguageModel | None = None,
        budgeter: TokenBudgeter | None = None,
    ) -> None:
        self.config = config or CompressionConfig()
        self.llm = llm
        self.budgeter = budgeter or TokenBudgeter()

    def needs_compression(self, context: AssembledContext) -> bool:
        if not self.config.enabled:
            return False
        tokens = self.budgeter.count_context_tokens(context).total
        return tokens > self.config.compression_threshold

    async def compress(
        self,
        context: AssembledContext,
        query: str | None = None,
        *,
        strategy: CompressionStrategy | None = None,
        force: bool = False,
    ) -> tuple[AssembledContext, CompressionStats | None]:
        """Compress `context` when it exceeds the soft threshold.

        Returns the (possibly unchanged) context and stats, or `None` stats
        when compression did not run.
        """
        config = self.config
        if not config.enabled or context.item_count == 0:
            return context, None

        original_tokens = self.budgeter.count_context_tokens(context).total
        if not force and original_tokens <= config.compression_threshold:
            return context, None

        strategy = strategy or config.strategy
        per_item = config.max_context_tokens // context.item_count
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        deadline = loop.time() + config.max_compression_time_ms / 1000
        semaphore = asyncio.Semaphore(config.max_concurrency)

        logger.info(
            f"Compressing context: {original_tokens} tokens over {context.item_count} items, "
            f"strategy={strategy}, per-item target={per_item}"
        )

        async def run(item: _Item) -> tuple[_Item, str]:
            async with semaphore:
                if loop.time() >= deadline:
                    return item, "deadline"
                content, changed = await self._compress_text(
                    item.content, per_item, query, strategy, deadline
                )
                if not changed:
                    return item, "unchanged"
                return replace(item, content=content), "compressed"

        results = await asyncio.gather(
            *(run(d) for d in context.document_chunks),
            *(run(s) for s in context.web_snippets),
        )
        split = len(context.document_chunks)
        document_results, web_results = results[:split], results[split:]

        compressed = AssembledContext(
            document_chunks=[item for item, _ in document_results],
            web_snippets=[item for item, _ in web_results],
        )
        outcomes = [outcome for _, outcome in results]
        items_compressed = outcomes.count("compressed")
        passed_through = outcomes.count("deadline")
        if passed_through:
            logger.warning(
                f"Compression deadline of {config.max_compression_time_ms:.0f}ms reached, "
                f"{passed_through} items passed through uncompressed"
            )

        compressed_tokens = self.budgeter.count_context_tokens(compressed).total
        stats = CompressionStats(
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=compressed_tokens / original_tokens if original_tokens else 1.0,
            strategy=strategy,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            items_compressed=items_compressed,
            items_passed_through=passed_through,
        )
        logger.info(
            f"Compressed context {original_tokens} -> {compressed_tokens} tokens "
            f"({stats.compression_ratio:.2f}) in {stats.processing_time_ms:.0f}ms"
        )
        return compressed, stats

    def quick_compress(self, context: AssembledContext, max_tokens: int) -> AssembledContext:
        """Synchronous truncation-only compression to roughly `max_tokens`."""
        if context.item_count == 0:
            return context
        if self.budgeter.count_context_tokens(context).total <= max_tokens:
            return context

        per_item = max_tokens // context.item_count
        mode = self.config.truncation_mode
        return AssembledContext(
            document_chunks=[
                replace(d, content=truncate(d.content, per_item, mode))
                for d in context.document_chunks
            ],
            web_snippets=[
                replace(s, content=truncate(s.content, per_item, mode))
                for s in context.web_snippets
            ],
        )

    async def _compress_text(
        self,
        text: str,
        target: int,
        query: str | None,
        strategy: CompressionStrategy,
        deadline: float,
    ) -> tuple[str, bool]:
        current = count_tokens(text)
        if current <= target:
            return text, False

        mode = self.config.truncation_mode
        if strategy == "truncation":
            return truncate(text, target, mode), True

        if strategy == "extraction":
            prompt = extraction_prompt(text, query, self.config.max_key_points)
        else:
            prompt = summarization_prompt(text, query)

        try:
            generated = await self._complete(prompt, deadline)
        except Exception as exc:
            logger.warning(f"Compression model call failed, truncating instead: {exc!r}")
            return truncate(text, target, mode), True

        limit = current
        if strategy == "hybrid":
            limit = current * (1 - self.config.min_reduction)
        if not generated or count_tokens(generated) >= limit:
            return truncate(text, target, mode), True
        return generated, True

    async def _complete(self, prompt: str, deadline: float) -> str:
        if self.llm is None:
            raise RuntimeError("no language model configured")
        timeout = deadline - asyncio.get_running_loop().time()
        if timeout <= 0:
            raise TimeoutError("compression deadline passed")
        return await asyncio.wait_for(
            self.llm.complete(
                prompt,
                max_tokens=self.config.summarization_max_tokens,
                temperature=self.config.summarization_temperature,
            ),
            timeout=timeout,
        )
