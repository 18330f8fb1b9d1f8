import asyncio
import threading

import pytest

from rag_context.config import CompressionConfig, PipelineConfig
from rag_context.ingest.embedder import HashingEmbedder
from rag_context.pipeline import ContextPipeline
from rag_context.retrieval.lexical_index import LexicalIndex
from rag_context.retrieval.retriever import DualRouteRetriever, RetrievalUnavailableError
from rag_context.retrieval.vector_store import InMemoryVectorSearch
from rag_context.retrieval.web_search import StaticWebSearch
from rag_context.types import ChunkMetadata, IndexedChunk, SearchFilters, WebSnippet

QUESTION = "What does policy require for customer data?"


class FailingVectorSearch:
    async def search(self, query_embedding, **kwargs):
        raise RuntimeError("vector service unreachable")


class FailingWebSearch:
    async def search(self, query, *, max_results=5):
        raise TimeoutError("web search timed out")


class BrokenIndex(LexicalIndex):
    def search(self, query, **kwargs):
        raise RuntimeError("index corrupted")


def _chunks() -> list[IndexedChunk]:
    texts = {
        "policy-doc": "Company policy states all employees must encrypt customer data at rest.",
        "faq-doc": "Holiday arrangements are documented in the employee handbook.",
        "finance-doc": "Quarterly revenue grew in the last fiscal year.",
    }
    return [
        IndexedChunk(
            chunk_id=f"{doc_id}-chunk-0000",
            document_id=doc_id,
            content=text,
            owner_id="owner-1",
            chunk_index=0,
            metadata=ChunkMetadata(document_name=f"{doc_id}.txt", source="unit"),
        )
        for doc_id, text in texts.items()
    ]


def _index() -> LexicalIndex:
    index = LexicalIndex()
    index.add_batch(_chunks())
    return index


@pytest.mark.asyncio
async def test_pipeline_assembles_relevant_context_within_budget() -> None:
    embedder = HashingEmbedder()
    vector_search = InMemoryVectorSearch()
    chunks = _chunks()
    vector_search.upsert(chunks, embedder.embed_documents([c.content for c in chunks]))
    pipeline = ContextPipeline(_index(), vector_search=vector_search, embedder=embedder)

    result = await pipeline.assemble_context(QUESTION, SearchFilters(owner_id="owner-1"), "gpt-4")

    assert result.context.document_chunks[0].document_id == "policy-doc"
    assert result.context.document_chunks[0].document_name == "policy-doc.txt"
    assert result.budget.model == "gpt-4"
    assert result.budget_check.fits
    assert result.threshold.query_type == "conceptual"
    assert result.degraded_routes == []
    assert result.compression is None
    assert pipeline.usage_recorder.summary()["total_requests"] == 1


@pytest.mark.asyncio
async def test_pipeline_applies_filters() -> None:
    pipeline = ContextPipeline(_index())

    result = await pipeline.assemble_context(QUESTION, SearchFilters(owner_id="someone-else"))

    assert result.context.document_chunks == []
    assert result.budget.model == "gpt-3.5-turbo"


@pytest.mark.asyncio
async def test_failed_vector_route_degrades_to_lexical() -> None:
    pipeline = ContextPipeline(
        _index(), vector_search=FailingVectorSearch(), embedder=HashingEmbedder()
    )

    result = await pipeline.assemble_context(QUESTION)

    assert result.degraded_routes == ["semantic"]
    assert result.context.document_chunks[0].document_id == "policy-doc"
    assert pipeline.usage_recorder.summary()["degraded_requests"] == 1


@pytest.mark.asyncio
async def test_all_routes_failing_raises() -> None:
    pipeline = ContextPipeline(
        BrokenIndex(), vector_search=FailingVectorSearch(), embedder=HashingEmbedder()
    )

    with pytest.raises(RetrievalUnavailableError):
        await pipeline.assemble_context(QUESTION)


@pytest.mark.asyncio
async def test_web_results_are_included_and_failures_tolerated() -> None:
    snippet = WebSnippet(
        title="Encryption at rest",
        url="https://example.com/encryption",
        content="Encryption at rest protects stored customer data.",
        score=0.8,
    )
    pipeline = ContextPipeline(_index(), web_search=StaticWebSearch([snippet]))

    result = await pipeline.assemble_context(QUESTION)
    assert result.context.web_snippets == [snippet]

    disabled = await pipeline.assemble_context(
        QUESTION, config=PipelineConfig(enable_web_search=False)
    )
    assert disabled.context.web_snippets == []

    failing = ContextPipeline(_index(), web_search=FailingWebSearch())
    degraded = await failing.assemble_context(QUESTION)
    assert degraded.degraded_routes == ["web"]
    assert degraded.context.document_chunks


@pytest.mark.asyncio
async def test_oversized_context_is_compressed_before_trimming() -> None:
    config = PipelineConfig(
        compression=CompressionConfig(compression_threshold=10, max_context_tokens=8)
    )
    pipeline = ContextPipeline(_index(), config=config)

    result = await pipeline.assemble_context(QUESTION)

    assert result.compression is not None
    assert result.compression.items_compressed == 1
    assert result.context.document_chunks[0].content == "Company policy states all employees..."
    assert pipeline.usage_recorder.summary()["compressed_requests"] == 1


@pytest.mark.asyncio
async def test_blank_query_returns_empty_context() -> None:
    result = await ContextPipeline(_index()).assemble_context("   ")

    assert result.context.item_count == 0
    assert result.budget_check.fits


def test_vector_search_requires_embedder() -> None:
    with pytest.raises(ValueError):
        DualRouteRetriever(_index(), InMemoryVectorSearch())


@pytest.mark.asyncio
async def test_lexical_only_pipeline_keeps_every_matching_chunk() -> None:
    topics = [
        "backups rotate nightly across regions",
        "auditors review access logs quarterly",
        "laptops enforce full disk locking",
        "vendors sign processing agreements first",
        "tokens expire after fifteen minutes",
        "keys live inside hardware modules",
        "exports require manager approval beforehand",
        "incidents trigger notification within hours",
    ]
    index = LexicalIndex()
    index.add_batch(
        IndexedChunk(
            chunk_id=f"sec-{i}",
            document_id=f"security-{i}",
            content=f"Encryption protects customer data: {topic}.",
            owner_id="owner-1",
            chunk_index=0,
        )
        for i, topic in enumerate(topics)
    )

    result = await ContextPipeline(index).assemble_context("encryption customer data")

    expected = min(len(topics), result.sizing.document_chunks)
    assert len(result.context.document_chunks) == expected
    assert len({c.document_id for c in result.context.document_chunks}) == expected
    assert result.degraded_routes == []


class HandshakeIndex(LexicalIndex):
    """Only completes a search once the vector route has started."""

    def __init__(self, vector_started: threading.Event, lexical_done: threading.Event) -> None:
        super().__init__()
        self.vector_started = vector_started
        self.lexical_done = lexical_done
        self.saw_vector_route = False

    def search(self, query, **kwargs):
        self.saw_vector_route = self.vector_started.wait(timeout=5)
        self.lexical_done.set()
        return super().search(query, **kwargs)


class HandshakeVectorSearch:
    def __init__(self, vector_started: threading.Event, lexical_done: threading.Event) -> None:
        self.vector_started = vector_started
        self.lexical_done = lexical_done
        self.saw_lexical_route = False

    async def search(self, query_embedding, **kwargs):
        self.vector_started.set()
        self.saw_lexical_route = await asyncio.to_thread(self.lexical_done.wait, 5)
        return []


@pytest.mark.asyncio
async def test_lexical_and_vector_routes_run_concurrently() -> None:
    vector_started = threading.Event()
    lexical_done = threading.Event()
    index = HandshakeIndex(vector_started, lexical_done)
    index.add_batch(_chunks())
    vector_search = HandshakeVectorSearch(vector_started, lexical_done)
    retriever = DualRouteRetriever(index, vector_search, HashingEmbedder())

    routes = await retriever.retrieve(QUESTION, top_k=5)

    assert index.saw_vector_route
    assert vector_search.saw_lexical_route
    assert routes.keyword[0].document_id == "policy-doc"
    assert routes.semantic == []
    assert routes.degraded == []
