"""FastAPI entrypoint for index maintenance and context assembly."""

from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from rag_context.config import PipelineConfig
from rag_context.context.budget import TokenBudgeter
from rag_context.ingest.embedder import HashingEmbedder
from rag_context.llm.base import create_language_model
from rag_context.obs.tracing import UsageRecorder, configure_logging
from rag_context.pipeline import ContextPipeline
from rag_context.retrieval.lexical_index import LexicalIndex
from rag_context.retrieval.retriever import RetrievalUnavailableError
from rag_context.retrieval.vector_store import InMemoryVectorSearch
from rag_context.types import ChunkMetadata, IndexedChunk, SearchFilters


class ChunkPayload(BaseModel):
    chunk_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    content: str
    owner_id: str = Field(min_length=1)
    topic_id: str | None = None
    chunk_index: int | None = Field(default=None, ge=0)
    document_name: str = ""
    source: str | None = None
    tags: list[str] = Field(default_factory=list)

    def to_chunk(self) -> IndexedChunk:
        return IndexedChunk(
            chunk_id=self.chunk_id,
            document_id=self.document_id,
            content=self.content,
            owner_id=self.owner_id,
            topic_id=self.topic_id,
            chunk_index=self.chunk_index,
            metadata=ChunkMetadata(
                document_name=self.document_name,
                source=self.source,
                tags=tuple(self.tags),
            ),
        )


class IndexChunksRequest(BaseModel):
    chunks: list[ChunkPayload] = Field(min_length=1)


class ContextRequest(BaseModel):
    query: str = Field(min_length=1)
    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: list[str] | None = None
    model: str | None = None
    prefer_documents: bool = False
    prefer_web: bool = False
    enable_web_search: bool | None = None


app = FastAPI(title="RAG Context Core", version="0.1.0")

configure_logging(os.getenv("LOG_LEVEL", "INFO"))

_config = PipelineConfig()
_index = LexicalIndex(_config.lexical)
_embedder = HashingEmbedder()
_vector_search = InMemoryVectorSearch()
_usage_recorder = UsageRecorder()
_llm = create_language_model()
_budgeter = TokenBudgeter(_config.allocation)
_pipeline = ContextPipeline(
    _index,
    vector_search=_vector_search,
    embedder=_embedder,
    llm=_llm,
    usage_recorder=_usage_recorder,
    config=_config,
)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "indexed_chunks": len(_index),
        "vector_records": len(_vector_search),
    }


@app.post("/index/chunks")
def index_chunks(request: IndexChunksRequest) -> dict[str, Any]:
    chunks = [payload.to_chunk() for payload in request.chunks]
    added = _index.add_batch(chunks)
    accepted = [chunk for chunk in chunks if chunk.chunk_id in _index]
    if accepted:
        _vector_search.upsert(accepted, _embedder.embed_documents([c.content for c in accepted]))
    return {
        "indexed": added,
        "rejected": len(chunks) - added,
        "stats": asdict(_index.stats()),
    }


@app.delete("/index/chunks/{chunk_id}")
def remove_chunk(chunk_id: str) -> dict[str, Any]:
    if not _index.remove(chunk_id):
        raise HTTPException(status_code=404, detail=f"Chunk not found: {chunk_id}")
    _vector_search.delete(chunk_id)
    return {"removed": 1, "stats": asdict(_index.stats())}


@app.delete("/index/documents/{document_id}")
def remove_document(document_id: str) -> dict[str, Any]:
    removed = _index.remove_by_document(document_id)
    _vector_search.delete_document(document_id)
    return {"removed": removed, "stats": asdict(_index.stats())}


@app.post("/index/clear")
def clear_index() -> dict[str, Any]:
    _index.clear()
    _vector_search.clear()
    return {"stats": asdict(_index.stats())}


@app.get("/index/stats")
def index_stats() -> dict[str, Any]:
    return asdict(_index.stats())


@app.post("/context")
async def assemble_context(request: ContextRequest) -> dict[str, Any]:
    update: dict[str, Any] = {
        "prefer_documents": request.prefer_documents,
        "prefer_web": request.prefer_web,
    }
    if request.enable_web_search is not None:
        update["enable_web_search"] = request.enable_web_search
    filters = SearchFilters(
        owner_id=request.owner_id,
        topic_id=request.topic_id,
        document_ids=request.document_ids,
    )

    try:
        result = await _pipeline.assemble_context(
            request.query,
            filters,
            request.model,
            _config.model_copy(update=update),
        )
    except RetrievalUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {
        "context": asdict(result.context),
        "fits": result.budget_check.fits,
        "context_tokens": result.budget_check.context_tokens.total,
        "budget": _budgeter.summary(result.budget),
        "warnings": result.budget.warnings,
        "threshold": asdict(result.threshold),
        "sizing": {
            "document_chunks": result.sizing.document_chunks,
            "web_results": result.sizing.web_results,
            "reasoning": result.sizing.reasoning,
        },
        "compression": asdict(result.compression) if result.compression else None,
        "degraded_routes": result.degraded_routes,
        "latency_ms": result.latency_ms,
    }


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _usage_recorder.summary()
