"""RAG context assembly core."""

from .config import PipelineConfig
from .pipeline import AssemblyResult, ContextPipeline
from .retrieval.lexical_index import LexicalIndex

__all__ = ["AssemblyResult", "ContextPipeline", "LexicalIndex", "PipelineConfig"]
