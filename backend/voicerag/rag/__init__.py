"""
Knowledge retrieval for voice sessions: embedding, vector search, relevance gate.
"""

from .vector_store import ContextChunk, PineconeVectorStore
from .local_embedder import LocalEmbedder, pad_embedding
from .retriever import ContextRetriever
from .context_service import (
    ContextService,
    build_context_block,
    passes_relevance_gate,
    select_relevant,
)
from .document_processor import DocumentProcessor
from .file_parsers import FileParser, ParsedDocument

__all__ = [
    "ContextChunk",
    "PineconeVectorStore",
    "LocalEmbedder",
    "pad_embedding",
    "ContextRetriever",
    "ContextService",
    "build_context_block",
    "passes_relevance_gate",
    "select_relevant",
    "DocumentProcessor",
    "FileParser",
    "ParsedDocument",
]
