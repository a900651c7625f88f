"""
Process-wide retrieval services, built lazily and shared by all requests.

Each getter constructs its service once. reset_dependencies() drops them
all (tests, or after the index was recreated out-of-band).
"""

import logging
from typing import Optional

import httpx
from openai import AsyncOpenAI

from voicerag.config import settings
from voicerag.rag.context_service import ContextService
from voicerag.rag.document_processor import DocumentProcessor
from voicerag.rag.local_embedder import LocalEmbedder
from voicerag.rag.retriever import ContextRetriever
from voicerag.rag.vector_store import PineconeVectorStore
from voicerag.realtime.upstream import RealtimeBackendClient

logger = logging.getLogger(__name__)

_local_embedder: Optional[LocalEmbedder] = None
_openai_client: Optional[AsyncOpenAI] = None
_vector_store: Optional[PineconeVectorStore] = None
_retriever: Optional[ContextRetriever] = None
_context_service: Optional[ContextService] = None
_backend_client: Optional[RealtimeBackendClient] = None


def get_local_embedder() -> Optional[LocalEmbedder]:
    """Local embedder when enabled (the model itself loads on first use)."""
    global _local_embedder
    if settings.rag_use_local_embeddings and _local_embedder is None:
        logger.info("Initializing local embedding model (sentence-transformers)...")
        _local_embedder = LocalEmbedder(
            model_name=settings.embedding_model,
            target_dimension=settings.vector_dimension,
            max_input_chars=settings.rag_max_query_chars,
        )
    return _local_embedder


def get_openai_client() -> Optional[AsyncOpenAI]:
    global _openai_client
    if _openai_client is None and settings.openai_api_key:
        _openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=httpx.Timeout(30.0, read=60.0)
        )
    return _openai_client


def get_vector_store() -> PineconeVectorStore:
    """Get or initialize vector store."""
    global _vector_store
    if _vector_store is None:
        _vector_store = PineconeVectorStore(
            api_key=settings.pinecone_api_key,
            index_name=settings.pinecone_index_name,
            dimension=settings.vector_dimension,
            cloud=settings.pinecone_cloud,
            region=settings.pinecone_region,
        )
    return _vector_store


def get_retriever() -> ContextRetriever:
    global _retriever
    if _retriever is None:
        _retriever = ContextRetriever(
            vector_store=get_vector_store(),
            local_embedder=get_local_embedder(),
            openai_client=get_openai_client(),
            use_local=settings.rag_use_local_embeddings,
            openai_embedding_model=settings.openai_embedding_model,
        )
    return _retriever


def get_context_service() -> ContextService:
    global _context_service
    if _context_service is None:
        _context_service = ContextService(
            retriever=get_retriever(),
            relevance_threshold=settings.rag_relevance_threshold,
            timeout_ms=settings.rag_timeout_ms,
        )
    return _context_service


def get_backend_client() -> RealtimeBackendClient:
    """Realtime backend proxy client (one pooled HTTP session per process)."""
    global _backend_client
    if _backend_client is None:
        _backend_client = RealtimeBackendClient()
    return _backend_client


async def close_dependencies() -> None:
    """Release network resources held by cached services."""
    if _backend_client is not None:
        await _backend_client.close()
    if _openai_client is not None:
        await _openai_client.close()


def get_document_processor() -> DocumentProcessor:
    return DocumentProcessor(
        local_embedder=get_local_embedder(),
        openai_client=get_openai_client(),
        use_local=settings.rag_use_local_embeddings,
        chunk_size=settings.rag_chunk_size,
        chunk_overlap=settings.rag_chunk_overlap,
        dimension=settings.vector_dimension,
        openai_embedding_model=settings.openai_embedding_model,
    )


def reset_dependencies() -> None:
    """Forget every cached service, including the index bootstrap result."""
    global _local_embedder, _openai_client, _vector_store, _retriever, _context_service, _backend_client
    if _vector_store is not None:
        _vector_store.invalidate()
    _local_embedder = None
    _openai_client = None
    _vector_store = None
    _retriever = None
    _context_service = None
    _backend_client = None
