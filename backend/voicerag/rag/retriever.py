"""
Context retriever: query embedding + vector search.

retrieve() returns raw scored chunks. Relevance gating is left to callers
so the same primitive serves both prewarm and final-answer lookups.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from voicerag.errors import RetrievalError
from .local_embedder import LocalEmbedder, pad_embedding
from .vector_store import ContextChunk, PineconeVectorStore

logger = logging.getLogger(__name__)


class ContextRetriever:
    """Handle query embedding and chunk retrieval."""

    EMBEDDING_CACHE_SIZE = 100

    def __init__(
        self,
        vector_store: PineconeVectorStore,
        local_embedder: Optional[LocalEmbedder] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        use_local: bool = True,
        openai_embedding_model: str = "text-embedding-3-small",
    ):
        """
        Initialize retriever.

        Args:
            vector_store: Pinecone vector store instance
            local_embedder: Local sentence-transformers embedder (faster)
            openai_client: OpenAI async client for embeddings (fallback)
            use_local: Use local embeddings if available
            openai_embedding_model: Model used by the OpenAI fallback
        """
        self.vector_store = vector_store
        self.local_embedder = local_embedder
        self.openai_client = openai_client
        self.use_local = use_local and local_embedder is not None
        self.openai_embedding_model = openai_embedding_model

        # Simple in-memory FIFO cache for query embeddings
        self._embedding_cache: Dict[str, List[float]] = {}

        embedding_source = "local (sentence-transformers)" if self.use_local else "OpenAI API"
        logger.info(f"Initialized ContextRetriever: embedding={embedding_source}")

    async def retrieve(
        self,
        query: str,
        match_count: int = 3,
        category: Optional[str] = None,
    ) -> List[ContextChunk]:
        """
        Retrieve the nearest chunks for a query.

        Args:
            query: Utterance text
            match_count: Number of chunks to return
            category: Optional category filter

        Returns:
            Chunks ordered by descending similarity ([] for an empty query)

        Raises:
            RetrievalError: If embedding or vector search fails
        """
        if not query or not query.strip():
            return []

        start_time = datetime.now()
        logger.info(f"🔍 Retrieve starting: query='{query[:50]}', k={match_count}, category={category}")

        query_embedding = await self._get_query_embedding(query.strip())
        if not query_embedding:
            raise RetrievalError("Failed to generate query embedding")
        embedding_time = (datetime.now() - start_time).total_seconds() * 1000

        try:
            chunks = await self.vector_store.query(
                vector=query_embedding,
                top_k=match_count,
                category=category,
            )
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"Vector search failed: {e}") from e

        total_time = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(
            f"📊 Retrieve complete - Embedding: {embedding_time:.0f}ms, "
            f"Total: {total_time:.0f}ms, Results: {len(chunks)}"
        )
        return chunks

    async def _get_query_embedding(self, query: str) -> Optional[List[float]]:
        """
        Generate embedding for query with caching.

        Returns:
            Embedding vector or None on failure
        """
        cache_key = query.lower()

        if cache_key in self._embedding_cache:
            logger.debug("Cache hit for query embedding")
            return self._embedding_cache[cache_key]

        try:
            if self.use_local:
                embedding = await self.local_embedder.get_embedding(query)
            elif self.openai_client:
                response = await self.openai_client.embeddings.create(
                    model=self.openai_embedding_model,
                    input=query,
                    dimensions=self.vector_store.dimension
                )
                embedding = pad_embedding(response.data[0].embedding, self.vector_store.dimension)
            else:
                logger.error("No embedding method available (local or OpenAI)")
                return None

            if not embedding:
                return None

            if len(self._embedding_cache) >= self.EMBEDDING_CACHE_SIZE:
                oldest_key = next(iter(self._embedding_cache))
                del self._embedding_cache[oldest_key]

            self._embedding_cache[cache_key] = embedding
            return embedding

        except Exception as e:
            logger.error(f"Failed to generate query embedding: {e}")
            return None

    def clear_cache(self):
        """Clear the embedding cache."""
        self._embedding_cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._embedding_cache)
