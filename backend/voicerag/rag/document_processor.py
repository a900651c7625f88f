"""
Document processor for chunking and embedding knowledge-base text.
"""

import logging
from typing import Dict, List, Optional

import tiktoken
from openai import AsyncOpenAI

from .local_embedder import LocalEmbedder, pad_embedding

logger = logging.getLogger(__name__)


class DocumentProcessor:
    """Process documents by chunking and generating embeddings."""

    def __init__(
        self,
        local_embedder: Optional[LocalEmbedder] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        use_local: bool = True,
        chunk_size: int = 400,
        chunk_overlap: int = 50,
        dimension: int = 1536,
        openai_embedding_model: str = "text-embedding-3-small",
        tokenizer=None,
    ):
        """
        Initialize document processor.

        Args:
            local_embedder: Local sentence-transformers embedder (faster)
            openai_client: OpenAI async client for embeddings (fallback)
            use_local: Use local embeddings if available
            chunk_size: Target token size for chunks
            chunk_overlap: Token overlap between consecutive chunks
            dimension: Vector store width
            openai_embedding_model: Model used by the OpenAI fallback
            tokenizer: Object with encode/decode (cl100k_base by default)
        """
        if chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")

        self.local_embedder = local_embedder
        self.openai_client = openai_client
        self.use_local = use_local and local_embedder is not None
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.dimension = dimension
        self.openai_embedding_model = openai_embedding_model
        self.tokenizer = tokenizer or tiktoken.get_encoding("cl100k_base")

    def chunk_text(self, text: str) -> List[Dict]:
        """
        Split text into overlapping chunks based on token count.

        Returns:
            List of {'text', 'token_count'} dicts in document order
        """
        if not text or not text.strip():
            logger.warning("Attempted to chunk empty text")
            return []

        tokens = self.tokenizer.encode(text)
        chunks = []
        step = self.chunk_size - self.chunk_overlap

        for start_idx in range(0, len(tokens), step):
            chunk_tokens = tokens[start_idx:start_idx + self.chunk_size]
            chunk_text = self.tokenizer.decode(chunk_tokens).strip()
            if chunk_text:
                chunks.append({"text": chunk_text, "token_count": len(chunk_tokens)})
            if start_idx + self.chunk_size >= len(tokens):
                break

        logger.info(f"Created {len(chunks)} chunks from {len(tokens)} tokens")
        return chunks

    async def embed_chunks(self, chunks: List[Dict]) -> List[Dict]:
        """
        Attach an 'embedding' to every chunk.

        Raises:
            RuntimeError: If no embedding backend is available
        """
        if not chunks:
            return []

        texts = [chunk["text"] for chunk in chunks]
        logger.info(f"Generating embeddings for {len(texts)} chunks")

        if self.use_local:
            embeddings = await self.local_embedder.get_embeddings_batch(texts)
        elif self.openai_client:
            response = await self.openai_client.embeddings.create(
                model=self.openai_embedding_model,
                input=texts,
                dimensions=self.dimension
            )
            embeddings = [pad_embedding(data.embedding, self.dimension) for data in response.data]
        else:
            raise RuntimeError("No embedding method available (local or OpenAI)")

        for chunk, embedding in zip(chunks, embeddings):
            chunk["embedding"] = embedding
        return chunks

    async def process_document(self, text: str) -> List[Dict]:
        """
        Complete processing pipeline: chunk + embed.

        Raises:
            ValueError: If the document yields no chunks
        """
        chunks = self.chunk_text(text)
        if not chunks:
            raise ValueError("No chunks generated from document")
        return await self.embed_chunks(chunks)
