"""
Pinecone vector store interface for context retrieval.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pinecone import Pinecone, ServerlessSpec

from voicerag.errors import RetrievalError

logger = logging.getLogger(__name__)

CATEGORY_FIELD = "category"


@dataclass(frozen=True)
class ContextChunk:
    """One retrieved passage with its cosine similarity to the query."""
    id: str
    content: str
    similarity: float
    document_id: Optional[str] = None
    chunk_index: Optional[int] = None
    chunk_id: Optional[str] = None
    category: Optional[str] = None
    file_name: Optional[str] = None

    @classmethod
    def from_match(cls, match: Any) -> "ContextChunk":
        metadata = match.metadata or {}
        chunk_index = metadata.get("chunk_index")
        return cls(
            id=str(match.id),
            content=metadata.get("text", ""),
            similarity=float(match.score or 0.0),
            document_id=metadata.get("document_id"),
            chunk_index=int(chunk_index) if chunk_index is not None else None,
            chunk_id=metadata.get("chunk_id"),
            category=metadata.get("category"),
            file_name=metadata.get("file_name"),
        )


def is_missing_filter_index(error: Exception, field: str = CATEGORY_FIELD) -> bool:
    """True when a filtered query failed because the field is not indexed."""
    message = str(error).lower()
    return "index required" in message or ("index" in message and field in message)


def is_already_exists(error: Exception) -> bool:
    return getattr(error, "status", None) == 409 or "already exists" in str(error).lower()


class PineconeVectorStore:
    """
    Interface for Pinecone vector database operations.

    The index is checked (and created if absent) once per store instance,
    on first use. The result is cached until invalidate() is called, so an
    index deleted out-of-band is only noticed after invalidation.
    """

    BATCH_SIZE = 100

    def __init__(
        self,
        api_key: Optional[str],
        index_name: str,
        dimension: int = 1536,
        cloud: str = "aws",
        region: str = "us-east-1",
        client: Optional[Any] = None,
    ):
        """
        Initialize Pinecone vector store.

        Args:
            api_key: Pinecone API key
            index_name: Name of the index to use
            dimension: Vector width (1536, shared with text-embedding-3-small)
            cloud: Serverless cloud for index creation
            region: Serverless region for index creation
            client: Preconstructed Pinecone client (tests)
        """
        if client is None and not api_key:
            raise RetrievalError("PINECONE_API_KEY is not configured")

        self.index_name = index_name
        self.dimension = dimension
        self.cloud = cloud
        self.region = region
        self.pc = client or Pinecone(api_key=api_key)
        self._index = None
        self._bootstrap_lock = asyncio.Lock()

        logger.info(f"Pinecone store configured: index={index_name}, dimension={dimension}")

    @property
    def is_bootstrapped(self) -> bool:
        return self._index is not None

    def invalidate(self) -> None:
        """Drop the cached index handle; the next call re-checks existence."""
        self._index = None

    async def ensure_index(self):
        """Return the index handle, creating the index on first use."""
        if self._index is not None:
            return self._index
        async with self._bootstrap_lock:
            if self._index is None:
                await asyncio.to_thread(self._ensure_index_exists)
                self._index = self.pc.Index(self.index_name)
        return self._index

    def _ensure_index_exists(self) -> None:
        """Create index if it doesn't exist, otherwise validate its width."""
        existing_indexes = [idx.name for idx in self.pc.list_indexes()]

        if self.index_name not in existing_indexes:
            logger.info(f"Creating new Pinecone index: {self.index_name}")
            try:
                self.pc.create_index(
                    name=self.index_name,
                    dimension=self.dimension,
                    metric="cosine",
                    spec=ServerlessSpec(cloud=self.cloud, region=self.region)
                )
                logger.info(f"Index {self.index_name} created successfully")
            except Exception as e:
                if not is_already_exists(e):
                    raise
                logger.info(f"Index {self.index_name} was created concurrently, reusing it")
            return

        description = self.pc.describe_index(self.index_name)
        existing_dimension = getattr(description, "dimension", None)
        if existing_dimension is not None and existing_dimension != self.dimension:
            raise RetrievalError(
                f"Index {self.index_name} has dimension {existing_dimension}, "
                f"expected {self.dimension}. Recreate the index."
            )
        logger.info(f"Using existing index: {self.index_name}")

    async def query(
        self,
        vector: List[float],
        top_k: int = 3,
        category: Optional[str] = None,
    ) -> List[ContextChunk]:
        """
        Nearest neighbours by cosine similarity, best first.

        A category-filtered query that fails because the field is not
        indexed is retried once without the filter.

        Args:
            vector: Query vector (store width)
            top_k: Number of matches to return
            category: Optional category filter

        Returns:
            Chunks ordered by descending similarity
        """
        if len(vector) != self.dimension:
            raise RetrievalError(
                f"Query vector has {len(vector)} dims, index expects {self.dimension}"
            )

        index = await self.ensure_index()
        metadata_filter = {CATEGORY_FIELD: {"$eq": category}} if category else None

        try:
            results = await asyncio.to_thread(self._query_sync, index, vector, top_k, metadata_filter)
        except Exception as e:
            if metadata_filter is None or not is_missing_filter_index(e):
                raise
            logger.warning(f"Category filter unavailable ({e}), retrying unfiltered")
            results = await asyncio.to_thread(self._query_sync, index, vector, top_k, None)

        chunks = [ContextChunk.from_match(m) for m in results.matches]
        chunks.sort(key=lambda c: c.similarity, reverse=True)

        if chunks:
            top_scores = [f"{c.similarity:.3f}" for c in chunks[:5]]
            logger.info(f"📊 Top similarity scores: {', '.join(top_scores)}")

        return chunks

    @staticmethod
    def _query_sync(index, vector: List[float], top_k: int, metadata_filter: Optional[Dict]):
        kwargs = {"vector": vector, "top_k": top_k, "include_metadata": True}
        if metadata_filter is not None:
            kwargs["filter"] = metadata_filter
        return index.query(**kwargs)

    async def upsert_chunks(
        self,
        chunks: List[Dict],
        document_id: str,
        category: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> int:
        """
        Upload document chunks.

        Args:
            chunks: Chunks with 'embedding' and 'text'
            document_id: Document identifier shared by all chunks
            category: Optional category used for filtered retrieval
            file_name: Optional source file name

        Returns:
            Number of vectors upserted
        """
        if not chunks:
            return 0

        index = await self.ensure_index()
        vectors = []

        for chunk_index, chunk in enumerate(chunks):
            metadata = {
                "document_id": document_id,
                "chunk_index": chunk_index,
                "chunk_id": f"{document_id}:{chunk_index}",
                "text": chunk["text"],
            }
            # Pinecone rejects null metadata values
            if category:
                metadata["category"] = category
            if file_name:
                metadata["file_name"] = file_name

            vectors.append({
                "id": str(uuid.uuid4()),
                "values": chunk["embedding"],
                "metadata": metadata,
            })

        for i in range(0, len(vectors), self.BATCH_SIZE):
            batch = vectors[i:i + self.BATCH_SIZE]
            await asyncio.to_thread(index.upsert, vectors=batch)
            logger.debug(f"Upserted batch {i // self.BATCH_SIZE + 1}")

        logger.info(f"Upserted {len(vectors)} vectors for document {document_id}")
        return len(vectors)

    async def delete_by_document(self, document_id: str) -> None:
        index = await self.ensure_index()
        await asyncio.to_thread(index.delete, filter={"document_id": {"$eq": document_id}})
        logger.info(f"Deleted all vectors for document {document_id}")

    async def get_stats(self) -> Dict:
        """Get index statistics."""
        index = await self.ensure_index()
        stats = await asyncio.to_thread(index.describe_index_stats)
        return {
            "total_vectors": stats.total_vector_count,
            "dimension": stats.dimension,
        }
