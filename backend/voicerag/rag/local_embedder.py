"""
Local embedding generation using sentence-transformers.

Vectors are produced at the model's native width (384) and zero-padded to
the vector store width (1536). Padding rescales only the populated entries
back to unit length, so it never changes the vector's direction.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


def pad_embedding(vector: Sequence[float], target_dimension: int) -> List[float]:
    """
    Fit a vector to the store width.

    Smaller vectors are copied into a zero vector of target_dimension and the
    copied entries are L2-normalized. Larger vectors are truncated. A vector
    of the right width is returned unchanged.
    """
    values = np.asarray(vector, dtype=np.float64)
    native = values.shape[0]

    if native == target_dimension:
        return values.tolist()

    if native > target_dimension:
        logger.warning(f"Embedding has {native} dims, truncating to {target_dimension}")
        return values[:target_dimension].tolist()

    padded = np.zeros(target_dimension, dtype=np.float64)
    norm = np.linalg.norm(values)
    padded[:native] = values / norm if norm > 0 else values
    return padded.tolist()


class LocalEmbedder:
    """
    Local embedding model using sentence-transformers.

    Uses all-MiniLM-L6-v2: 384 dimensions, 80MB model size, ~50-200ms on CPU.
    The model is loaded once, on first use, and then shared read-only by
    concurrent requests. reset() drops it (tests only).
    """

    MODEL_NAME = "all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION = 384
    MAX_INPUT_CHARS = 8000

    def __init__(
        self,
        model_name: Optional[str] = None,
        target_dimension: Optional[int] = None,
        max_input_chars: Optional[int] = None,
        model=None,
    ):
        """
        Args:
            model_name: sentence-transformers model to load
            target_dimension: Output width (pads when larger than native)
            max_input_chars: Longer inputs are truncated before encoding
            model: Preloaded model object exposing encode(); skips loading
        """
        self.model_name = model_name or self.MODEL_NAME
        self.target_dimension = target_dimension or self.EMBEDDING_DIMENSION
        self.max_input_chars = max_input_chars or self.MAX_INPUT_CHARS
        self.model = model
        self._load_lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    async def load(self) -> None:
        """Load the model once; concurrent callers wait for the same load."""
        if self.model is not None:
            return
        async with self._load_lock:
            if self.model is not None:
                return
            logger.info(f"Loading local embedding model: {self.model_name}")
            self.model = await asyncio.to_thread(self._load_sync)

    def _load_sync(self):
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer(self.model_name)
        actual_dim = model.get_sentence_embedding_dimension()
        if actual_dim != self.EMBEDDING_DIMENSION:
            raise ValueError(
                f"Model dimension mismatch: expected {self.EMBEDDING_DIMENSION}, "
                f"got {actual_dim}"
            )
        logger.info(
            f"✅ Local embedding model loaded: {self.model_name} "
            f"({actual_dim} → {self.target_dimension} dimensions)"
        )
        return model

    def reset(self) -> None:
        """Forget the loaded model so the next call loads it again."""
        self.model = None

    async def get_embedding(self, text: str) -> Optional[List[float]]:
        """
        Generate embedding for text using local model.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector (target_dimension wide) or None on failure
        """
        if not text or not text.strip():
            logger.warning("Empty text provided for embedding")
            return None

        if len(text) > self.max_input_chars:
            text = text[:self.max_input_chars]

        try:
            await self.load()
            # sentence-transformers is CPU-bound and synchronous
            embedding = await asyncio.to_thread(self._encode_sync, text)
            return pad_embedding(embedding, self.target_dimension)

        except Exception as e:
            logger.error(f"Failed to generate local embedding: {e}", exc_info=True)
            return None

    def _encode_sync(self, text):
        # normalize_embeddings=True keeps native vectors unit length for cosine search
        return self.model.encode(
            text,
            normalize_embeddings=True,
            show_progress_bar=False
        )

    async def get_embeddings_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in batch (more efficient).

        Raises:
            Exception: Propagates model failures so ingestion can abort
        """
        if not texts:
            return []

        await self.load()
        clipped = [t[:self.max_input_chars] for t in texts]
        embeddings = await asyncio.to_thread(self._encode_batch_sync, clipped)
        return [pad_embedding(emb, self.target_dimension) for emb in embeddings]

    def _encode_batch_sync(self, texts: List[str]):
        return self.model.encode(
            texts,
            normalize_embeddings=True,
            show_progress_bar=False,
            batch_size=32
        )
