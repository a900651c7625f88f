"""
Relevance-gated context lookup served to voice clients.

Strict mode: if the best chunk scores below the threshold, no context is
returned at all and the assistant falls back to its own redirection rules.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from voicerag.errors import RetrievalError
from voicerag.models import ContextRequest, ContextResponse
from voicerag.prompts import (
    build_context_instructions,
    build_no_context_instructions,
    get_system_prompt,
)
from .retriever import ContextRetriever
from .vector_store import ContextChunk

logger = logging.getLogger(__name__)


def passes_relevance_gate(chunks: Sequence[ContextChunk], threshold: float) -> bool:
    """True iff the top similarity is at least threshold."""
    if not chunks:
        return False
    return max(c.similarity for c in chunks) >= threshold


def select_relevant(chunks: Sequence[ContextChunk], threshold: float) -> List[ContextChunk]:
    """Chunks at or above threshold, best first; empty when the gate fails."""
    if not passes_relevance_gate(chunks, threshold):
        return []
    kept = [c for c in chunks if c.similarity >= threshold]
    return sorted(kept, key=lambda c: c.similarity, reverse=True)


def build_context_block(chunks: Sequence[ContextChunk]) -> str:
    """Numbered, labelled passages separated by blank lines."""
    return "\n\n".join(
        f"Source {i} ({chunk.category or 'General'} • {chunk.file_name or 'Unknown'}):\n"
        f"{chunk.content.strip()}"
        for i, chunk in enumerate(chunks, start=1)
    )


class ContextService:
    """Builds ContextResponses from retrieval results."""

    def __init__(
        self,
        retriever: ContextRetriever,
        relevance_threshold: float = 0.25,
        timeout_ms: int = 1500,
        system_prompt: Optional[str] = None,
    ):
        self.retriever = retriever
        self.relevance_threshold = relevance_threshold
        self.timeout_ms = timeout_ms
        self.system_prompt = system_prompt

    @property
    def _prompt(self) -> str:
        return self.system_prompt or get_system_prompt()

    async def get_context(self, request: ContextRequest) -> ContextResponse:
        """
        Retrieve, gate and format context for one utterance.

        Retrieval failures and timeouts degrade to a response with no
        context and an error field; they are never raised.
        """
        start_time = datetime.now()

        try:
            chunks = await asyncio.wait_for(
                self.retriever.retrieve(
                    request.question,
                    match_count=request.match_count,
                    category=request.category,
                ),
                timeout=self.timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.warning(f"Context retrieval timeout after {self.timeout_ms}ms: {request.question[:50]}")
            return ContextResponse(
                instructions=self._prompt,
                error=f"Retrieval timed out after {self.timeout_ms}ms",
            )
        except RetrievalError as e:
            logger.error(f"Context retrieval failed: {e}")
            return ContextResponse(instructions=self._prompt, error=str(e))

        top_similarity = max((c.similarity for c in chunks), default=None)
        relevant = select_relevant(chunks, self.relevance_threshold)
        elapsed = (datetime.now() - start_time).total_seconds() * 1000

        if not relevant:
            score = f"{top_similarity:.3f}" if top_similarity is not None else "n/a"
            logger.info(
                f"🚫 No context above {self.relevance_threshold} (top={score}) "
                f"in {elapsed:.0f}ms for: {request.question[:50]}"
            )
            return ContextResponse(
                instructions=build_no_context_instructions(self._prompt),
                top_similarity=top_similarity,
            )

        block = build_context_block(relevant)
        logger.info(
            f"✅ Context ready: {len(relevant)} chunks, top={top_similarity:.3f}, "
            f"{len(block)} chars in {elapsed:.0f}ms"
        )
        return ContextResponse(
            context=block,
            instructions=build_context_instructions(block, self._prompt),
            chunks_found=len(relevant),
            top_similarity=top_similarity,
        )
