"""
Unit tests for relevance gating and context responses.
"""

import asyncio

import pytest
from voicerag.errors import RetrievalError
from voicerag.models import ContextRequest
from voicerag.rag.context_service import (
    ContextService,
    build_context_block,
    passes_relevance_gate,
    select_relevant,
)
from voicerag.rag.retriever import ContextRetriever
from voicerag.rag.vector_store import ContextChunk

THRESHOLD = 0.25
EPSILON = 1e-6


def chunk(similarity, content="text", category=None, file_name=None, id="c"):
    return ContextChunk(id=id, content=content, similarity=similarity, category=category, file_name=file_name)


class FakeRetriever:
    def __init__(self, chunks=None, error=None, delay=0.0):
        self.chunks = chunks or []
        self.error = error
        self.delay = delay
        self.calls = []

    async def retrieve(self, query, match_count=3, category=None):
        self.calls.append((query, match_count, category))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.chunks)


class TestRelevanceGate:
    """Test the strict threshold rule."""

    def test_just_below_threshold_never_passes(self):
        assert not passes_relevance_gate([chunk(THRESHOLD - EPSILON)], THRESHOLD)

    def test_just_above_threshold_always_passes(self):
        assert passes_relevance_gate([chunk(THRESHOLD + EPSILON)], THRESHOLD)

    def test_exactly_threshold_passes(self):
        assert passes_relevance_gate([chunk(THRESHOLD)], THRESHOLD)

    def test_empty_results_fail(self):
        assert not passes_relevance_gate([], THRESHOLD)

    def test_gate_uses_top_result(self):
        assert passes_relevance_gate([chunk(0.1), chunk(0.3)], THRESHOLD)

    def test_below_threshold_chunks_dropped(self):
        kept = select_relevant([chunk(0.1, id="low"), chunk(0.5, id="high"), chunk(0.3, id="mid")], THRESHOLD)
        assert [c.id for c in kept] == ["high", "mid"]


class TestContextBlock:
    def test_format(self):
        block = build_context_block([
            chunk(0.6, "Fees are 4L per year.", "admissions", "fees.pdf"),
            chunk(0.4, " Hostel included. "),
        ])
        assert block == (
            "Source 1 (admissions • fees.pdf):\nFees are 4L per year.\n\n"
            "Source 2 (General • Unknown):\nHostel included."
        )


class TestContextService:
    """Test end-to-end context responses."""

    @pytest.mark.asyncio
    async def test_relevant_question_injects_context(self):
        retriever = FakeRetriever([chunk(0.61, "B.Tech fees are 4L per year.", "admissions", "fees.pdf")])
        service = ContextService(retriever, relevance_threshold=THRESHOLD, system_prompt="SYSTEM")

        response = await service.get_context(ContextRequest(question="What are the fees for the B.Tech program?"))

        assert response.has_context
        assert response.chunks_found == 1
        assert response.top_similarity == pytest.approx(0.61)
        assert "B.Tech fees are 4L per year." in response.context
        assert response.instructions.startswith("SYSTEM")
        assert "=== RELEVANT INFORMATION ===" in response.instructions
        assert "=== END OF INFORMATION ===" in response.instructions

    @pytest.mark.asyncio
    async def test_irrelevant_question_yields_no_context(self):
        retriever = FakeRetriever([chunk(0.04, "B.Tech fees are 4L per year.")])
        service = ContextService(retriever, relevance_threshold=THRESHOLD, system_prompt="SYSTEM")

        response = await service.get_context(ContextRequest(question="What's the weather today?"))

        assert response.context is None
        assert response.chunks_found == 0
        assert not response.has_context
        assert response.top_similarity == pytest.approx(0.04)
        assert response.error is None

    @pytest.mark.asyncio
    async def test_request_parameters_forwarded(self):
        retriever = FakeRetriever()
        service = ContextService(retriever, system_prompt="SYSTEM")
        await service.get_context(ContextRequest(question="fees", category="admissions", match_count=5))
        assert retriever.calls == [("fees", 5, "admissions")]

    @pytest.mark.asyncio
    async def test_retrieval_error_degrades_to_no_context(self):
        service = ContextService(FakeRetriever(error=RetrievalError("vector store down")), system_prompt="SYSTEM")
        response = await service.get_context(ContextRequest(question="fees"))
        assert response.context is None
        assert response.chunks_found == 0
        assert "vector store down" in response.error

    @pytest.mark.asyncio
    async def test_timeout_degrades_to_no_context(self):
        service = ContextService(FakeRetriever([chunk(0.9)], delay=1.0), timeout_ms=10, system_prompt="SYSTEM")
        response = await service.get_context(ContextRequest(question="fees"))
        assert response.context is None
        assert "timed out" in response.error


class FakeStore:
    dimension = 4

    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.vectors = []

    async def query(self, vector, top_k=3, category=None):
        self.vectors.append(vector)
        if self.error:
            raise self.error
        return self.chunks


class FakeEmbedder:
    def __init__(self, embedding=(1.0, 0.0, 0.0, 0.0)):
        self.embedding = list(embedding) if embedding else None
        self.calls = 0

    async def get_embedding(self, text):
        self.calls += 1
        return self.embedding


class TestContextRetriever:
    """Test embedding + search composition."""

    @pytest.mark.asyncio
    async def test_empty_query_returns_nothing(self):
        retriever = ContextRetriever(FakeStore(), local_embedder=FakeEmbedder())
        assert await retriever.retrieve("  ") == []

    @pytest.mark.asyncio
    async def test_embedding_cached_per_query(self):
        embedder = FakeEmbedder()
        retriever = ContextRetriever(FakeStore([chunk(0.5)]), local_embedder=embedder)
        await retriever.retrieve("Fees?")
        await retriever.retrieve("fees?")
        assert embedder.calls == 1
        assert retriever.cache_size == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_raises(self):
        retriever = ContextRetriever(FakeStore(), local_embedder=FakeEmbedder(embedding=None))
        with pytest.raises(RetrievalError):
            await retriever.retrieve("fees")

    @pytest.mark.asyncio
    async def test_store_failure_wrapped(self):
        retriever = ContextRetriever(FakeStore(error=ConnectionError("unreachable")), local_embedder=FakeEmbedder())
        with pytest.raises(RetrievalError):
            await retriever.retrieve("fees")

    @pytest.mark.asyncio
    async def test_no_embedding_method(self):
        retriever = ContextRetriever(FakeStore(), local_embedder=None, openai_client=None)
        with pytest.raises(RetrievalError):
            await retriever.retrieve("fees")
