"""
Unit tests for the Pinecone vector store with a fake client.
"""

from types import SimpleNamespace

import pytest
from voicerag.errors import RetrievalError
from voicerag.rag.vector_store import ContextChunk, PineconeVectorStore


def match(id, score, **metadata):
    return SimpleNamespace(id=id, score=score, metadata=metadata)


class FakeIndex:
    def __init__(self, matches=None, filter_error=None):
        self.matches = matches or []
        self.filter_error = filter_error
        self.queries = []
        self.upserts = []
        self.deletes = []

    def query(self, vector, top_k, include_metadata, filter=None):
        self.queries.append(filter)
        if filter is not None and self.filter_error is not None:
            raise self.filter_error
        return SimpleNamespace(matches=self.matches[:top_k])

    def upsert(self, vectors):
        self.upserts.extend(vectors)

    def delete(self, filter):
        self.deletes.append(filter)

    def describe_index_stats(self):
        return SimpleNamespace(total_vector_count=42, dimension=8)


class FakePinecone:
    def __init__(self, existing=None, dimension=8, create_error=None, index=None):
        self.existing = list(existing or [])
        self.dimension = dimension
        self.create_error = create_error
        self.index = index or FakeIndex()
        self.list_calls = 0
        self.created = []

    def list_indexes(self):
        self.list_calls += 1
        return [SimpleNamespace(name=n) for n in self.existing]

    def create_index(self, name, dimension, metric, spec):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((name, dimension, metric))
        self.existing.append(name)

    def describe_index(self, name):
        return SimpleNamespace(dimension=self.dimension)

    def Index(self, name):
        return self.index


def make_store(client, dimension=8):
    return PineconeVectorStore(api_key=None, index_name="knowledge", dimension=dimension, client=client)


class AlreadyExists(Exception):
    status = 409


class TestBootstrap:
    """Test once-per-instance index bootstrap."""

    @pytest.mark.asyncio
    async def test_creates_missing_index_once(self):
        client = FakePinecone()
        store = make_store(client)
        await store.query([0.1] * 8)
        await store.query([0.1] * 8)
        assert client.created == [("knowledge", 8, "cosine")]
        assert client.list_calls == 1
        assert store.is_bootstrapped

    @pytest.mark.asyncio
    async def test_invalidate_rechecks(self):
        client = FakePinecone(existing=["knowledge"])
        store = make_store(client)
        await store.ensure_index()
        store.invalidate()
        assert not store.is_bootstrapped
        await store.ensure_index()
        assert client.list_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_creation_tolerated(self):
        client = FakePinecone(create_error=AlreadyExists("Resource already exists"))
        store = make_store(client)
        assert await store.ensure_index() is client.index

    @pytest.mark.asyncio
    async def test_dimension_mismatch_is_error(self):
        client = FakePinecone(existing=["knowledge"], dimension=384)
        store = make_store(client, dimension=1536)
        with pytest.raises(RetrievalError):
            await store.ensure_index()

    def test_missing_api_key_rejected(self):
        with pytest.raises(RetrievalError):
            PineconeVectorStore(api_key=None, index_name="knowledge")


class TestQuery:
    """Test search, ordering and filter fallback."""

    @pytest.mark.asyncio
    async def test_results_sorted_by_similarity(self):
        index = FakeIndex(matches=[
            match("a", 0.2, text="low"),
            match("b", 0.61, text="B.Tech fees are listed here", category="admissions", file_name="fees.pdf"),
        ])
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        chunks = await store.query([0.1] * 8, top_k=3)
        assert [c.id for c in chunks] == ["b", "a"]
        assert chunks[0].category == "admissions"
        assert chunks[0].file_name == "fees.pdf"

    @pytest.mark.asyncio
    async def test_category_filter_used(self):
        index = FakeIndex()
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        await store.query([0.1] * 8, category="admissions")
        assert index.queries == [{"category": {"$eq": "admissions"}}]

    @pytest.mark.asyncio
    async def test_missing_filter_index_retries_unfiltered(self):
        index = FakeIndex(
            matches=[match("a", 0.5, text="x")],
            filter_error=RuntimeError("Index required for field category"),
        )
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        chunks = await store.query([0.1] * 8, category="admissions")
        assert len(chunks) == 1
        assert index.queries == [{"category": {"$eq": "admissions"}}, None]

    @pytest.mark.asyncio
    async def test_other_filter_errors_propagate(self):
        index = FakeIndex(filter_error=RuntimeError("service unavailable"))
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        with pytest.raises(RuntimeError):
            await store.query([0.1] * 8, category="admissions")

    @pytest.mark.asyncio
    async def test_wrong_query_width_rejected(self):
        store = make_store(FakePinecone(existing=["knowledge"]))
        with pytest.raises(RetrievalError):
            await store.query([0.1] * 4)


class TestUpsert:
    """Test the point payload contract."""

    @pytest.mark.asyncio
    async def test_payload_fields(self):
        index = FakeIndex()
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        count = await store.upsert_chunks(
            [{"text": "one", "embedding": [0.1] * 8}, {"text": "two", "embedding": [0.2] * 8}],
            document_id="doc-1",
            category="admissions",
            file_name="fees.pdf",
        )
        assert count == 2
        metadata = index.upserts[1]["metadata"]
        assert metadata == {
            "document_id": "doc-1",
            "chunk_index": 1,
            "chunk_id": "doc-1:1",
            "text": "two",
            "category": "admissions",
            "file_name": "fees.pdf",
        }
        assert index.upserts[0]["id"] != index.upserts[1]["id"]

    @pytest.mark.asyncio
    async def test_optional_fields_omitted(self):
        index = FakeIndex()
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        await store.upsert_chunks([{"text": "one", "embedding": [0.1] * 8}], document_id="doc-1")
        assert "category" not in index.upserts[0]["metadata"]
        assert "file_name" not in index.upserts[0]["metadata"]

    @pytest.mark.asyncio
    async def test_delete_by_document(self):
        index = FakeIndex()
        store = make_store(FakePinecone(existing=["knowledge"], index=index))
        await store.delete_by_document("doc-1")
        assert index.deletes == [{"document_id": {"$eq": "doc-1"}}]

    @pytest.mark.asyncio
    async def test_stats(self):
        store = make_store(FakePinecone(existing=["knowledge"]))
        assert await store.get_stats() == {"total_vectors": 42, "dimension": 8}


class TestContextChunk:
    def test_from_match_defaults(self):
        chunk = ContextChunk.from_match(SimpleNamespace(id=1, score=None, metadata=None))
        assert chunk.id == "1"
        assert chunk.similarity == 0.0
        assert chunk.content == ""
