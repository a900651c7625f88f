"""
Unit tests for document parsing, chunking and chunk embedding.
"""

import pytest
from voicerag.rag.document_processor import DocumentProcessor
from voicerag.rag.file_parsers import FileParser


class WordTokenizer:
    """One token per whitespace-separated word."""

    def encode(self, text):
        return text.split()

    def decode(self, tokens):
        return " ".join(tokens)


class FakeEmbedder:
    def __init__(self):
        self.batches = []

    async def get_embeddings_batch(self, texts):
        self.batches.append(texts)
        return [[float(len(t))] for t in texts]


def make_processor(**kwargs):
    kwargs.setdefault("tokenizer", WordTokenizer())
    return DocumentProcessor(**kwargs)


class TestChunking:
    """Test token-window chunking."""

    def test_overlapping_windows(self):
        processor = make_processor(chunk_size=4, chunk_overlap=1)
        chunks = processor.chunk_text("a b c d e f g h i j")
        assert [c["text"] for c in chunks] == ["a b c d", "d e f g", "g h i j"]
        assert all(c["token_count"] == 4 for c in chunks)

    def test_short_text_single_chunk(self):
        chunks = make_processor(chunk_size=100, chunk_overlap=10).chunk_text("only a few words")
        assert len(chunks) == 1

    def test_empty_text(self):
        assert make_processor().chunk_text("   ") == []

    def test_overlap_must_be_smaller(self):
        with pytest.raises(ValueError):
            make_processor(chunk_size=50, chunk_overlap=50)


class TestEmbedding:
    """Test embedding backends for chunks."""

    @pytest.mark.asyncio
    async def test_local_embedder_used(self):
        embedder = FakeEmbedder()
        processor = make_processor(local_embedder=embedder, chunk_size=2, chunk_overlap=0)
        chunks = await processor.process_document("ab cd ef")
        assert [c["embedding"] for c in chunks] == [[5.0], [2.0]]
        assert embedder.batches == [["ab cd", "ef"]]

    @pytest.mark.asyncio
    async def test_no_backend(self):
        processor = make_processor(use_local=False)
        with pytest.raises(RuntimeError):
            await processor.embed_chunks([{"text": "x"}])

    @pytest.mark.asyncio
    async def test_empty_document_rejected(self):
        with pytest.raises(ValueError):
            await make_processor(local_embedder=FakeEmbedder()).process_document("")


class TestFileParser:
    """Test upload validation and text extraction."""

    def test_supported_extensions(self):
        assert FileParser.is_supported("Prospectus.PDF")
        assert FileParser.is_supported("notes.md")
        assert not FileParser.is_supported("slides.pptx")

    def test_size_limit(self):
        limit = FileParser.MAX_FILE_SIZE_MB * 1024 * 1024
        assert FileParser.validate_file_size(limit)
        assert not FileParser.validate_file_size(limit + 1)

    @pytest.mark.asyncio
    async def test_text_file(self):
        document = await FileParser.parse("Fees are due in July.".encode(), "fees.txt")
        assert document.text == "Fees are due in July."
        assert document.format == "txt"
        assert document.word_count == 5

    @pytest.mark.asyncio
    async def test_latin1_fallback(self):
        document = await FileParser.parse("Café fees".encode("latin-1"), "menu.md")
        assert document.text == "Café fees"
        assert document.format == "md"

    @pytest.mark.asyncio
    async def test_unsupported_format(self):
        with pytest.raises(ValueError, match="Unsupported file format"):
            await FileParser.parse(b"x", "data.csv")

    @pytest.mark.asyncio
    async def test_corrupt_pdf(self):
        with pytest.raises(ValueError):
            await FileParser.parse(b"not a pdf", "broken.pdf")
