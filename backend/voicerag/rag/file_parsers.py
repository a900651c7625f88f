"""
Text extraction for knowledge-base uploads (PDF, TXT, Markdown).
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)


@dataclass
class ParsedDocument:
    text: str
    file_name: str
    format: str
    page_count: int = 1

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class FileParser:
    """Extract text content from uploaded bytes."""

    SUPPORTED_EXTENSIONS = {'.pdf', '.txt', '.md'}
    MAX_FILE_SIZE_MB = 10

    @classmethod
    def is_supported(cls, filename: str) -> bool:
        return Path(filename).suffix.lower() in cls.SUPPORTED_EXTENSIONS

    @classmethod
    def validate_file_size(cls, file_size: int) -> bool:
        return file_size <= cls.MAX_FILE_SIZE_MB * 1024 * 1024

    @classmethod
    async def parse(cls, content: bytes, filename: str) -> ParsedDocument:
        """
        Extract text from an uploaded file.

        Raises:
            ValueError: If the format is unsupported or the file cannot be read
        """
        ext = Path(filename).suffix.lower()
        if ext not in cls.SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported file format: {ext}")

        try:
            if ext == '.pdf':
                # PyMuPDF is synchronous and CPU-bound
                document = await asyncio.to_thread(cls._parse_pdf, content, filename)
            else:
                document = cls._parse_text(content, filename, ext[1:])
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Failed to parse {filename}: {e}")
            raise ValueError(f"Failed to parse document: {e}") from e

        logger.info(f"Extracted {document.word_count} words from {filename}")
        return document

    @staticmethod
    def _parse_pdf(content: bytes, filename: str) -> ParsedDocument:
        with fitz.open(stream=content, filetype="pdf") as doc:
            pages = [page.get_text() for page in doc]
        text_pages = [p for p in pages if p.strip()]
        return ParsedDocument(
            text="\n\n".join(text_pages),
            file_name=filename,
            format="pdf",
            page_count=len(text_pages),
        )

    @staticmethod
    def _parse_text(content: bytes, filename: str, fmt: str) -> ParsedDocument:
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            text = content.decode("latin-1")
        return ParsedDocument(text=text, file_name=filename, format=fmt)
