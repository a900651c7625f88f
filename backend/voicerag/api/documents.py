"""
Knowledge-base ingestion endpoints: upload a document into the vector store,
delete it again, inspect the index.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voicerag.db.models import Document
from voicerag.db.postgres import get_db_session
from voicerag.dependencies import get_document_processor, get_vector_store
from voicerag.errors import RetrievalError
from voicerag.rag.document_processor import DocumentProcessor
from voicerag.rag.file_parsers import FileParser
from voicerag.rag.vector_store import PineconeVectorStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["documents"])


def require_vector_store() -> PineconeVectorStore:
    try:
        return get_vector_store()
    except RetrievalError as e:
        raise HTTPException(status_code=503, detail=str(e))


def _parse_document_id(document_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(document_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid document id")


@router.post("/upload")
async def upload_document(
    file: UploadFile = File(...),
    category: Optional[str] = Form(default=None),
    db: AsyncSession = Depends(get_db_session),
    processor: DocumentProcessor = Depends(get_document_processor),
    vector_store: PineconeVectorStore = Depends(require_vector_store),
):
    """
    Parse, chunk, embed and index one document.

    Synchronous processing - returns only after indexing is complete.

    Args:
        file: Uploaded file (PDF, TXT, MD)
        category: Optional category stored on every chunk for filtered retrieval

    Returns:
        Document metadata with processing status
    """
    if not file.filename or not FileParser.is_supported(file.filename):
        raise HTTPException(status_code=400, detail="Unsupported file format. Supported: PDF, TXT, MD")

    content = await file.read()
    if not FileParser.validate_file_size(len(content)):
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size: {FileParser.MAX_FILE_SIZE_MB}MB"
        )

    category = (category or "").strip() or None
    document_id = uuid.uuid4()
    doc_entry = Document(
        id=document_id,
        category=category,
        filename=file.filename,
        file_format=os.path.splitext(file.filename)[1][1:].lower(),
        file_size_bytes=len(content),
        status="processing",
    )
    db.add(doc_entry)
    await db.flush()
    logger.info(f"Starting document upload: {file.filename}, size={len(content)}, category={category}")

    try:
        parsed = await FileParser.parse(content, file.filename)
        chunks = await processor.process_document(parsed.text)
        vector_count = await vector_store.upsert_chunks(
            chunks=chunks,
            document_id=str(document_id),
            category=category,
            file_name=file.filename,
        )
    except Exception as e:
        logger.error(f"Document upload failed: {e}", exc_info=True)
        await db.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(status="failed", error_message=str(e))
        )
        await db.commit()
        status = 400 if isinstance(e, ValueError) else 500
        raise HTTPException(status_code=status, detail=f"Document processing failed: {e}")

    await db.execute(
        update(Document)
        .where(Document.id == document_id)
        .values(
            status="indexed",
            word_count=parsed.word_count,
            chunk_count=vector_count,
            indexed_at=datetime.now(timezone.utc),
        )
    )
    logger.info(f"📄 Document {file.filename} indexed: {vector_count} chunks")

    return {
        "success": True,
        "document_id": str(document_id),
        "filename": file.filename,
        "category": category,
        "status": "indexed",
        "word_count": parsed.word_count,
        "chunk_count": vector_count,
        "message": f"Document indexed with {vector_count} chunks",
    }


@router.get("/stats")
async def index_stats(vector_store: PineconeVectorStore = Depends(require_vector_store)):
    """Vector count and width of the knowledge index."""
    return await vector_store.get_stats()


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    db: AsyncSession = Depends(get_db_session),
    vector_store: PineconeVectorStore = Depends(require_vector_store),
):
    """Delete a document and its vectors."""
    doc_uuid = _parse_document_id(document_id)
    result = await db.execute(select(Document).where(Document.id == doc_uuid))
    doc = result.scalar_one_or_none()
    if doc is None:
        raise HTTPException(status_code=404, detail="Document not found")

    await vector_store.delete_by_document(document_id)
    await db.delete(doc)
    logger.info(f"Deleted document: {document_id}")

    return {"success": True, "message": "Document deleted"}
