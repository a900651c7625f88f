"""
SQLAlchemy models for the voice RAG database.
Defines schema for saved voice conversations and ingested documents.
"""

from sqlalchemy import Column, String, Integer, Text, TIMESTAMP, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()


class VoiceConversation(Base):
    """
    One voice session's transcript.
    Keyed by the client-generated session id; saving again replaces the rows below it.
    """
    __tablename__ = "voice_conversations"

    session_id = Column(String(100), primary_key=True)
    source = Column(String(50), nullable=False, default="voice")
    variant = Column(String(50), nullable=True)  # e.g. "A" / "B" deployment variant

    message_count = Column(Integer, default=0, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<VoiceConversation(session_id={self.session_id}, messages={self.message_count})>"


class VoiceMessage(Base):
    """Single finalized utterance, in conversation order."""
    __tablename__ = "voice_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        String(100),
        ForeignKey("voice_conversations.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    role = Column(String(20), nullable=False)  # 'user' or 'assistant'
    content = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    def __repr__(self):
        return f"<VoiceMessage(session_id={self.session_id}, position={self.position}, role={self.role})>"


class VoiceExchange(Base):
    """Question/answer pair derived from consecutive user/assistant messages."""
    __tablename__ = "voice_exchanges"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        String(100),
        ForeignKey("voice_conversations.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)


class Document(Base):
    """
    Uploaded document metadata for the knowledge base.
    Stores minimal info; chunk text and embeddings live in Pinecone.
    """
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category = Column(String(100), nullable=True, index=True)

    # File info
    filename = Column(String(255), nullable=False)
    file_format = Column(String(10), nullable=False)  # 'pdf', 'txt', 'md'
    file_size_bytes = Column(Integer, nullable=False)

    # Processing status
    status = Column(
        String(50),
        nullable=False,
        default="pending"
    )  # 'pending', 'processing', 'indexed', 'failed'

    # Document metrics
    word_count = Column(Integer, nullable=True)
    chunk_count = Column(Integer, nullable=True)

    # Timestamps
    uploaded_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    indexed_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Document(id={self.id}, filename={self.filename}, status={self.status}, chunks={self.chunk_count})>"
