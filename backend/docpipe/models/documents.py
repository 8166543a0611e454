"""
SQLAlchemy ORM Models — Documents, Chunks, Quiz Questions, Processing Logs

Mapped classes use the SQLAlchemy 2.x typed style for full async support.
Embeddings live next to their chunk text in a pgvector column so retrieval
is a single indexed query.

Index invariant:
  UNIQUE(document_slug, chunk_index) is the only concurrency guard for
  "add more content" operations. ChunkStorage relies on the violation it
  raises to detect a concurrent append and re-number its batch.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from docpipe.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file and everything derived from it.

    State machine (status column):
        pending    — uploaded, processing not yet started
        processing — worker actively extracting / chunking / embedding
        ready      — chunks stored, document searchable
        failed     — constitutive pipeline error (see error_message)

    Derived fields (abstract, keywords, has_quiz) are best-effort and are
    only written when the corresponding enrichment produced something.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'ready', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)

    # Source file
    source_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object-storage key of the raw upload",
    )
    content_type: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    page_count: Mapped[Optional[int]]         = mapped_column(Integer, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Enrichment
    abstract: Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    keywords: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    has_quiz: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_audio(self) -> bool:
        return self.content_type.startswith("audio/")

    def __repr__(self) -> str:
        return f"<Document id={self.id} slug={self.slug!r} status={self.status}>"


# ---------------------------------------------------------------------------
# Chunk model: document_chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """One text window of a Document with its embedding."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_slug", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_slug: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int]   = mapped_column(Integer, nullable=False)
    content: Mapped[str]       = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="char_start, char_end, tokens_approx, page_number, start_time, end_time",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# QuizQuestion model: quiz_questions
# ---------------------------------------------------------------------------

class QuizQuestion(Base):

    __tablename__ = "quiz_questions"
    __table_args__ = (
        CheckConstraint("correct_answer BETWEEN 0 AND 3", name="quiz_questions_answer_check"),
        UniqueConstraint("document_id", "question_index", name="uq_quiz_questions_position"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question: Mapped[str]       = mapped_column(Text, nullable=False)
    options: Mapped[list]       = mapped_column(JSONB, nullable=False)
    correct_answer: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# ProcessingLog model: document_processing_logs
# ---------------------------------------------------------------------------

class ProcessingLog(Base):
    """
    Append-only stage/status trail for one document's pipeline runs.
    Consumed by realtime progress notifiers; never updated after insert.
    """

    __tablename__ = "document_processing_logs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('started', 'progress', 'completed', 'failed')",
            name="document_processing_logs_status_check",
        ),
        Index("idx_processing_logs_document_id", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_slug: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage: Mapped[str]   = mapped_column(Text, nullable=False)
    status: Mapped[str]  = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    log_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    processing_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingLog doc={self.document_id} stage={self.stage} "
            f"status={self.status}>"
        )
