"""
Document Processing — Pydantic Request/Response Schemas

Covers:
  - ProcessingRequest: the pipeline's input (Celery task kwargs and
    POST /api/v1/documents/{id}/process body)
  - Accepted responses for queued work (202)
  - Processing log rows for GET /api/v1/documents/{id}/processing-logs

Design decisions:
  - document_id is the only identity accepted; slug, storage key and
    content type are always re-read from the documents table.
  - chunk_overlap must be strictly smaller than chunk_size.
  - quiz_questions=0 skips quiz generation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from docpipe.core.config import settings


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending → processing → ready | failed
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    READY      = "ready"
    FAILED     = "failed"


class ProcessingMode(str, Enum):
    REPLACE = "replace"   # delete existing chunks, reindex from 0
    ADD     = "add"       # append after the current max chunk_index


# ---------------------------------------------------------------------------
# Pipeline input
# ---------------------------------------------------------------------------

class ProcessingOptions(BaseModel):
    """Request body for POST /documents/{id}/process."""
    mode:                   ProcessingMode = ProcessingMode.REPLACE
    chunk_size:             int  = Field(default_factory=lambda: settings.chunk_size_tokens, ge=100, le=5000)
    chunk_overlap:          int  = Field(default_factory=lambda: settings.chunk_overlap_tokens, ge=0)
    transcription_provider: Literal["openai", "groq"] = Field(
        default_factory=lambda: settings.transcription_provider,
    )
    quiz_questions:         int  = Field(default_factory=lambda: settings.quiz_default_questions, ge=0, le=20)
    generate_enrichment:    bool = True

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ProcessingOptions":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class ProcessingRequest(ProcessingOptions):
    document_id: UUID


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class ProcessingAcceptedResponse(BaseModel):
    """HTTP 202: work is queued; progress appears in processing logs."""
    document_id: UUID
    task_id:     str
    status:      str = "queued"


class QuizRegenerateRequest(BaseModel):
    num_questions: int = Field(default_factory=lambda: settings.quiz_default_questions, ge=1, le=20)


class ProcessingLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                int
    stage:             str
    status:            str
    message:           str
    metadata:          dict[str, Any] = Field(default_factory=dict, validation_alias="log_metadata")
    processing_method: str | None = None
    created_at:        datetime


class ProcessingLogResponse(BaseModel):
    document_id: UUID
    logs:        list[ProcessingLogEntry]


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = None
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """Uniform error body for all 4xx/5xx responses."""
    error_code: str
    message:    str
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None = None
