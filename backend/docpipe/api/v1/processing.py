"""
Document Processing API Router

  POST /api/v1/documents/{id}/process          queue a (re)processing run → 202
  POST /api/v1/documents/{id}/quiz             queue quiz regeneration    → 202
  GET  /api/v1/documents/{id}/processing-logs  progress trail

Routes only validate state and publish tasks; all work happens in the
Celery worker.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.db.session import get_db
from docpipe.models.documents import Document
from docpipe.schemas.processing import (
    DocumentStatus,
    ErrorResponse,
    ProcessingAcceptedResponse,
    ProcessingLogEntry,
    ProcessingLogResponse,
    ProcessingMode,
    ProcessingOptions,
    QuizRegenerateRequest,
)
from docpipe.services.dispatch import TaskPublisher, get_task_publisher
from docpipe.services.pipeline import get_document
from docpipe.services.processing_log import list_logs

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(error_code=code, message=message).model_dump(),
    )


async def _require_document(db: AsyncSession, document_id: UUID) -> Document:
    document = await get_document(db, document_id)
    if document is None:
        raise _error(status.HTTP_404_NOT_FOUND, "DOCUMENT_NOT_FOUND", f"Document {document_id} not found")
    return document


# ---------------------------------------------------------------------------
# POST /documents/{id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ProcessingAcceptedResponse,
    summary="Queue document processing",
)
async def process_document(
    document_id: UUID,
    options:     ProcessingOptions | None = None,
    db:          AsyncSession = Depends(get_db),
    publisher:   TaskPublisher = Depends(get_task_publisher),
) -> ProcessingAcceptedResponse:
    options = options or ProcessingOptions()
    document = await _require_document(db, document_id)

    if document.status == DocumentStatus.PROCESSING.value:
        raise _error(status.HTTP_409_CONFLICT, "ALREADY_PROCESSING", "Document is already being processed")

    # A ready document re-processed in replace mode goes back through the
    # claimable 'pending' state.
    if options.mode is ProcessingMode.REPLACE and document.status == DocumentStatus.READY.value:
        document.status = DocumentStatus.PENDING.value
        await db.flush()

    task_id = await publisher.publish_processing(document_id, options)
    return ProcessingAcceptedResponse(document_id=document_id, task_id=task_id)


# ---------------------------------------------------------------------------
# POST /documents/{id}/quiz
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/quiz",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ProcessingAcceptedResponse,
    summary="Regenerate the document quiz",
)
async def regenerate_quiz(
    document_id: UUID,
    body:        QuizRegenerateRequest | None = None,
    db:          AsyncSession = Depends(get_db),
    publisher:   TaskPublisher = Depends(get_task_publisher),
) -> ProcessingAcceptedResponse:
    body = body or QuizRegenerateRequest()
    document = await _require_document(db, document_id)
    if document.status != DocumentStatus.READY.value:
        raise _error(
            status.HTTP_409_CONFLICT, "DOCUMENT_NOT_READY",
            f"Document status is {document.status}; quiz needs a ready document",
        )

    task_id = await publisher.publish_quiz(document_id, body.num_questions)
    return ProcessingAcceptedResponse(document_id=document_id, task_id=task_id)


# ---------------------------------------------------------------------------
# GET /documents/{id}/processing-logs
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/processing-logs",
    response_model=ProcessingLogResponse,
    summary="Processing progress trail",
)
async def get_processing_logs(
    document_id: UUID,
    limit:       int = Query(200, ge=1, le=1000),
    db:          AsyncSession = Depends(get_db),
) -> ProcessingLogResponse:
    await _require_document(db, document_id)
    rows = await list_logs(db, document_id, limit=limit)
    return ProcessingLogResponse(
        document_id=document_id,
        logs=[ProcessingLogEntry.model_validate(row) for row in rows],
    )
