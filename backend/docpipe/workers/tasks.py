"""
Celery Tasks — Document Ingestion

Task: process_document
  Runs DocumentPipeline.process() for one document. Retryable failures
  (rate limits, network, 5xx, transient DB errors) are re-queued with
  exponential countdown in replace mode; add mode is never auto-retried
  because a partially stored run would be appended twice.

Task: regenerate_quiz
  Rebuilds only the quiz from stored chunks.

Task: retry_stale_documents
  Beat task: re-queues documents stuck in 'pending' (broker outage during
  upload) and fails documents stuck in 'processing' past the hard task
  time limit (worker lost).

Security:
  Only document ids cross the broker; everything else is re-read from the DB.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import and_, func, select, text, update

from docpipe.workers.celery_app import HARD_TIME_LIMIT, celery_app

logger = logging.getLogger(__name__)

MAX_TASK_RETRIES = 3
STALE_SCAN_LIMIT = 50


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.process_document",
    bind=True,
    max_retries=MAX_TASK_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(
    self: Task,
    *,
    document_id:            str,
    mode:                   str = "replace",
    chunk_size:             int | None = None,
    chunk_overlap:          int | None = None,
    transcription_provider: str | None = None,
    quiz_questions:         int | None = None,
    generate_enrichment:    bool = True,
) -> dict[str, Any]:
    from docpipe.core.errors import ProcessingError
    from docpipe.schemas.processing import ProcessingRequest

    options = {
        "chunk_size":             chunk_size,
        "chunk_overlap":          chunk_overlap,
        "transcription_provider": transcription_provider,
        "quiz_questions":         quiz_questions,
    }
    request = ProcessingRequest(
        document_id=uuid.UUID(document_id),
        mode=mode,
        generate_enrichment=generate_enrichment,
        **{k: v for k, v in options.items() if v is not None},
    )

    try:
        result = run_async(_process_document_async(request))
    except SoftTimeLimitExceeded:
        logger.error("Processing hit soft time limit | doc=%s", document_id)
        run_async(_mark_failed(request.document_id, "Processing exceeded the task time limit"))
        raise
    except ProcessingError as exc:
        if exc.retryable and request.mode.value == "replace" and self.request.retries < self.max_retries:
            countdown = 30 * (2 ** self.request.retries)
            logger.warning(
                "Re-queueing document | doc=%s retry=%d countdown=%ds error=%s",
                document_id, self.request.retries + 1, countdown, exc,
            )
            raise self.retry(exc=exc, countdown=countdown)
        raise
    return result


async def _process_document_async(request) -> dict[str, Any]:
    from docpipe.services.pipeline import DocumentPipeline

    result = await DocumentPipeline().process(request)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Quiz regeneration
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.regenerate_quiz",
    acks_late=True,
    soft_time_limit=360,
    time_limit=400,
)
def regenerate_quiz(*, document_id: str, num_questions: int = 5) -> dict[str, Any]:
    return run_async(_regenerate_quiz_async(uuid.UUID(document_id), num_questions))


async def _regenerate_quiz_async(document_id: uuid.UUID, num_questions: int) -> dict[str, Any]:
    from docpipe.services.pipeline import DocumentPipeline

    saved = await DocumentPipeline().regenerate_quiz(document_id, num_questions)
    return {"document_id": str(document_id), "questions": saved}


# ---------------------------------------------------------------------------
# Stale-document scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docpipe.workers.tasks.retry_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def retry_stale_documents() -> dict[str, int]:
    return run_async(_retry_stale_documents_async())


async def _retry_stale_documents_async() -> dict[str, int]:
    from docpipe.core.config import settings
    from docpipe.db.session import get_admin_db
    from docpipe.models.documents import Document

    requeued = 0
    async with get_admin_db() as db:
        stuck = await db.execute(
            update(Document)
            .where(and_(
                Document.status == "processing",
                Document.updated_at < func.now() - text(f"interval '{HARD_TIME_LIMIT} seconds'"),
            ))
            .values(status="failed", error_message="Worker lost while processing")
            .returning(Document.id)
        )
        for doc_id in stuck.scalars().all():
            logger.warning("Failed stuck document | doc=%s", doc_id)

        result = await db.execute(
            select(Document.id).where(and_(
                Document.status == "pending",
                Document.created_at < func.now() - text(f"interval '{settings.stale_document_minutes} minutes'"),
            )).limit(STALE_SCAN_LIMIT)
        )
        for doc_id in result.scalars().all():
            process_document.apply_async(kwargs={"document_id": str(doc_id)}, countdown=5)
            requeued += 1
            logger.info("Re-queued stale document | doc=%s", doc_id)

    return {"requeued": requeued}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docpipe.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _mark_failed(document_id: uuid.UUID, error_message: str) -> None:
    from docpipe.db.session import get_admin_db
    from docpipe.models.documents import Document

    async with get_admin_db() as db:
        await db.execute(
            update(Document)
            .where(Document.id == document_id)
            .values(status="failed", error_message=error_message)
        )
