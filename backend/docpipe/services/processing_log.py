"""
Processing Logger — per-document progress trail in document_processing_logs

Every pipeline stage writes started / progress / completed / failed rows so
the UI can render progress and operators can see where a document stopped.
Each row is also mirrored to the Python logger.

Writing a log row must never fail the pipeline: database errors are logged
and swallowed here, and only here.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, AsyncContextManager, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.models.documents import ProcessingLog

logger = logging.getLogger(__name__)

STAGES = frozenset({
    "download", "extract", "transcribe", "chunk", "embed",
    "store", "quiz", "complete", "error",
})
STATUSES = frozenset({"started", "progress", "completed", "failed"})

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class ProcessingLogger:
    """
    Usage:
        plog = ProcessingLogger(document.id, document.slug, method="pdf")
        await plog.started("extract", "Extracting text")
        await plog.completed("extract", "Extracted 12 pages", {"pages": 12})
    """

    def __init__(
        self,
        document_id:     uuid.UUID,
        document_slug:   str | None = None,
        method:          str | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        if session_factory is None:
            from docpipe.db.session import get_admin_db
            session_factory = get_admin_db

        self.document_id      = document_id
        self.document_slug    = document_slug
        self.method           = method
        self._session_factory = session_factory

    async def log(
        self,
        stage:    str,
        status:   str,
        message:  str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown processing stage: {stage}")
        if status not in STATUSES:
            raise ValueError(f"Unknown processing status: {status}")

        level = logging.ERROR if status == "failed" else logging.INFO
        logger.log(
            level, "Processing | doc=%s stage=%s status=%s %s",
            self.document_id, stage, status, message,
        )

        try:
            async with self._session_factory() as db:
                db.add(ProcessingLog(
                    document_id=self.document_id,
                    document_slug=self.document_slug,
                    stage=stage,
                    status=status,
                    message=message,
                    log_metadata=metadata or {},
                    processing_method=self.method,
                ))
        except Exception as exc:
            logger.warning(
                "Processing log write failed | doc=%s stage=%s error=%s",
                self.document_id, stage, exc,
            )

    async def started(self, stage: str, message: str = "", metadata: dict | None = None) -> None:
        await self.log(stage, "started", message, metadata)

    async def progress(self, stage: str, message: str = "", metadata: dict | None = None) -> None:
        await self.log(stage, "progress", message, metadata)

    async def completed(self, stage: str, message: str = "", metadata: dict | None = None) -> None:
        await self.log(stage, "completed", message, metadata)

    async def failed(self, stage: str, message: str = "", metadata: dict | None = None) -> None:
        await self.log(stage, "failed", message, metadata)

    async def error(self, exc: BaseException, stage: str = "error") -> None:
        """Record an exception; ProcessingError details land in metadata."""
        to_dict = getattr(exc, "to_dict", None)
        metadata = to_dict() if callable(to_dict) else {"error": type(exc).__name__}
        await self.failed(stage, str(exc), metadata)


async def list_logs(db: AsyncSession, document_id: uuid.UUID, limit: int = 200) -> list[ProcessingLog]:
    result = await db.execute(
        select(ProcessingLog)
        .where(ProcessingLog.document_id == document_id)
        .order_by(ProcessingLog.created_at, ProcessingLog.id)
        .limit(limit)
    )
    return list(result.scalars().all())
