"""
Chunk Storage — batched, conflict-safe persistence of embedded chunks

Index assignment modes:
  replace   existing chunks for the slug are deleted; indices 0..n-1
  add       indices continue after the current MAX(chunk_index)

Optimistic concurrency (add mode):
  Two workers appending to the same document can read the same max index.
  The loser's INSERT violates UNIQUE(document_slug, chunk_index); we then

    1. re-read MAX(chunk_index)
    2. offset = compute_index_offset(batch_min, new_max)
    3. shift the colliding batch AND every not-yet-inserted batch
    4. retry, at most storage_max_conflict_retries times

  There is no distributed lock; the unique constraint is the arbiter.

Failure accounting:
  Each batch insert goes through RetryStrategy. Batches that still fail are
  recorded; zero stored rows → DatabaseError, more than half of the batches
  failed → PartialFailureError.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.core.errors import DatabaseError, PartialFailureError, ProcessingError, classify_error
from docpipe.core.retry import RetryStrategy
from docpipe.models.documents import Chunk
from docpipe.processing.embeddings import EmbeddedChunk

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
MAX_FAILED_BATCH_RATIO = 0.5

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


@dataclass
class BatchFailure:
    batch_number: int
    first_index:  int
    size:         int
    error:        ProcessingError


def compute_index_offset(batch_min_index: int, current_max_index: int) -> int:
    """
    Shift needed so a batch starting at batch_min_index lands strictly above
    current_max_index. Never negative.
    """
    return max(0, current_max_index + 1 - batch_min_index)


def _is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, DatabaseError) and exc.code == UNIQUE_VIOLATION:
        return True
    cause = exc.__cause__ if isinstance(exc, ProcessingError) else exc
    return isinstance(cause, IntegrityError) and "unique" in str(cause).lower()


class ChunkStorage:
    """
    Usage:
        storage = ChunkStorage()
        stored = await storage.store(doc.id, doc.slug, run.successes, mode="replace")
    """

    def __init__(
        self,
        session_factory:      SessionFactory | None = None,
        retry:                RetryStrategy | None = None,
        batch_size:           int | None = None,
        max_conflict_retries: int | None = None,
    ) -> None:
        from docpipe.core.config import settings

        if session_factory is None:
            from docpipe.db.session import get_admin_db
            session_factory = get_admin_db

        self._session_factory      = session_factory
        self._retry                = retry or RetryStrategy.from_settings()
        self._batch_size           = batch_size or settings.storage_insert_batch_size
        self._max_conflict_retries = (
            settings.storage_max_conflict_retries
            if max_conflict_retries is None else max_conflict_retries
        )

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def store(
        self,
        document_id:           uuid.UUID,
        document_slug:         str,
        chunks_with_embeddings: Sequence[EmbeddedChunk],
        mode:                  str = "replace",
    ) -> int:
        if mode not in ("replace", "add"):
            raise ValueError(f"Unknown storage mode: {mode}")

        valid = [item for item in chunks_with_embeddings if item.embedding]
        skipped = len(chunks_with_embeddings) - len(valid)
        if skipped:
            logger.warning("ChunkStorage | slug=%s skipped_without_embedding=%d", document_slug, skipped)
        if not valid:
            raise DatabaseError("No chunks with valid embeddings to store")

        if mode == "replace":
            deleted = await self.delete_all(document_slug)
            if deleted:
                logger.info("ChunkStorage | slug=%s replaced=%d", document_slug, deleted)
            base_index = 0
        else:
            base_index = await self.max_index(document_slug) + 1

        records = [
            self._to_record(document_id, document_slug, item, base_index + position)
            for position, item in enumerate(valid)
        ]
        batches = [
            records[i : i + self._batch_size]
            for i in range(0, len(records), self._batch_size)
        ]

        stored = 0
        failures: list[BatchFailure] = []

        for batch_number, batch in enumerate(batches, start=1):
            conflicts = 0
            while True:
                try:
                    await self._retry.execute(
                        lambda batch=batch: self._insert(batch),
                        operation_name="store_chunks",
                    )
                except Exception as exc:
                    error = classify_error(exc)

                    if mode == "add" and _is_unique_violation(exc):
                        if conflicts >= self._max_conflict_retries:
                            raise DatabaseError(
                                f"Chunk index conflict persisted after {conflicts} re-numbering attempts",
                                code=UNIQUE_VIOLATION,
                                details={"slug": document_slug, "batch": batch_number},
                            ) from exc
                        conflicts += 1
                        offset = await self._resolve_conflict(document_slug, batches[batch_number - 1:])
                        logger.warning(
                            "ChunkStorage conflict | slug=%s batch=%d attempt=%d offset=%d",
                            document_slug, batch_number, conflicts, offset,
                        )
                        continue

                    if isinstance(error, DatabaseError) and not error.retryable:
                        raise error from exc

                    logger.error(
                        "ChunkStorage batch failed | slug=%s batch=%d/%d error=%s",
                        document_slug, batch_number, len(batches), error,
                    )
                    failures.append(BatchFailure(
                        batch_number=batch_number,
                        first_index=batch[0]["chunk_index"],
                        size=len(batch),
                        error=error,
                    ))
                    break

                stored += len(batch)
                break

        logger.info(
            "ChunkStorage | slug=%s mode=%s stored=%d batches=%d failed_batches=%d",
            document_slug, mode, stored, len(batches), len(failures),
        )

        if stored == 0:
            raise DatabaseError(
                "No chunks were stored",
                details={"slug": document_slug, "failed_batches": len(failures)},
            )
        if len(failures) / len(batches) > MAX_FAILED_BATCH_RATIO:
            raise PartialFailureError(
                f"{len(failures)} of {len(batches)} chunk batches failed to store",
                successes=[stored],
                failures=failures,
                details={"stored": stored},
            )
        return stored

    async def _resolve_conflict(self, document_slug: str, pending: list[list[dict]]) -> int:
        current_max = await self.max_index(document_slug)
        batch_min   = min(r["chunk_index"] for r in pending[0])
        offset      = compute_index_offset(batch_min, current_max)
        for batch in pending:
            for record in batch:
                record["chunk_index"] += offset
        return offset

    async def _insert(self, records: list[dict]) -> None:
        async with self._session_factory() as db:
            await db.execute(insert(Chunk), records)

    @staticmethod
    def _to_record(
        document_id:   uuid.UUID,
        document_slug: str,
        item:          EmbeddedChunk,
        chunk_index:   int,
    ) -> dict[str, Any]:
        chunk = item.chunk
        metadata: dict[str, Any] = {
            "char_start":         chunk.char_start,
            "char_end":           chunk.char_end,
            "tokens_approx":      chunk.tokens_approx,
            "page_number":        chunk.page_number,
            "page_markers_found": chunk.page_markers_found,
            "source_index":       chunk.index,
        }
        if chunk.start_time is not None:
            metadata["start_time"] = chunk.start_time
            metadata["end_time"]   = chunk.end_time
        metadata.update(chunk.metadata)

        return {
            "document_id":    document_id,
            "document_slug":  document_slug,
            "chunk_index":    chunk_index,
            "content":        chunk.content,
            "embedding":      item.embedding,
            "chunk_metadata": metadata,
        }

    # ------------------------------------------------------------------
    # Supporting queries
    # ------------------------------------------------------------------

    async def delete_all(self, document_slug: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(delete(Chunk).where(Chunk.document_slug == document_slug))
        return result.rowcount or 0

    async def count(self, document_slug: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(Chunk).where(Chunk.document_slug == document_slug)
            )
        return int(result.scalar() or 0)

    async def max_index(self, document_slug: str) -> int:
        """Highest stored chunk_index for the slug, -1 when it has none."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.max(Chunk.chunk_index)).where(Chunk.document_slug == document_slug)
            )
        value = result.scalar()
        return -1 if value is None else int(value)

    async def get_chunks(self, document_slug: str, limit: int = 1000, offset: int = 0) -> list[Chunk]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Chunk)
                .where(Chunk.document_slug == document_slug)
                .order_by(Chunk.chunk_index)
                .limit(limit)
                .offset(offset)
            )
        return list(result.scalars().all())
