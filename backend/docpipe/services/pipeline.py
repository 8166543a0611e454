"""
Document Pipeline — end-to-end ingestion for one document

Stages (each logged to document_processing_logs):
  1. claim       atomically move the document to status=processing
  2. download    fetch the upload from S3 by the row's source_key
  3. extract     PDF text with page markers, or audio transcript
  4. chunk       sliding-window chunks with page / time metadata
  5. embed       sequential batches with adaptive pacing
  6. store       batched, conflict-safe insert (replace | add)
  7. enrich      abstract + keywords + quiz, concurrent and best-effort
  8. complete    status=ready with counts and derived fields

Steps 2-6 are constitutive: any failure marks the document failed, records
error_message, and re-raises so the Celery task can decide on a retry.
Enrichment never fails a document.

Every run builds its own RetryStrategy (circuit breakers included),
TimeoutManagers and delay tracker; nothing is shared across documents.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docpipe.core.errors import ExtractionError, ValidationError, classify_error
from docpipe.core.retry import RetryStrategy
from docpipe.enrichment.base import HasContent
from docpipe.enrichment.generator import AIContentGenerator, EnrichmentResult
from docpipe.models.documents import Document, QuizQuestion
from docpipe.observability.tracing import traced
from docpipe.processing.audio import AudioExtractor
from docpipe.processing.chunking import TextChunk, TextChunker, TimeSegment
from docpipe.processing.embeddings import EmbeddingGenerator, EmbeddingRunResult
from docpipe.processing.extractor import PDFExtractor
from docpipe.schemas.enrichment import QuizItem
from docpipe.schemas.processing import DocumentStatus, ProcessingMode, ProcessingRequest
from docpipe.services.processing_log import ProcessingLogger
from docpipe.storage.chunks import ChunkStorage
from docpipe.storage.s3 import ObjectStorageService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

PDF_CONTENT_TYPES = frozenset({"application/pdf", "application/x-pdf"})
MAX_ENRICHMENT_CHUNKS = 5000

_CLAIMABLE = {
    ProcessingMode.REPLACE: (DocumentStatus.PENDING.value, DocumentStatus.FAILED.value),
    ProcessingMode.ADD: (
        DocumentStatus.PENDING.value, DocumentStatus.FAILED.value, DocumentStatus.READY.value,
    ),
}


@dataclass
class ExtractedContent:
    text:          str
    total_pages:   int = 1
    duration:      float | None = None
    time_segments: list[TimeSegment] = field(default_factory=list)
    method:        str = "pdf"
    metadata:      dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    document_id:       uuid.UUID
    document_slug:     str
    status:            str
    chunks_created:    int
    chunk_count:       int
    failed_embeddings: int = 0
    page_count:        int | None = None
    duration_seconds:  float | None = None
    abstract:          bool = False
    keyword_count:     int = 0
    quiz_questions:    int = 0
    elapsed_ms:        float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id":       str(self.document_id),
            "document_slug":     self.document_slug,
            "status":            self.status,
            "chunks_created":    self.chunks_created,
            "chunk_count":       self.chunk_count,
            "failed_embeddings": self.failed_embeddings,
            "page_count":        self.page_count,
            "duration_seconds":  self.duration_seconds,
            "abstract":          self.abstract,
            "keyword_count":     self.keyword_count,
            "quiz_questions":    self.quiz_questions,
            "elapsed_ms":        round(self.elapsed_ms),
        }


class DocumentPipeline:
    """
    Usage:
        pipeline = DocumentPipeline()
        result = await pipeline.process(ProcessingRequest(document_id=doc_id))

    Collaborators may be injected (tests do); by default each run builds
    fresh ones.
    """

    def __init__(
        self,
        *,
        session_factory:  SessionFactory | None = None,
        object_storage:   ObjectStorageService | None = None,
        pdf_extractor:    PDFExtractor | None = None,
        audio_extractor:  AudioExtractor | None = None,
        chunker:          TextChunker | None = None,
        embedder:         EmbeddingGenerator | None = None,
        chunk_storage:    ChunkStorage | None = None,
        enricher:         AIContentGenerator | None = None,
    ) -> None:
        if session_factory is None:
            from docpipe.db.session import get_admin_db
            session_factory = get_admin_db

        self._session_factory = session_factory
        self._object_storage  = object_storage
        self._pdf_extractor   = pdf_extractor
        self._audio_extractor = audio_extractor
        self._chunker         = chunker or TextChunker()
        self._embedder        = embedder
        self._chunk_storage   = chunk_storage
        self._enricher        = enricher

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def process(self, request: ProcessingRequest) -> PipelineResult:
        t0 = time.monotonic()
        retry = RetryStrategy.from_settings()
        document = await self._claim(request)
        plog = ProcessingLogger(
            document.id,
            document.slug,
            method="audio" if document.is_audio else "pdf",
            session_factory=self._session_factory,
        )
        storage = self._chunk_storage or ChunkStorage(self._session_factory, retry=retry)

        logger.info(
            "Pipeline start | doc=%s slug=%s mode=%s content_type=%s",
            document.id, document.slug, request.mode.value, document.content_type,
        )

        try:
            data    = await self._download(document, plog)
            content = await self._extract(document, data, request, plog)
            chunks  = await self._chunk(content, request, plog)
            run     = await self._embed(chunks, retry, plog)
            stored  = await self._store(document, run, request.mode, storage, plog)
        except Exception as exc:
            await self._fail(document, exc, plog)
            raise

        enrichment: EnrichmentResult | None = None
        if request.generate_enrichment:
            enrichment = await self._enrich(document, chunks, request, storage, retry, plog)

        try:
            total = await storage.count(document.slug)
            await self._finish(document, content, total, enrichment)
        except Exception as exc:
            await self._fail(document, exc, plog)
            raise

        result = PipelineResult(
            document_id=document.id,
            document_slug=document.slug,
            status=DocumentStatus.READY.value,
            chunks_created=stored,
            chunk_count=total,
            failed_embeddings=len(run.failures),
            page_count=None if document.is_audio else content.total_pages,
            duration_seconds=content.duration,
            abstract=bool(enrichment and enrichment.abstract),
            keyword_count=len(enrichment.keywords) if enrichment else 0,
            quiz_questions=len(enrichment.quiz) if enrichment and enrichment.quiz else 0,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        await plog.completed("complete", "Document ready", result.to_dict())
        logger.info(
            "Pipeline complete | doc=%s chunks=%d total=%d elapsed_ms=%.0f",
            document.id, stored, total, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Manual quiz retry
    # ------------------------------------------------------------------

    async def regenerate_quiz(self, document_id: uuid.UUID, num_questions: int) -> int:
        """
        Regenerate only the quiz from the stored chunks. Returns the number
        of questions saved (0 when generation failed).
        """
        document = await self._load(document_id)
        if document.status != DocumentStatus.READY.value:
            raise ValidationError(
                f"Document {document_id} is {document.status}; quiz needs a ready document",
            )

        plog    = ProcessingLogger(document.id, document.slug, method="quiz", session_factory=self._session_factory)
        storage = self._chunk_storage or ChunkStorage(self._session_factory)
        chunks  = await storage.get_chunks(document.slug, limit=MAX_ENRICHMENT_CHUNKS)
        if not chunks:
            raise ValidationError(f"Document {document_id} has no stored chunks")

        enricher = self._enricher or AIContentGenerator()
        await plog.started("quiz", f"Generating {num_questions} questions")
        questions = await enricher.generate_quiz(chunks, document.title, num_questions)
        if not questions:
            await plog.failed("quiz", "Quiz generation failed")
            return 0

        await self._save_quiz(document.id, questions)
        await plog.completed("quiz", f"Saved {len(questions)} questions", {"questions": len(questions)})
        return len(questions)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _claim(self, request: ProcessingRequest) -> Document:
        allowed = _CLAIMABLE[request.mode]
        async with self._session_factory() as db:
            result = await db.execute(
                update(Document)
                .where(Document.id == request.document_id, Document.status.in_(allowed))
                .values(status=DocumentStatus.PROCESSING.value, error_message=None)
                .returning(Document)
            )
            document = result.scalar_one_or_none()
            if document is None:
                existing = await db.get(Document, request.document_id)
                if existing is None:
                    raise ValidationError(f"Document {request.document_id} not found")
                raise ValidationError(
                    f"Document {request.document_id} is {existing.status}; "
                    f"mode={request.mode.value} requires one of {', '.join(allowed)}",
                    details={"status": existing.status},
                )
        return document

    async def _load(self, document_id: uuid.UUID) -> Document:
        async with self._session_factory() as db:
            document = await db.get(Document, document_id)
        if document is None:
            raise ValidationError(f"Document {document_id} not found")
        return document

    @traced("pipeline.download")
    async def _download(self, document: Document, plog: ProcessingLogger) -> bytes:
        from docpipe.core.config import settings

        await plog.started("download", f"Downloading {document.source_key}")
        if document.size_bytes and document.size_bytes > settings.max_file_size_bytes:
            raise ValidationError(
                f"File is {document.size_bytes} bytes; limit is {settings.max_file_size_bytes}",
            )
        object_storage = self._object_storage or ObjectStorageService()
        data = await object_storage.download(document.source_key)
        await plog.completed("download", "Downloaded", {"size_bytes": len(data)})
        return data

    @traced("pipeline.extract")
    async def _extract(
        self,
        document: Document,
        data:     bytes,
        request:  ProcessingRequest,
        plog:     ProcessingLogger,
    ) -> ExtractedContent:
        if document.is_audio:
            await plog.started("transcribe", f"Transcribing with {request.transcription_provider}")
            extractor  = self._audio_extractor or AudioExtractor(provider=request.transcription_provider)
            file_name  = document.source_key.rsplit("/", 1)[-1]
            transcript = await extractor.transcribe(data, document.content_type, file_name)
            await plog.completed("transcribe", "Transcribed", {
                "duration_seconds": transcript.duration,
                "segments":         len(transcript.segments),
                "characters":       len(transcript.text),
            })
            return ExtractedContent(
                text=transcript.text,
                duration=transcript.duration,
                time_segments=transcript.segments,
                method="audio",
                metadata={"transcription_provider": request.transcription_provider},
            )

        if document.content_type not in PDF_CONTENT_TYPES:
            raise ExtractionError(f"Unsupported content type: {document.content_type}")

        await plog.started("extract", "Extracting PDF text")
        extraction = await (self._pdf_extractor or PDFExtractor()).extract(data)
        await plog.completed("extract", f"Extracted {extraction.pages} pages", extraction.metadata)
        return ExtractedContent(
            text=extraction.text,
            total_pages=extraction.pages,
            method="pdf",
            metadata=extraction.metadata,
        )

    async def _chunk(
        self,
        content: ExtractedContent,
        request: ProcessingRequest,
        plog:    ProcessingLogger,
    ) -> list[TextChunk]:
        await plog.started("chunk", f"Chunking (size={request.chunk_size}, overlap={request.chunk_overlap})")
        chunks = self._chunker.chunk(
            content.text,
            chunk_size_tokens=request.chunk_size,
            overlap_tokens=request.chunk_overlap,
            total_pages=content.total_pages,
            time_segments=content.time_segments or None,
        )
        await plog.completed("chunk", f"Created {len(chunks)} chunks", {"chunks": len(chunks)})
        return chunks

    @traced("pipeline.embed")
    async def _embed(
        self,
        chunks: list[TextChunk],
        retry:  RetryStrategy,
        plog:   ProcessingLogger,
    ) -> EmbeddingRunResult:
        embedder = self._embedder or EmbeddingGenerator(retry=retry)
        await plog.started("embed", f"Embedding {len(chunks)} chunks")

        async def on_progress(batch: int, total: int, percent: int) -> None:
            await plog.progress("embed", f"Batch {batch}/{total}", {"percent": percent})

        run = await embedder.embed_all(chunks, on_progress=on_progress)
        await plog.completed("embed", f"Embedded {len(run.successes)}/{run.total_chunks} chunks", {
            "succeeded":    len(run.successes),
            "failed":       len(run.failures),
            "success_rate": round(run.success_rate, 4),
        })
        return run

    @traced("pipeline.store")
    async def _store(
        self,
        document: Document,
        run:      EmbeddingRunResult,
        mode:     ProcessingMode,
        storage:  ChunkStorage,
        plog:     ProcessingLogger,
    ) -> int:
        await plog.started("store", f"Storing {len(run.successes)} chunks ({mode.value})")
        stored = await storage.store(document.id, document.slug, run.successes, mode=mode.value)
        await plog.completed("store", f"Stored {stored} chunks", {"stored": stored})
        return stored

    @traced("pipeline.enrich")
    async def _enrich(
        self,
        document: Document,
        chunks:   list[TextChunk],
        request:  ProcessingRequest,
        storage:  ChunkStorage,
        retry:    RetryStrategy,
        plog:     ProcessingLogger,
    ) -> EnrichmentResult | None:
        enricher = self._enricher or AIContentGenerator(retry=retry)

        # add mode enriches the whole document, not just the appended part
        source: Sequence[HasContent] = chunks
        try:
            if request.mode is ProcessingMode.ADD:
                source = await storage.get_chunks(document.slug, limit=MAX_ENRICHMENT_CHUNKS)

            await plog.progress("chunk", "Generating abstract and keywords")
            if request.quiz_questions:
                await plog.started("quiz", f"Generating {request.quiz_questions} questions")

            result = await enricher.generate_all(source, document.title, request.quiz_questions)

            if request.quiz_questions:
                if result.quiz:
                    await self._save_quiz(document.id, result.quiz)
                    await plog.completed("quiz", f"Saved {len(result.quiz)} questions")
                else:
                    await plog.failed("quiz", "Quiz generation failed; document continues without a quiz")
        except Exception as exc:
            error = classify_error(exc)
            logger.error("Enrichment failed | doc=%s error=%s", document.id, error)
            await plog.progress("chunk", f"Enrichment skipped: {error}")
            return None

        await plog.progress("chunk", "Enrichment finished", {
            "abstract":       result.abstract is not None,
            "keywords":       len(result.keywords),
            "keyword_source": result.keyword_source,
        })
        return result

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _save_quiz(self, document_id: uuid.UUID, questions: Sequence[QuizItem]) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(QuizQuestion).where(QuizQuestion.document_id == document_id))
            await db.execute(insert(QuizQuestion), [
                {
                    "document_id":    document_id,
                    "question_index": i,
                    "question":       q.question,
                    "options":        q.options,
                    "correct_answer": q.correct_answer,
                }
                for i, q in enumerate(questions)
            ])
            await db.execute(update(Document).where(Document.id == document_id).values(has_quiz=True))

    async def _finish(
        self,
        document:   Document,
        content:    ExtractedContent,
        total:      int,
        enrichment: EnrichmentResult | None,
    ) -> None:
        values: dict[str, Any] = {
            "status":        DocumentStatus.READY.value,
            "chunk_count":   total,
            "error_message": None,
            "doc_metadata":  {
                **(document.doc_metadata or {}),
                "processing_method": content.method,
                **content.metadata,
            },
        }
        if content.duration is not None:
            values["duration_seconds"] = content.duration
        else:
            values["page_count"] = content.total_pages

        if enrichment is not None:
            if enrichment.abstract:
                values["abstract"] = enrichment.abstract
            if enrichment.keywords:
                values["keywords"] = [k.to_dict() for k in enrichment.keywords]
                values["doc_metadata"]["keyword_source"] = enrichment.keyword_source

        async with self._session_factory() as db:
            await db.execute(update(Document).where(Document.id == document.id).values(**values))

    async def _fail(self, document: Document, exc: BaseException, plog: ProcessingLogger) -> None:
        error = classify_error(exc)
        await plog.error(error)
        logger.error("Pipeline failed | doc=%s error=%s", document.id, error)
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Document)
                    .where(Document.id == document.id)
                    .values(status=DocumentStatus.FAILED.value, error_message=str(error)[:2000])
                )
        except Exception as db_exc:
            logger.error("Could not mark document failed | doc=%s error=%s", document.id, db_exc)


async def get_document(db: AsyncSession, document_id: uuid.UUID) -> Document | None:
    result = await db.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()
