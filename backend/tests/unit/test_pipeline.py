"""
Unit Tests — DocumentPipeline
═════════════════════════════
Full runs with every collaborator injected:

  session_factory  FakeSessionFactory; execute() always returns a result
                   whose scalar_one_or_none() is the claimed Document
  object_storage   AsyncMock download
  pdf / audio      AsyncMock extractors
  chunker          real TextChunker
  embedder         real EmbeddingGenerator on the fake OpenAI client
  chunk_storage    MagicMock(spec=ChunkStorage)
  enricher         real AIContentGenerator on FakeChatFactory
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import Insert, Update
from sqlalchemy.dialects import postgresql

from docpipe.core.errors import ExtractionError, PDFExtractionError, ValidationError
from docpipe.enrichment import AIContentGenerator
from docpipe.models.documents import Document
from docpipe.processing.audio import Transcript
from docpipe.processing.chunking import TimeSegment
from docpipe.processing.embeddings import EmbeddingGenerator
from docpipe.processing.extractor import ExtractionResult, add_page_markers
from docpipe.schemas.processing import ProcessingRequest
from docpipe.services.pipeline import DocumentPipeline, PipelineResult
from docpipe.storage.chunks import ChunkStorage
from tests.conftest import TEST_DIMENSIONS, FakeChatFactory, quiz_payload, scalar_result


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _document(document_id, content_type="application/pdf", status="processing", **overrides) -> Document:
    fields = dict(
        id=document_id,
        slug="q3-report",
        title="Q3 Report",
        source_key="uploads/q3-report.pdf",
        content_type=content_type,
        size_bytes=2048,
        status=status,
        doc_metadata={"uploaded_by": "ops"},
    )
    fields.update(overrides)
    return Document(**fields)


def _statements(session_factory) -> list:
    return [c.args[0] for c in session_factory.db.execute.await_args_list]


def _document_updates(session_factory) -> list[dict]:
    dialect = postgresql.dialect()
    return [
        stmt.compile(dialect=dialect).params
        for stmt in _statements(session_factory)
        if isinstance(stmt, Update) and stmt.table.name == "documents"
    ]


def _log_events(session_factory) -> list[tuple[str, str]]:
    return [(row.stage, row.status) for row in (c.args[0] for c in session_factory.db.add.call_args_list)]


def _chat() -> FakeChatFactory:
    return FakeChatFactory(
        abstract="The report covers quarterly search metrics.",
        keywords={"keywords": [{"term": "semantic search", "weight": 0.9}, {"term": "latency", "weight": 0.4}]},
        quiz=quiz_payload(2),
    )


@pytest.fixture
def chunk_storage():
    storage = MagicMock(spec=ChunkStorage)
    storage.store      = AsyncMock(side_effect=lambda doc_id, slug, items, mode: len(items))
    storage.count      = AsyncMock(return_value=42)
    storage.get_chunks = AsyncMock(return_value=[])
    return storage


@pytest.fixture
def pipeline_for(session_factory, embeddings_client, fast_retry, chunk_storage, sample_text):
    """Build a DocumentPipeline around a given Document row."""

    def _build(document: Document, chat: FakeChatFactory | None = None, **overrides) -> DocumentPipeline:
        session_factory.db.execute = AsyncMock(return_value=scalar_result(document))
        session_factory.db.get     = AsyncMock(return_value=document)

        object_storage = MagicMock()
        object_storage.download = AsyncMock(return_value=b"%PDF-1.7 fake")

        pdf_extractor = MagicMock()
        pdf_extractor.extract = AsyncMock(return_value=ExtractionResult(
            text=add_page_markers([sample_text, sample_text]),
            pages=2,
            metadata={"extraction_method": "pymupdf"},
        ))

        params = dict(
            session_factory=session_factory,
            object_storage=object_storage,
            pdf_extractor=pdf_extractor,
            audio_extractor=MagicMock(),
            embedder=EmbeddingGenerator(
                client=embeddings_client,
                model="text-embedding-3-small",
                dimensions=TEST_DIMENSIONS,
                batch_size=50,
                timeout=5.0,
                retry=fast_retry,
            ),
            chunk_storage=chunk_storage,
            enricher=AIContentGenerator(llm_factory=chat or _chat(), retry=fast_retry),
        )
        params.update(overrides)
        return DocumentPipeline(**params)

    return _build


def _request(document_id, **kwargs) -> ProcessingRequest:
    params = dict(document_id=document_id, chunk_size=100, chunk_overlap=10, quiz_questions=2)
    params.update(kwargs)
    return ProcessingRequest(**params)


# ─────────────────────────────────────────────────────────────────────────────
# Happy paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestPdfRun:

    async def test_document_becomes_ready(self, pipeline_for, session_factory, chunk_storage, test_document_id):
        pipeline = pipeline_for(_document(test_document_id))

        result = await pipeline.process(_request(test_document_id))

        assert isinstance(result, PipelineResult)
        assert result.status == "ready"
        assert result.chunk_count == 42
        assert result.chunks_created == len(chunk_storage.store.await_args.args[2])
        assert result.page_count == 2
        assert result.abstract is True
        assert result.quiz_questions == 2
        assert chunk_storage.store.await_args.kwargs["mode"] == "replace"

        final = _document_updates(session_factory)[-1]
        assert final["status"] == "ready"
        assert final["chunk_count"] == 42
        assert final["page_count"] == 2
        assert final["abstract"] == "The report covers quarterly search metrics."
        assert final["keywords"][0] == {"term": "semantic search", "weight": 1.0}

    async def test_every_stage_is_logged(self, pipeline_for, session_factory, test_document_id):
        await pipeline_for(_document(test_document_id)).process(_request(test_document_id))

        events = _log_events(session_factory)
        for stage in ("download", "extract", "chunk", "embed", "store", "quiz"):
            assert (stage, "started") in events
        assert ("embed", "progress") in events
        assert events[-1] == ("complete", "completed")

    async def test_quiz_rows_replaced(self, pipeline_for, session_factory, test_document_id):
        await pipeline_for(_document(test_document_id)).process(_request(test_document_id))

        quiz_inserts = [
            c.args[1] for c in session_factory.db.execute.await_args_list
            if isinstance(c.args[0], Insert) and c.args[0].table.name == "quiz_questions"
        ]
        assert len(quiz_inserts) == 1
        assert [row["question_index"] for row in quiz_inserts[0]] == [0, 1]

    async def test_enrichment_can_be_disabled(self, pipeline_for, session_factory, test_document_id):
        chat = _chat()
        result = await pipeline_for(_document(test_document_id), chat=chat).process(
            _request(test_document_id, generate_enrichment=False),
        )
        assert chat.calls == []
        assert result.abstract is False
        assert "abstract" not in _document_updates(session_factory)[-1]

    async def test_add_mode_enriches_from_stored_chunks(
        self, pipeline_for, chunk_storage, make_chunks, test_document_id,
    ):
        chunk_storage.get_chunks.return_value = make_chunks(["earlier part", "appended part"])
        chat = _chat()

        await pipeline_for(_document(test_document_id, status="ready"), chat=chat).process(
            _request(test_document_id, mode="add", quiz_questions=0),
        )

        assert chunk_storage.store.await_args.kwargs["mode"] == "add"
        chunk_storage.get_chunks.assert_awaited_once()
        assert any("earlier part" in prompt for prompt in chat.prompts)


@pytest.mark.unit
@pytest.mark.pipeline
class TestAudioRun:

    async def test_transcript_is_chunked_with_times(
        self, pipeline_for, session_factory, chunk_storage, test_document_id,
    ):
        words = [f"part{i:02d} " * 30 for i in range(10)]
        audio_extractor = MagicMock()
        audio_extractor.transcribe = AsyncMock(return_value=Transcript(
            text="".join(words),
            segments=[TimeSegment(i * 6.0, (i + 1) * 6.0, w.strip()) for i, w in enumerate(words)],
            duration=60.0,
        ))
        document = _document(test_document_id, content_type="audio/mpeg", source_key="uploads/talk.mp3")

        result = await pipeline_for(document, audio_extractor=audio_extractor).process(
            _request(test_document_id, quiz_questions=0),
        )

        assert audio_extractor.transcribe.await_args.args[1:] == ("audio/mpeg", "talk.mp3")

        stored_items = chunk_storage.store.await_args.args[2]
        assert stored_items[0].chunk.start_time == 0.0
        assert result.duration_seconds == 60.0
        assert result.page_count is None

        final = _document_updates(session_factory)[-1]
        assert final["duration_seconds"] == 60.0
        assert "page_count" not in final
        assert ("transcribe", "completed") in _log_events(session_factory)


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestFailures:

    async def test_extraction_failure_marks_document_failed(self, pipeline_for, session_factory, test_document_id):
        pipeline = pipeline_for(_document(test_document_id))
        pipeline._pdf_extractor.extract.side_effect = PDFExtractionError("No text could be extracted")

        with pytest.raises(PDFExtractionError):
            await pipeline.process(_request(test_document_id))

        final = _document_updates(session_factory)[-1]
        assert final["status"] == "failed"
        assert "No text could be extracted" in final["error_message"]
        assert ("error", "failed") in _log_events(session_factory)

    async def test_unsupported_content_type(self, pipeline_for, session_factory, test_document_id):
        pipeline = pipeline_for(_document(test_document_id, content_type="image/png"))

        with pytest.raises(ExtractionError, match="Unsupported content type"):
            await pipeline.process(_request(test_document_id))
        assert _document_updates(session_factory)[-1]["status"] == "failed"

    async def test_oversized_file_rejected_before_download(self, pipeline_for, test_document_id):
        pipeline = pipeline_for(_document(test_document_id, size_bytes=10 * 1024 ** 3))

        with pytest.raises(ValidationError):
            await pipeline.process(_request(test_document_id))
        pipeline._object_storage.download.assert_not_awaited()

    async def test_storage_failure_is_constitutive(self, pipeline_for, session_factory, chunk_storage, test_document_id):
        from docpipe.core.errors import DatabaseError

        chunk_storage.store.side_effect = DatabaseError("No chunks were stored")
        with pytest.raises(DatabaseError):
            await pipeline_for(_document(test_document_id)).process(_request(test_document_id))
        assert _document_updates(session_factory)[-1]["status"] == "failed"

    async def test_enrichment_failure_does_not_fail_document(self, pipeline_for, session_factory, test_document_id):
        enricher = MagicMock(spec=AIContentGenerator)
        enricher.generate_all = AsyncMock(side_effect=RuntimeError("enrichment crashed"))

        result = await pipeline_for(_document(test_document_id), enricher=enricher).process(
            _request(test_document_id),
        )

        assert result.status == "ready"
        assert result.abstract is False
        assert _document_updates(session_factory)[-1]["status"] == "ready"

    async def test_document_in_processing_cannot_be_claimed(self, pipeline_for, session_factory, test_document_id):
        document = _document(test_document_id, status="processing")
        pipeline = pipeline_for(document)
        session_factory.db.execute = AsyncMock(return_value=scalar_result(None))

        with pytest.raises(ValidationError, match="processing"):
            await pipeline.process(_request(test_document_id))

    async def test_missing_document(self, pipeline_for, session_factory, test_document_id):
        pipeline = pipeline_for(_document(test_document_id))
        session_factory.db.execute = AsyncMock(return_value=scalar_result(None))
        session_factory.db.get     = AsyncMock(return_value=None)

        with pytest.raises(ValidationError, match="not found"):
            await pipeline.process(_request(test_document_id))


# ─────────────────────────────────────────────────────────────────────────────
# Quiz regeneration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.pipeline
class TestRegenerateQuiz:

    async def test_saves_new_questions(self, pipeline_for, session_factory, chunk_storage, make_chunks, test_document_id):
        chunk_storage.get_chunks.return_value = make_chunks(3)
        chat = FakeChatFactory(quiz=quiz_payload(4))
        pipeline = pipeline_for(_document(test_document_id, status="ready"), chat=chat)

        saved = await pipeline.regenerate_quiz(test_document_id, 4)

        assert saved == 4
        assert ("quiz", "completed") in _log_events(session_factory)

    async def test_requires_ready_document(self, pipeline_for, test_document_id):
        pipeline = pipeline_for(_document(test_document_id, status="pending"))
        with pytest.raises(ValidationError, match="ready"):
            await pipeline.regenerate_quiz(test_document_id, 3)

    async def test_requires_stored_chunks(self, pipeline_for, test_document_id):
        pipeline = pipeline_for(_document(test_document_id, status="ready"))
        with pytest.raises(ValidationError, match="no stored chunks"):
            await pipeline.regenerate_quiz(test_document_id, 3)

    async def test_generation_failure_returns_zero(
        self, pipeline_for, session_factory, chunk_storage, make_chunks, test_document_id,
    ):
        chunk_storage.get_chunks.return_value = make_chunks(2)
        chat = FakeChatFactory(quiz=RuntimeError("model down"))
        pipeline = pipeline_for(_document(test_document_id, status="ready"), chat=chat)

        assert await pipeline.regenerate_quiz(test_document_id, 3) == 0
        assert ("quiz", "failed") in _log_events(session_factory)
