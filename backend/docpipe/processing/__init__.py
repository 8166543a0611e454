"""
Document Processing Package
════════════════════════════

Turns an uploaded file into embedded chunks:

  PDF / Audio Extraction → Sliding-Window Chunking → Batched Embedding

Modules
───────
  extractor.py   PDF text with [Page N] markers (PyMuPDF → pypdf cascade)
  audio.py       Whisper-compatible transcription with ffmpeg splitting
  chunking.py    Token-approximate sliding window with page / time mapping
  embeddings.py  Sequential batches, adaptive pacing, per-chunk fallback
"""

from docpipe.processing.audio import AudioExtractor, Transcript
from docpipe.processing.chunking import TextChunk, TextChunker, TimeSegment
from docpipe.processing.embeddings import EmbeddingGenerator, EmbeddingRunResult
from docpipe.processing.extractor import ExtractionResult, PDFExtractor

__all__ = [
    "AudioExtractor",
    "Transcript",
    "TextChunk",
    "TextChunker",
    "TimeSegment",
    "EmbeddingGenerator",
    "EmbeddingRunResult",
    "ExtractionResult",
    "PDFExtractor",
]
