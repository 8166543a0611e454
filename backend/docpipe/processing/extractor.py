"""
PDF Text Extraction
═══════════════════

Reader cascade:
  1.  PyMuPDF  (fast, in-process, native PDF text layer)
  2.  pypdf    (pure Python; used when PyMuPDF cannot open the file)

Output format:
  Page texts are cleaned and joined with inline citation markers that the
  chunker later uses for page attribution:

      [Page 1]
      first page text

      [Page 2]
      second page text

Image-only pages contribute an empty body but still get their marker, so
page numbering stays aligned with the physical document.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from docpipe.core.errors import PDFExtractionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text     : full text with "[Page N]" markers
    pages    : physical page count
    metadata : extraction_method, total_characters, average_chars_per_page
    """
    text:     str
    pages:    int
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

class BasePDFReader(ABC):

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def read_pages(self, data: bytes) -> list[str]:
        """Blocking: return raw text per page, in page order."""


class PyMuPDFReader(BasePDFReader):

    @property
    def name(self) -> str:
        return "pymupdf"

    def read_pages(self, data: bytes) -> list[str]:
        import fitz  # PyMuPDF

        with fitz.open(stream=data, filetype="pdf") as doc:
            return [page.get_text("text") or "" for page in doc]


class PyPDFReader(BasePDFReader):

    @property
    def name(self) -> str:
        return "pypdf"

    def read_pages(self, data: bytes) -> list[str]:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        return [page.extract_text() or "" for page in reader.pages]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class PDFExtractor:
    """
    Usage:
        result = await PDFExtractor().extract(pdf_bytes)
        result.text   # "[Page 1]\\n..."
        result.pages  # 12
    """

    def __init__(self, readers: list[BasePDFReader] | None = None) -> None:
        self._readers = readers or [PyMuPDFReader(), PyPDFReader()]

    async def extract(self, data: bytes) -> ExtractionResult:
        if not data:
            raise PDFExtractionError("PDF payload is empty")

        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        last_error: Exception | None = None

        for reader in self._readers:
            try:
                raw_pages = await loop.run_in_executor(None, reader.read_pages, data)
            except Exception as exc:
                logger.warning("PDF reader failed | reader=%s error=%s", reader.name, exc)
                last_error = exc
                continue
            return self._build_result(raw_pages, reader.name, time.monotonic() - t0)

        raise PDFExtractionError(
            f"Could not read PDF: {last_error}",
            details={"readers": [r.name for r in self._readers]},
        ) from last_error

    def _build_result(self, raw_pages: list[str], method: str, elapsed: float) -> ExtractionResult:
        if not raw_pages:
            raise PDFExtractionError("PDF contains no pages")

        text = add_page_markers([clean_pdf_text(p) for p in raw_pages])
        body_chars = len(_PAGE_MARKER_LINE_RE.sub("", text).strip())
        if body_chars == 0:
            raise PDFExtractionError(
                "No text could be extracted from PDF (image-only or encrypted?)",
                details={"pages": len(raw_pages)},
            )

        metadata = {
            "extraction_method":      method,
            "total_characters":       len(text),
            "average_chars_per_page": round(len(text) / len(raw_pages)),
        }
        logger.info(
            "PDFExtractor | reader=%s pages=%d chars=%d elapsed_ms=%.0f",
            method, len(raw_pages), len(text), elapsed * 1000,
        )
        return ExtractionResult(text=text, pages=len(raw_pages), metadata=metadata)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PAGE_MARKER_LINE_RE = re.compile(r"\[Page \d+\]")


def clean_pdf_text(text: str) -> str:
    """Collapse blank runs, trim every line, drop empty lines."""
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def add_page_markers(pages: list[str]) -> str:
    parts: list[str] = []
    for page_num, page_text in enumerate(pages, start=1):
        prefix = f"[Page {page_num}]\n" if page_num == 1 else f"\n\n[Page {page_num}]\n"
        parts.append(prefix + page_text)
    return "".join(parts)
