"""
Text Chunker  —  Sliding-Window Segmentation
═════════════════════════════════════════════

Window model
────────────
  Token length is approximated as characters / CHARS_PER_TOKEN (no
  tokenizer dependency). A window of chunk_size × 4 characters slides over
  the text with a step of (chunk_size − overlap) × 4, so adjacent chunks
  share exactly overlap × 4 characters.

    text:   |----------------------------------------------|
    c0:     |==========|
    c1:             |==========|
    c2:                     |==========|
                    ^^^ overlap

  Windows containing only whitespace are skipped; chunk indices stay
  contiguous over the chunks that are kept.

Page attribution
────────────────
  The PDF extractor writes "[Page N]" markers into the text. A chunk's page
  is the LAST marker inside its window (the page the chunk ends on), else
  the last marker before the window, else page 1. Always clamped to
  [1, total_pages].

Time attribution (audio)
────────────────────────
  Transcripts carry timed segments. Each segment's text is located in the
  transcript in order; a chunk takes the start of the first overlapping
  segment and the end of the last one. See map_chars_to_time_range().
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from docpipe.core.errors import ProcessingError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN  = 4
MIN_CHUNK_TOKENS = 100
MAX_CHUNK_TOKENS = 5000

_PAGE_MARKER_RE = re.compile(r"\[Page (\d+)\]")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeSegment:
    start: float    # seconds
    end:   float
    text:  str


@dataclass(frozen=True)
class PageMarker:
    page:     int
    position: int   # char offset of "[Page N]"


@dataclass
class TextChunk:
    """A window of source text, ready for embedding."""
    index:              int            # 0-based, contiguous over kept chunks
    content:            str            # stripped window text
    char_start:         int            # raw window bounds in the source text
    char_end:           int
    page_number:        int            # 1..total_pages
    page_markers_found: int            # markers in the whole document
    start_time:         float | None = None   # audio only
    end_time:           float | None = None
    metadata:           dict = field(default_factory=dict)

    @property
    def tokens_approx(self) -> int:
        return round(len(self.content) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless sliding-window chunker.

    Usage:
        chunks = TextChunker().chunk(
            text=extraction.text,
            chunk_size_tokens=500,
            overlap_tokens=100,
            total_pages=extraction.pages,
        )
    """

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self._chars_per_token = chars_per_token

    def chunk(
        self,
        text:              str,
        chunk_size_tokens: int,
        overlap_tokens:    int,
        total_pages:       int = 1,
        time_segments:     list[TimeSegment] | None = None,
    ) -> list[TextChunk]:
        _validate(text, chunk_size_tokens, overlap_tokens)

        chunk_chars = chunk_size_tokens * self._chars_per_token
        step_chars  = (chunk_size_tokens - overlap_tokens) * self._chars_per_token
        total_pages = max(1, total_pages)

        markers   = find_page_markers(text)
        locations = locate_segments(text, time_segments) if time_segments else []

        chunks: list[TextChunk] = []
        start = 0
        while start < len(text):
            end    = min(start + chunk_chars, len(text))
            window = text[start:end]

            if window.strip():
                start_time = end_time = None
                if locations:
                    start_time, end_time = map_chars_to_time_range(start, end, locations)

                chunks.append(TextChunk(
                    index=len(chunks),
                    content=window.strip(),
                    char_start=start,
                    char_end=end,
                    page_number=page_for_range(start, end, markers, total_pages),
                    page_markers_found=len(markers),
                    start_time=start_time,
                    end_time=end_time,
                ))

            if end >= len(text):
                break
            start += step_chars

        if not chunks:
            raise ProcessingError("No chunks produced from text")

        logger.info(
            "TextChunker | chunks=%d size=%d overlap=%d markers=%d pages=%d timed=%s",
            len(chunks), chunk_size_tokens, overlap_tokens,
            len(markers), total_pages, bool(locations),
        )
        return chunks


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate(text: str, chunk_size_tokens: int, overlap_tokens: int) -> None:
    if not text or not text.strip():
        raise ValidationError("Text is empty or whitespace-only")
    if not MIN_CHUNK_TOKENS <= chunk_size_tokens <= MAX_CHUNK_TOKENS:
        raise ValidationError(
            f"chunk_size_tokens must be between {MIN_CHUNK_TOKENS} and {MAX_CHUNK_TOKENS}, "
            f"got {chunk_size_tokens}"
        )
    if not 0 <= overlap_tokens < chunk_size_tokens:
        raise ValidationError(
            f"overlap_tokens must be >= 0 and < chunk_size_tokens, got {overlap_tokens}"
        )


def find_page_markers(text: str) -> list[PageMarker]:
    return [
        PageMarker(page=int(m.group(1)), position=m.start())
        for m in _PAGE_MARKER_RE.finditer(text)
    ]


def page_for_range(
    start:       int,
    end:         int,
    markers:     list[PageMarker],
    total_pages: int,
) -> int:
    """Last marker inside [start, end), else last marker before start, else 1."""
    page = 1
    for marker in markers:
        if marker.position < end:
            page = marker.page
        else:
            break
    return min(max(1, page), max(1, total_pages))


def locate_segments(
    text:     str,
    segments: list[TimeSegment],
) -> list[tuple[int, int, TimeSegment]]:
    """
    Find each segment's (start, end) char offset in the transcript.

    Segments are searched in order starting where the previous one ended, so
    a phrase repeated later in the recording maps to the right occurrence.
    Segments whose text cannot be found are skipped.
    """
    located: list[tuple[int, int, TimeSegment]] = []
    cursor = 0
    for segment in segments:
        needle = segment.text.strip()
        if not needle:
            continue
        pos = text.find(needle, cursor)
        if pos == -1:
            continue
        located.append((pos, pos + len(needle), segment))
        cursor = pos + len(needle)
    return located


def map_chars_to_time_range(
    char_start: int,
    char_end:   int,
    located:    list[tuple[int, int, TimeSegment]],
) -> tuple[float | None, float | None]:
    """
    Map a character window onto audio time.

    Overlapping segments give (first.start, last.end). With no overlap, fall
    back to the nearest preceding / following segment.
    """
    if not located:
        return None, None

    overlapping = [seg for s, e, seg in located if s < char_end and e > char_start]
    if overlapping:
        return overlapping[0].start, overlapping[-1].end

    before = [seg for s, e, seg in located if e <= char_start]
    after  = [seg for s, e, seg in located if s >= char_end]

    if before and after:
        return before[-1].start, after[0].end
    if before:
        return before[-1].start, before[-1].end
    if after:
        return after[0].start, after[0].end
    return None, None
