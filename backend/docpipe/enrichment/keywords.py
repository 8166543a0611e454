"""
Keyword Generation — LLM keywords with full document coverage

Batching:
  Chunks are grouped greedily so each batch stays under
  ai_keyword_max_chars_per_batch characters. Every chunk lands in exactly
  one batch (a single oversized chunk gets a batch of its own and is
  truncated in the prompt). Batches run concurrently.

Per-batch deadline:
  min(max(keyword_base_timeout, chunks_in_batch * per_chunk), keyword_max_timeout)

Merge (merge_keyword_batches):
  - key by lowercased term, running-average weight
  - boost min(0.5, (occurrences - 1) * 0.05), applied as min(1, avg * (1 + boost))
  - sort desc, keep MAX_KEYWORDS, min-max normalize onto 0.1..1.0

A failed batch contributes nothing. When every batch fails the offline
FrequencyKeywordExtractor runs over the full text instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from pydantic import ValidationError as SchemaValidationError

from docpipe.core.errors import ValidationError
from docpipe.core.retry import RetryStrategy
from docpipe.core.timeouts import TimeoutManager
from docpipe.enrichment.base import HasContent, Keyword, document_text
from docpipe.enrichment.keyword_fallback import FrequencyKeywordExtractor
from docpipe.llm.chat import ChatModelFactory, build_chat_model, complete
from docpipe.schemas.enrichment import KeywordResponse

logger = logging.getLogger(__name__)

MAX_KEYWORDS          = 30
KEYWORD_MAX_TOKENS    = 800
BOOST_PER_OCCURRENCE  = 0.05
MAX_BOOST             = 0.5
BATCH_SEPARATOR_CHARS = 2

KEYWORD_SYSTEM_PROMPT = (
    "You extract search keywords from documents. Return a JSON object of the form "
    '{"keywords": [{"term": "<keyword or short phrase>", "weight": <0.1-1.0>}]} '
    "with 20 to 30 entries. Weight reflects how central the term is to the text. "
    "Prefer specific domain terms and multi-word phrases over generic words."
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def batch_by_char_budget(chunks: Sequence[HasContent], max_chars: int) -> list[list[HasContent]]:
    """Greedy in-order grouping; every chunk appears in exactly one batch."""
    batches: list[list[HasContent]] = []
    current: list[HasContent] = []
    size = 0

    for chunk in chunks:
        length = len(chunk.content) + BATCH_SEPARATOR_CHARS
        if current and size + length > max_chars:
            batches.append(current)
            current, size = [], 0
        current.append(chunk)
        size += length

    if current:
        batches.append(current)
    return batches


def normalize_weights(keywords: list[Keyword]) -> list[Keyword]:
    """Min-max onto 0.1..1.0; all-equal weights become 0.5."""
    if not keywords:
        return []
    lo = min(k.weight for k in keywords)
    hi = max(k.weight for k in keywords)
    if hi == lo:
        return [Keyword(k.term, 0.5) for k in keywords]
    return [
        Keyword(k.term, round(0.1 + (k.weight - lo) / (hi - lo) * 0.9, 4))
        for k in keywords
    ]


def combine_keyword_batches(batches: Sequence[Sequence[Keyword]]) -> list[Keyword]:
    """Running average per term plus a repeat boost, before normalization."""
    averages:    dict[str, float] = {}
    occurrences: dict[str, int]   = {}

    for batch in batches:
        for keyword in batch:
            term = keyword.term.strip().lower()
            if not term:
                continue
            n = occurrences.get(term, 0) + 1
            prev = averages.get(term, 0.0)
            averages[term]    = prev + (keyword.weight - prev) / n
            occurrences[term] = n

    boosted = []
    for term, avg in averages.items():
        boost = min(MAX_BOOST, (occurrences[term] - 1) * BOOST_PER_OCCURRENCE)
        boosted.append(Keyword(term, min(1.0, avg * (1 + boost))))

    boosted.sort(key=lambda k: (-k.weight, k.term))
    return boosted


def merge_keyword_batches(batches: Sequence[Sequence[Keyword]], limit: int = MAX_KEYWORDS) -> list[Keyword]:
    return normalize_weights(combine_keyword_batches(batches)[:limit])


def parse_keyword_response(raw: str) -> list[Keyword]:
    try:
        parsed = KeywordResponse.model_validate_json(raw)
    except SchemaValidationError as exc:
        raise ValidationError(
            "Keyword response did not match the expected schema",
            details={"errors": exc.error_count()},
        ) from exc
    return [Keyword(item.term, item.weight) for item in parsed.keywords]


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class KeywordGenerator:
    """
    Usage:
        keywords = await KeywordGenerator().generate(chunks, title="Q3 report")
        source   = generator.last_source      # "llm" | "frequency"
    """

    def __init__(
        self,
        llm_factory: ChatModelFactory | None = None,
        retry:       RetryStrategy | None = None,
        timeouts:    TimeoutManager | None = None,
        fallback:    FrequencyKeywordExtractor | None = None,
    ) -> None:
        from docpipe.core.config import settings

        self._llm_factory   = llm_factory or build_chat_model
        self._retry         = retry or RetryStrategy.from_settings()
        self._timeouts      = timeouts or TimeoutManager("keywords")
        self._fallback      = fallback or FrequencyKeywordExtractor(
            use_stemming=settings.keyword_stemming_enabled,
        )
        self._max_chars     = settings.ai_keyword_max_chars_per_batch
        self._min_timeout   = settings.keyword_base_timeout
        self._per_chunk     = settings.keyword_per_chunk_timeout
        self._max_timeout   = settings.keyword_max_timeout
        self.last_source    = "llm"

    def timeout_for(self, batch_chunk_count: int) -> float:
        return min(max(self._min_timeout, batch_chunk_count * self._per_chunk), self._max_timeout)

    async def generate(self, chunks: Sequence[HasContent], title: str = "") -> list[Keyword]:
        if not chunks:
            return []

        t0 = time.monotonic()
        batches = batch_by_char_budget(chunks, self._max_chars)
        results = await asyncio.gather(
            *(self._generate_batch(batch, title, i, len(batches)) for i, batch in enumerate(batches, start=1))
        )
        merged = merge_keyword_batches(results)

        if merged:
            self.last_source = "llm"
            logger.info(
                "Keywords generated | title=%s batches=%d failed_batches=%d keywords=%d elapsed_ms=%.0f",
                title, len(batches), sum(1 for r in results if not r), len(merged),
                (time.monotonic() - t0) * 1000,
            )
            return merged

        self.last_source = "frequency"
        logger.warning("Keyword batches all failed; using frequency fallback | title=%s", title)
        return self._fallback.extract("\n\n".join(c.content for c in chunks))

    async def _generate_batch(
        self,
        batch:        list[HasContent],
        title:        str,
        batch_number: int,
        total:        int,
    ) -> list[Keyword]:
        text    = document_text(batch, self._max_chars)
        timeout = self.timeout_for(len(batch))
        llm     = self._llm_factory(max_tokens=KEYWORD_MAX_TOKENS, json_mode=True)
        prompt  = (
            f"Title: {title}\n"
            f"Section {batch_number} of {total}\n\n"
            f"Text:\n{text}\n\n"
            "Return the keywords JSON object."
        )

        async def call() -> list[Keyword]:
            raw = await self._timeouts.race(
                complete(llm, KEYWORD_SYSTEM_PROMPT, prompt),
                seconds=timeout,
                description=f"keywords batch {batch_number}/{total}",
            )
            return parse_keyword_response(raw)

        try:
            return await self._retry.execute(call, operation_name="keywords")
        except Exception as exc:
            logger.warning(
                "Keyword batch failed | batch=%d/%d chunks=%d error=%s",
                batch_number, total, len(batch), exc,
            )
            return []
