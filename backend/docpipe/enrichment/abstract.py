"""
Abstract generation — one short summary per document.

Timeout scales with document size:
    base + per_chunk * chunk_count, capped at abstract_max_timeout

Any failure (provider error, empty reply, deadline) yields None; the
pipeline stores the document without an abstract rather than failing it.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

from docpipe.core.retry import RetryStrategy
from docpipe.core.timeouts import TimeoutManager
from docpipe.enrichment.base import HasContent, bounded_timeout, document_text
from docpipe.llm.chat import ChatModelFactory, build_chat_model, complete

logger = logging.getLogger(__name__)

ABSTRACT_MAX_TOKENS = 200

ABSTRACT_SYSTEM_PROMPT = (
    "You write concise abstracts of documents. Summarize the main topic, "
    "key points and conclusions in about 100 words of plain prose. "
    "Do not use bullet points or headings."
)


class AbstractGenerator:
    """
    Usage:
        abstract = await AbstractGenerator().generate(chunks, title="Q3 report")
    """

    def __init__(
        self,
        llm_factory: ChatModelFactory | None = None,
        retry:       RetryStrategy | None = None,
        timeouts:    TimeoutManager | None = None,
    ) -> None:
        from docpipe.core.config import settings

        self._llm_factory = llm_factory or build_chat_model
        self._retry       = retry or RetryStrategy.from_settings()
        self._timeouts    = timeouts or TimeoutManager("abstract")
        self._max_chars   = settings.ai_max_chars
        self._base        = settings.abstract_base_timeout
        self._per_chunk   = settings.abstract_per_chunk_timeout
        self._cap         = settings.abstract_max_timeout

    def timeout_for(self, chunk_count: int) -> float:
        return bounded_timeout(self._base, self._per_chunk, chunk_count, self._cap)

    async def generate(self, chunks: Sequence[HasContent], title: str = "") -> str | None:
        if not chunks:
            return None

        text    = document_text(chunks, self._max_chars)
        timeout = self.timeout_for(len(chunks))
        llm     = self._llm_factory(max_tokens=ABSTRACT_MAX_TOKENS)
        prompt  = f"Title: {title}\n\nDocument:\n{text}\n\nWrite the abstract."

        t0 = time.monotonic()
        try:
            abstract = await self._retry.execute(
                lambda: self._timeouts.race(
                    complete(llm, ABSTRACT_SYSTEM_PROMPT, prompt),
                    seconds=timeout,
                    description="abstract",
                ),
                operation_name="abstract",
            )
        except Exception as exc:
            logger.warning("Abstract generation failed | title=%s error=%s", title, exc)
            return None

        if not abstract:
            logger.warning("Abstract generation returned empty text | title=%s", title)
            return None

        logger.info(
            "Abstract generated | title=%s chars=%d elapsed_ms=%.0f",
            title, len(abstract), (time.monotonic() - t0) * 1000,
        )
        return abstract
