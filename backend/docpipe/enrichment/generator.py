"""
AI Content Generator — abstract, keywords and quiz for one document

generate_all() runs the three generators concurrently and never raises for
a single generator's failure: each degrades on its own (abstract → None,
keywords → frequency fallback, quiz → None). All three share one
TimeoutManager whose pending deadlines are cancelled on exit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from docpipe.core.retry import RetryStrategy
from docpipe.core.timeouts import TimeoutManager
from docpipe.enrichment.abstract import AbstractGenerator
from docpipe.enrichment.base import HasContent, Keyword
from docpipe.enrichment.keywords import KeywordGenerator
from docpipe.enrichment.quiz import QuizGenerator, validate_question_count
from docpipe.llm.chat import ChatModelFactory
from docpipe.schemas.enrichment import QuizItem

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentResult:
    abstract:       str | None = None
    keywords:       list[Keyword] = field(default_factory=list)
    quiz:           list[QuizItem] | None = None
    keyword_source: str = "llm"
    elapsed_ms:     float = 0.0


class AIContentGenerator:
    """
    Usage:
        result = await AIContentGenerator().generate_all(chunks, title, quiz_questions=5)
    """

    def __init__(
        self,
        llm_factory: ChatModelFactory | None = None,
        retry:       RetryStrategy | None = None,
    ) -> None:
        self._timeouts = TimeoutManager("enrichment")
        retry = retry or RetryStrategy.from_settings()

        self.abstracts = AbstractGenerator(llm_factory, retry, self._timeouts)
        self.keywords  = KeywordGenerator(llm_factory, retry, self._timeouts)
        self.quizzes   = QuizGenerator(llm_factory, retry, self._timeouts)

    async def generate_abstract(self, chunks: Sequence[HasContent], title: str = "") -> str | None:
        return await self.abstracts.generate(chunks, title)

    async def generate_keywords(self, chunks: Sequence[HasContent], title: str = "") -> list[Keyword]:
        return await self.keywords.generate(chunks, title)

    async def generate_quiz(
        self,
        chunks:        Sequence[HasContent],
        title:         str = "",
        num_questions: int = 5,
    ) -> list[QuizItem] | None:
        try:
            return await self.quizzes.generate(chunks, title, num_questions)
        finally:
            self._timeouts.cleanup()

    async def generate_all(
        self,
        chunks:         Sequence[HasContent],
        title:          str = "",
        quiz_questions: int = 0,
    ) -> EnrichmentResult:
        """Run all generators concurrently. quiz_questions=0 skips the quiz."""
        if quiz_questions:
            validate_question_count(quiz_questions)

        t0 = time.monotonic()
        calls = [
            self.abstracts.generate(chunks, title),
            self.keywords.generate(chunks, title),
        ]
        if quiz_questions:
            calls.append(self.quizzes.generate(chunks, title, quiz_questions))

        try:
            outcomes = await asyncio.gather(*calls, return_exceptions=True)
        finally:
            self._timeouts.cleanup()

        for name, outcome in zip(("abstract", "keywords", "quiz"), outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Enrichment step raised | step=%s error=%s", name, outcome)

        abstract = outcomes[0] if isinstance(outcomes[0], str) else None
        keywords = outcomes[1] if isinstance(outcomes[1], list) else []
        quiz = None
        if quiz_questions and isinstance(outcomes[2], list):
            quiz = outcomes[2]

        result = EnrichmentResult(
            abstract=abstract,
            keywords=keywords,
            quiz=quiz,
            keyword_source=self.keywords.last_source,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "Enrichment complete | title=%s abstract=%s keywords=%d source=%s quiz=%s elapsed_ms=%.0f",
            title, abstract is not None, len(keywords), result.keyword_source,
            len(quiz) if quiz else 0, result.elapsed_ms,
        )
        return result
