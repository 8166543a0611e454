"""
Quiz generation — N multiple-choice questions per document.

A malformed reply (wrong option count, answer outside 0..3, blank text,
too few questions) is treated as a retryable failure: the model is asked
again up to the RetryStrategy budget. After the final failure the quiz is
skipped (None); the document still completes.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

from pydantic import ValidationError as SchemaValidationError

from docpipe.core.errors import ValidationError
from docpipe.core.retry import RetryStrategy
from docpipe.core.timeouts import TimeoutManager
from docpipe.enrichment.base import HasContent, document_text
from docpipe.llm.chat import ChatModelFactory, build_chat_model, complete
from docpipe.schemas.enrichment import QuizItem, QuizResponse

logger = logging.getLogger(__name__)

MIN_QUESTIONS = 1
MAX_QUESTIONS = 20
QUIZ_BASE_MAX_TOKENS = 2000
QUIZ_TOKENS_PER_QUESTION = 300

QUIZ_SYSTEM_PROMPT = (
    "You write multiple-choice quiz questions that test understanding of a document. "
    'Return a JSON object of the form {"questions": [{"question": "...", '
    '"options": ["...", "...", "...", "..."], "correct_answer": <0-3>}]}. '
    "Every question has exactly four distinct options and exactly one correct answer, "
    "given as the zero-based index of the correct option."
)


def validate_question_count(num_questions: int) -> None:
    if not MIN_QUESTIONS <= num_questions <= MAX_QUESTIONS:
        raise ValidationError(
            f"num_questions must be between {MIN_QUESTIONS} and {MAX_QUESTIONS}, got {num_questions}",
            details={"num_questions": num_questions},
        )


def parse_quiz_response(raw: str, num_questions: int) -> list[QuizItem]:
    """Validate a quiz reply; any deviation raises a retryable ValidationError."""
    try:
        parsed = QuizResponse.model_validate_json(raw)
    except SchemaValidationError as exc:
        raise ValidationError(
            "Quiz response did not match the expected schema",
            retryable=True,
            details={"errors": exc.error_count()},
        ) from exc

    if len(parsed.questions) < num_questions:
        raise ValidationError(
            f"Quiz response has {len(parsed.questions)} questions, expected {num_questions}",
            retryable=True,
        )
    return parsed.questions[:num_questions]


class QuizGenerator:
    """
    Usage:
        questions = await QuizGenerator().generate(chunks, "Q3 report", num_questions=5)
    """

    def __init__(
        self,
        llm_factory: ChatModelFactory | None = None,
        retry:       RetryStrategy | None = None,
        timeouts:    TimeoutManager | None = None,
    ) -> None:
        from docpipe.core.config import settings

        self._llm_factory  = llm_factory or build_chat_model
        self._retry        = retry or RetryStrategy.from_settings()
        self._timeouts     = timeouts or TimeoutManager("quiz")
        self._max_chars    = settings.ai_max_chars
        self._base         = settings.quiz_base_timeout
        self._per_question = settings.quiz_per_question_timeout
        self._per_chunk    = settings.quiz_per_chunk_timeout
        self._cap          = settings.quiz_max_timeout

    def timeout_for(self, num_questions: int, chunk_count: int) -> float:
        return min(
            self._base + self._per_question * num_questions + self._per_chunk * chunk_count,
            self._cap,
        )

    async def generate(
        self,
        chunks:        Sequence[HasContent],
        title:         str = "",
        num_questions: int = 5,
    ) -> list[QuizItem] | None:
        validate_question_count(num_questions)
        if not chunks:
            return None

        text    = document_text(chunks, self._max_chars)
        timeout = self.timeout_for(num_questions, len(chunks))
        llm     = self._llm_factory(
            max_tokens=QUIZ_BASE_MAX_TOKENS + QUIZ_TOKENS_PER_QUESTION * num_questions,
            json_mode=True,
        )
        prompt = (
            f"Title: {title}\n\nDocument:\n{text}\n\n"
            f"Write exactly {num_questions} questions."
        )

        async def call() -> list[QuizItem]:
            raw = await self._timeouts.race(
                complete(llm, QUIZ_SYSTEM_PROMPT, prompt),
                seconds=timeout,
                description="quiz",
            )
            return parse_quiz_response(raw, num_questions)

        t0 = time.monotonic()
        try:
            questions = await self._retry.execute(call, operation_name="quiz")
        except Exception as exc:
            logger.warning("Quiz generation failed | title=%s questions=%d error=%s", title, num_questions, exc)
            return None

        logger.info(
            "Quiz generated | title=%s questions=%d elapsed_ms=%.0f",
            title, len(questions), (time.monotonic() - t0) * 1000,
        )
        return questions
