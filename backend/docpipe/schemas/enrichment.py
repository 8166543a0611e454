"""
Structured-response schemas for enrichment calls.

The model is asked for a JSON object; the reply is validated against these
schemas and rejected on any deviation (unknown fields, wrong option count,
out-of-range answer). Nothing is inferred from loosely shaped replies.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_KEYWORD_WEIGHT = 0.1
MAX_KEYWORD_WEIGHT = 1.0


class KeywordItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    term:   str = Field(min_length=1)
    weight: float

    @field_validator("term")
    @classmethod
    def _normalize_term(cls, v: str) -> str:
        term = v.strip().lower()
        if not term:
            raise ValueError("term must not be blank")
        return term

    @field_validator("weight")
    @classmethod
    def _clamp_weight(cls, v: float) -> float:
        return min(MAX_KEYWORD_WEIGHT, max(MIN_KEYWORD_WEIGHT, v))


class KeywordResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keywords: list[KeywordItem]


class QuizItem(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    question:       str
    options:        list[str] = Field(min_length=4, max_length=4)
    correct_answer: int = Field(ge=0, le=3, alias="correctAnswer")

    @field_validator("question")
    @classmethod
    def _question_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("question text is empty")
        return v

    @field_validator("options")
    @classmethod
    def _options_present(cls, v: list[str]) -> list[str]:
        cleaned = [o.strip() for o in v]
        if any(not o for o in cleaned):
            raise ValueError("options must be non-empty strings")
        return cleaned


class QuizResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    questions: list[QuizItem] = Field(min_length=1)
