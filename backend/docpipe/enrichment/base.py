"""
Shared enrichment types and helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol


class HasContent(Protocol):
    content: str


@dataclass(frozen=True)
class Keyword:
    term:   str
    weight: float

    def to_dict(self) -> dict:
        return {"term": self.term, "weight": self.weight}


def bounded_timeout(base: float, per_unit: float, units: float, cap: float) -> float:
    """base + per_unit * units, never above cap."""
    return min(base + per_unit * units, cap)


def document_text(chunks: Iterable[HasContent], max_chars: int) -> str:
    """
    Chunk contents joined by blank lines, truncated to max_chars with a
    trailing ellipsis when cut.
    """
    text = "\n\n".join(c.content for c in chunks)
    if len(text) > max_chars:
        return text[:max_chars] + "..."
    return text
