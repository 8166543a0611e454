"""
Enrichment Package

Derived artifacts for a processed document:
  abstract.py          ~100-word summary
  keywords.py          weighted keywords over the whole document
  keyword_fallback.py  offline frequency extractor
  quiz.py              multiple-choice questions
  generator.py         AIContentGenerator — runs the three concurrently
"""

from docpipe.enrichment.base import Keyword
from docpipe.enrichment.generator import AIContentGenerator, EnrichmentResult

__all__ = ["AIContentGenerator", "EnrichmentResult", "Keyword"]
