"""
Frequency Keyword Extractor — offline fallback when the LLM path fails

Pipeline:
  1. lowercase, drop URLs, replace punctuation (except '-') with spaces
  2. drop short tokens, numbers, letterless tokens and stop words
  3. count unigrams; optionally group them by Porter stem (nltk)
  4. count bigrams / trigrams over the filtered token stream; phrases seen
     at least twice score ceil(freq * 1.5)
  5. normalize scores to 0.1..1.0 (2 dp), phrases win ties within 0.1
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter, defaultdict

from nltk.stem import PorterStemmer

from docpipe.enrichment.base import Keyword

logger = logging.getLogger(__name__)

MIN_WORD_LENGTH = 3
MAX_KEYWORDS    = 30
PHRASE_BOOST    = 1.5
PHRASE_MIN_FREQ = 2
PHRASE_PREFERENCE = 0.1

STOP_WORDS = frozenset("""
a about above after again against all also am an and any are aren as at be
because been before being below between both but by can cannot could did do
does doing down during each either else even ever every few for from further
get gets got had has have having he her here hers herself him himself his how
however i if in into is isn it its itself just least less like made make many
may me might more most much must my myself neither no nor not now of off often
on once one only or other ought our ours ourselves out over own per perhaps
rather same say says said see seen shall she should since so some such than
that the their theirs them themselves then there these they this those though
through thus to too toward under until up upon us use used uses using very
via was we were what when where whether which while who whom whose why will
with within without would yet you your yours yourself yourselves
""".split())

_URL_RE   = re.compile(r"(?:https?://|www\.)\S+")
_PUNCT_RE = re.compile(r"[^\w\s-]")
_LETTER_RE = re.compile(r"[^\W\d_]")


def tokenize(text: str) -> list[str]:
    """Lowercased content tokens with URLs, numbers and stop words removed."""
    text = _URL_RE.sub(" ", text.lower())
    text = _PUNCT_RE.sub(" ", text)

    tokens: list[str] = []
    for raw in text.split():
        token = raw.strip("-_")
        if len(token) < MIN_WORD_LENGTH:
            continue
        if not _LETTER_RE.search(token):
            continue
        if token in STOP_WORDS:
            continue
        tokens.append(token)
    return tokens


def _ngrams(tokens: list[str], n: int) -> Counter:
    return Counter(" ".join(tokens[i : i + n]) for i in range(len(tokens) - n + 1))


def normalize_scores(scores: dict[str, float]) -> dict[str, float]:
    """Min-max onto 0.1..1.0, rounded to 2 dp. All-equal scores map to 0.5."""
    if not scores:
        return {}
    lo, hi = min(scores.values()), max(scores.values())
    if hi == lo:
        return {term: 0.5 for term in scores}
    return {
        term: round(0.1 + (score - lo) / (hi - lo) * 0.9, 2)
        for term, score in scores.items()
    }


class FrequencyKeywordExtractor:
    """
    Usage:
        keywords = FrequencyKeywordExtractor(use_stemming=True).extract(text)
    """

    def __init__(self, use_stemming: bool = True, max_keywords: int = MAX_KEYWORDS) -> None:
        self._stemmer      = PorterStemmer() if use_stemming else None
        self._max_keywords = max_keywords

    def extract(self, text: str) -> list[Keyword]:
        tokens = tokenize(text)
        if not tokens:
            return []

        scores: dict[str, float] = self._unigram_scores(tokens)
        phrases: set[str] = set()

        for n in (2, 3):
            for phrase, freq in _ngrams(tokens, n).items():
                if freq < PHRASE_MIN_FREQ:
                    continue
                scores[phrase] = math.ceil(freq * PHRASE_BOOST)
                phrases.add(phrase)

        weights = normalize_scores(scores)
        ranked = sorted(
            weights.items(),
            key=lambda kv: (-(kv[1] + (PHRASE_PREFERENCE if kv[0] in phrases else 0.0)), kv[0]),
        )
        keywords = [Keyword(term=term, weight=weight) for term, weight in ranked[: self._max_keywords]]

        logger.debug(
            "FrequencyKeywordExtractor | tokens=%d candidates=%d kept=%d",
            len(tokens), len(scores), len(keywords),
        )
        return keywords

    def _unigram_scores(self, tokens: list[str]) -> dict[str, float]:
        counts = Counter(tokens)
        if self._stemmer is None:
            return {term: float(freq) for term, freq in counts.items()}

        # Group surface forms under their stem; report the most common form.
        groups: dict[str, Counter] = defaultdict(Counter)
        for term, freq in counts.items():
            groups[self._stemmer.stem(term)][term] += freq

        scores: dict[str, float] = {}
        for forms in groups.values():
            total = sum(forms.values())
            surface = min(forms.items(), key=lambda kv: (-kv[1], kv[0]))[0]
            scores[surface] = math.log1p(total) * total
        return scores
