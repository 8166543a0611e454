"""
Unit Tests — Keyword generation
═══════════════════════════════
  - batch_by_char_budget   : every chunk in exactly one batch
  - merge_keyword_batches  : running average, repeat boost, normalization
  - KeywordGenerator       : concurrent batches, frequency fallback
  - FrequencyKeywordExtractor : stop words, URLs, phrases, stemming
"""

from __future__ import annotations

import pytest

from docpipe.core.errors import ValidationError
from docpipe.enrichment.base import Keyword
from docpipe.enrichment.keyword_fallback import FrequencyKeywordExtractor, normalize_scores, tokenize
from docpipe.enrichment.keywords import (
    KeywordGenerator,
    batch_by_char_budget,
    combine_keyword_batches,
    merge_keyword_batches,
    normalize_weights,
    parse_keyword_response,
)


def _reply(*terms: tuple[str, float]) -> dict:
    return {"keywords": [{"term": t, "weight": w} for t, w in terms]}


@pytest.mark.unit
@pytest.mark.enrichment
class TestBatching:

    def test_every_chunk_in_exactly_one_batch(self, make_chunks):
        chunks = make_chunks(11)                     # 15 chars each, +2 separator
        batches = batch_by_char_budget(chunks, max_chars=50)

        flattened = [c.index for batch in batches for c in batch]
        assert flattened == list(range(11))
        assert all(len(batch) <= 2 for batch in batches)

    def test_oversized_chunk_gets_own_batch(self, make_chunks):
        chunks = make_chunks(["x" * 500, "short", "tiny"])
        batches = batch_by_char_budget(chunks, max_chars=100)
        assert [len(b) for b in batches] == [1, 2]

    def test_empty(self):
        assert batch_by_char_budget([], max_chars=100) == []


@pytest.mark.unit
@pytest.mark.enrichment
class TestMerge:

    def test_same_term_across_batches_is_averaged(self):
        merged = merge_keyword_batches([
            [Keyword("Vector", 0.8), Keyword("index", 0.4)],
            [Keyword("vector", 0.6)],
        ])
        by_term = {k.term: k.weight for k in merged}
        assert set(by_term) == {"vector", "index"}
        assert by_term["vector"] == 1.0
        assert by_term["index"] == 0.1

    def test_repeated_terms_outrank_single_mentions(self):
        merged = merge_keyword_batches([
            [Keyword("recurring", 0.7), Keyword("single", 0.75)],
            [Keyword("recurring", 0.7)],
            [Keyword("recurring", 0.7), Keyword("filler", 0.2)],
        ])
        assert [k.term for k in merged][:2] == ["recurring", "single"]

    def test_weights_are_bounded(self):
        batch = [Keyword(f"term{i}", i / 50) for i in range(1, 40)]
        merged = merge_keyword_batches([batch])
        assert len(merged) == 30
        assert all(0.1 <= k.weight <= 1.0 for k in merged)
        assert merged[0].weight == 1.0
        assert merged[-1].weight == 0.1

    def test_equal_weights_become_half(self):
        assert [k.weight for k in normalize_weights([Keyword("a", 0.3), Keyword("b", 0.3)])] == [0.5, 0.5]

    def test_nothing_to_merge(self):
        assert merge_keyword_batches([[], []]) == []

    def test_term_in_three_of_five_batches(self):
        batches = [
            [Keyword("retrieval", 0.4), Keyword("corpus", 0.3)],
            [Keyword("pipeline", 0.9)],
            [Keyword("retrieval", 0.5)],
            [Keyword("latency", 0.2)],
            [Keyword("retrieval", 0.6)],
        ]

        combined = {k.term: k.weight for k in combine_keyword_batches(batches)}
        assert 0.5 <= combined["retrieval"] <= 1.0
        assert combined["retrieval"] == pytest.approx(0.55)

        weights = [k.weight for k in merge_keyword_batches(batches)]
        assert max(weights) == pytest.approx(1.0)
        assert min(weights) == pytest.approx(0.1)


@pytest.mark.unit
@pytest.mark.enrichment
class TestParse:

    def test_terms_lowercased_and_weights_clamped(self):
        keywords = parse_keyword_response(
            '{"keywords": [{"term": " Neural Networks ", "weight": 3}, {"term": "rag", "weight": 0}]}'
        )
        assert keywords == [Keyword("neural networks", 1.0), Keyword("rag", 0.1)]

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"terms": []}',
        '{"keywords": [{"term": "x"}]}',
        '{"keywords": [{"term": "   ", "weight": 0.5}]}',
    ])
    def test_malformed_replies_rejected(self, raw):
        with pytest.raises(ValidationError) as info:
            parse_keyword_response(raw)
        assert not info.value.retryable


@pytest.mark.unit
@pytest.mark.enrichment
class TestKeywordGenerator:

    async def test_batches_run_and_merge(self, chat_factory, fast_retry, make_chunks):
        chat = chat_factory(keywords=_reply(("vector search", 0.9), ("embeddings", 0.5)))
        generator = KeywordGenerator(llm_factory=chat, retry=fast_retry)
        generator._max_chars = 50

        keywords = await generator.generate(make_chunks(5), title="Search")

        assert len(chat.calls) == 3
        assert all(call["json_mode"] for call in chat.calls)
        assert [k.term for k in keywords] == ["vector search", "embeddings"]
        assert generator.last_source == "llm"
        assert any("Section 3 of 3" in prompt for prompt in chat.prompts)

    async def test_failed_batch_contributes_nothing(self, chat_factory, fast_retry, make_chunks):
        replies = [_reply(("alpha", 0.9), ("beta", 0.3)), RuntimeError("provider down")]
        chat = chat_factory(keywords=replies)
        generator = KeywordGenerator(llm_factory=chat, retry=fast_retry)
        generator._max_chars = 50

        keywords = await generator.generate(make_chunks(4), title="Partial")

        assert {k.term for k in keywords} == {"alpha", "beta"}
        assert generator.last_source == "llm"

    async def test_all_batches_failing_uses_frequency_fallback(
        self, chat_factory, fast_retry, make_chunks, sample_text,
    ):
        chat = chat_factory(keywords={"unexpected": "shape"})
        generator = KeywordGenerator(llm_factory=chat, retry=fast_retry)

        keywords = await generator.generate(make_chunks([sample_text]), title="Fallback")

        assert generator.last_source == "frequency"
        assert keywords
        assert "semantic search" in {k.term for k in keywords}
        assert len(chat.calls) == 1                  # schema failures are not retried

    async def test_fallback_reads_the_whole_document(self, chat_factory, fast_retry, make_chunks):
        filler = "alpha bravo charlie delta echo foxtrot " * 6
        tail   = "zephyrology " * 8
        chat = chat_factory(keywords=RuntimeError("provider down"))
        generator = KeywordGenerator(llm_factory=chat, retry=fast_retry)
        generator._max_chars = 200

        keywords = await generator.generate(make_chunks([filler, filler, tail, tail, tail]), title="Long")

        terms = {k.term for k in keywords}
        assert generator.last_source == "frequency"
        assert "zephyrology" in terms
        assert "alp" not in terms

    async def test_no_chunks(self, chat_factory, fast_retry):
        chat = chat_factory(keywords=_reply(("x", 1.0)))
        assert await KeywordGenerator(llm_factory=chat, retry=fast_retry).generate([]) == []
        assert chat.calls == []

    @pytest.mark.parametrize("count, expected", [(10, 30.0), (80, 40.0), (500, 45.0)])
    def test_timeout_scales_per_chunk(self, chat_factory, count, expected):
        assert KeywordGenerator(llm_factory=chat_factory()).timeout_for(count) == expected


@pytest.mark.unit
@pytest.mark.enrichment
class TestFrequencyFallback:

    def test_tokenize_drops_noise(self):
        tokens = tokenize("Visit https://example.com for the API-driven results in 2024, ok?")
        assert tokens == ["visit", "api-driven", "results"]

    def test_stemming_groups_surface_forms(self):
        keywords = FrequencyKeywordExtractor(use_stemming=True).extract(
            "embedding embeddings embeddings model"
        )
        terms = {k.term for k in keywords}
        assert "embeddings" in terms
        assert "embedding" not in terms

    def test_without_stemming_forms_stay_separate(self):
        keywords = FrequencyKeywordExtractor(use_stemming=False).extract(
            "embedding embeddings embeddings model"
        )
        assert {"embedding", "embeddings"} <= {k.term for k in keywords}

    def test_repeated_phrases_are_kept(self, sample_text):
        keywords = FrequencyKeywordExtractor().extract(sample_text)
        terms = [k.term for k in keywords]
        assert "vector databases" in terms
        assert "semantic search" in terms
        assert len(terms) <= 30
        assert all(0.1 <= k.weight <= 1.0 for k in keywords)

    def test_only_stop_words(self):
        assert FrequencyKeywordExtractor().extract("the and of to with it is") == []

    def test_normalize_scores(self):
        assert normalize_scores({"a": 1.0, "b": 3.0, "c": 2.0}) == {"a": 0.1, "b": 1.0, "c": 0.55}
        assert normalize_scores({"a": 2.0, "b": 2.0}) == {"a": 0.5, "b": 0.5}
