"""
Embedding Generator  —  Batched Embeddings with Per-Chunk Fallback
══════════════════════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one API call per embedding_batch_size chunks
  • Failure isolation: a failed batch falls back to one call per chunk, so a
    single poisonous input cannot sink its 199 neighbours
  • Backpressure: batches run SEQUENTIALLY with an adaptive pause between
    them; this is the primary rate-limit avoidance mechanism
  • Accountability: every input chunk ends up in exactly one of
    successes / failures, attributed by chunk index

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims  (default)
  text-embedding-3-large  → 3072 dims

Retry policy (RetryStrategy):
  RateLimitError / 5xx / connection errors → exponential back-off
  Hard deadline (TimeoutManager)           → no retry, go to fallback
  4xx other than 429                       → no retry, go to fallback

Success threshold:
  success_rate < 0.5 after all batches → PartialFailureError carrying both
  outcome lists; the caller decides whether partial data is acceptable.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from openai import AsyncOpenAI

from docpipe.core.errors import (
    EmbeddingError,
    PartialFailureError,
    ProcessingError,
    RateLimitError,
    classify_error,
)
from docpipe.core.retry import RetryStrategy
from docpipe.core.timeouts import TimeoutManager
from docpipe.processing.chunking import TextChunk

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MIN_SUCCESS_RATE = 0.5
DEFAULT_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

ProgressCallback = Callable[[int, int, int], Any]   # (batch, total_batches, percent)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass
class EmbeddedChunk:
    chunk:       TextChunk
    embedding:   list[float]
    chunk_index: int


@dataclass
class EmbeddingFailure:
    chunk:       TextChunk
    error:       ProcessingError
    chunk_index: int


@dataclass
class BatchEmbeddingResult:
    successes: list[EmbeddedChunk]    = field(default_factory=list)
    failures:  list[EmbeddingFailure] = field(default_factory=list)
    hit_rate_limit: bool = False

    @property
    def rate_limited(self) -> bool:
        return self.hit_rate_limit or any(
            isinstance(f.error, RateLimitError) or f.error.details.get("cause") == "RateLimitError"
            for f in self.failures
        )


@dataclass
class EmbeddingRunResult:
    """
    successes    : embedded chunks in input order
    failures     : chunks that could not be embedded, with the reason
    total_chunks : number of chunks submitted
    elapsed_ms   : wall time across all batches
    """
    successes:    list[EmbeddedChunk]
    failures:     list[EmbeddingFailure]
    total_chunks: int
    elapsed_ms:   float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_chunks == 0:
            return 1.0
        return len(self.successes) / self.total_chunks


# ---------------------------------------------------------------------------
# Adaptive inter-batch delay
# ---------------------------------------------------------------------------

class AdaptiveDelay:
    """
    Pause between embedding batches.

    Doubles (up to max_delay) after a batch that hit a rate limit and halves
    back towards base_delay after a clean batch. One instance per run.
    """

    def __init__(self, base_delay: float = 0.05, max_delay: float = 2.0) -> None:
        self.base_delay = base_delay
        self.max_delay  = max(max_delay, base_delay)
        self.current    = base_delay

    def record(self, rate_limited: bool) -> None:
        if rate_limited:
            self.current = min(self.max_delay, max(self.current, self.base_delay, 0.01) * 2)
        else:
            self.current = max(self.base_delay, self.current / 2)

    def __call__(self) -> float:
        return self.current


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    One instance per pipeline run (owns its retry and timeout state).

    Usage:
        generator = EmbeddingGenerator()
        run = await generator.embed_all(chunks, on_progress=log_progress)
        run.successes   # → ChunkStorage.store()
    """

    def __init__(
        self,
        client:     AsyncOpenAI | None = None,
        model:      str | None = None,
        dimensions: int | None = None,
        batch_size: int | None = None,
        timeout:    float | None = None,
        retry:      RetryStrategy | None = None,
    ) -> None:
        from docpipe.core.config import settings

        self._client     = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self._model      = model or settings.embedding_model
        self._dimensions = dimensions or settings.embedding_dimensions
        self._batch_size = batch_size or settings.embedding_batch_size
        self._timeout    = timeout or settings.embedding_timeout
        self._retry      = retry or RetryStrategy.from_settings()
        self._timeouts   = TimeoutManager("embeddings")

    @property
    def batch_size(self) -> int:
        return self._batch_size

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def embed_all(
        self,
        chunks:      Sequence[TextChunk],
        on_progress: ProgressCallback | None = None,
        delay:       Callable[[], float] | None = None,
    ) -> EmbeddingRunResult:
        """
        Embed every chunk, batch by batch, in order.

        Raises:
            PartialFailureError if fewer than half of the chunks embedded.
        """
        from docpipe.core.config import settings

        if delay is None:
            delay = AdaptiveDelay(settings.embedding_base_delay, settings.embedding_max_delay)

        total_batches = max(1, -(-len(chunks) // self._batch_size))
        successes: list[EmbeddedChunk]    = []
        failures:  list[EmbeddingFailure] = []
        t0 = time.monotonic()

        logger.info(
            "EmbeddingGenerator | chunks=%d batches=%d model=%s",
            len(chunks), total_batches if chunks else 0, self._model,
        )

        try:
            for batch_num, start in enumerate(range(0, len(chunks), self._batch_size), start=1):
                if on_progress is not None:
                    percent = round(batch_num / total_batches * 100)
                    maybe_coro = on_progress(batch_num, total_batches, percent)
                    if inspect.isawaitable(maybe_coro):
                        await maybe_coro

                batch = await self.embed_batch(chunks, start, self._batch_size)
                successes.extend(batch.successes)
                failures.extend(batch.failures)

                if isinstance(delay, AdaptiveDelay):
                    delay.record(batch.rate_limited)

                if start + self._batch_size < len(chunks):
                    pause = delay()
                    if pause > 0:
                        await asyncio.sleep(pause)
        finally:
            self._timeouts.cleanup()

        run = EmbeddingRunResult(
            successes=successes,
            failures=failures,
            total_chunks=len(chunks),
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

        logger.info(
            "EmbeddingGenerator done | ok=%d failed=%d success_rate=%.2f elapsed_ms=%.0f",
            len(successes), len(failures), run.success_rate, run.elapsed_ms,
        )

        if chunks and run.success_rate < MIN_SUCCESS_RATE:
            raise PartialFailureError(
                f"Embedding success rate {run.success_rate:.0%} is below "
                f"{MIN_SUCCESS_RATE:.0%} ({len(successes)}/{len(chunks)})",
                successes=successes,
                failures=failures,
                details={"success_rate": run.success_rate},
            )
        return run

    async def embed_batch(
        self,
        chunks: Sequence[TextChunk],
        start:  int = 0,
        size:   int | None = None,
    ) -> BatchEmbeddingResult:
        """
        Embed chunks[start:start+size] with one request; on a batch-level
        failure fall back to one request per chunk.
        """
        batch = list(chunks[start : start + (size or self._batch_size)])
        if not batch:
            return BatchEmbeddingResult()

        try:
            vectors = await self._retry.execute(
                lambda: self._request([c.content for c in batch]),
                operation_name="embed_batch",
            )
        except Exception as exc:
            error = classify_error(exc)
            logger.warning(
                "Embedding batch failed, falling back to single requests | "
                "start=%d size=%d error=%s",
                start, len(batch), error,
            )
            result = await self._embed_individually(batch)
            result.hit_rate_limit = isinstance(error, RateLimitError)
            return result

        return self._match_vectors(batch, vectors)

    async def embed_one(self, chunk: TextChunk) -> list[float]:
        vectors = await self._retry.execute(
            lambda: self._request([chunk.content]),
            operation_name="embed_single",
        )
        if not vectors or not self._valid(vectors[0]):
            raise EmbeddingError("Invalid embedding response", chunk_index=chunk.index)
        return vectors[0]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _embed_individually(self, batch: list[TextChunk]) -> BatchEmbeddingResult:
        result = BatchEmbeddingResult()
        for chunk in batch:
            try:
                vector = await self.embed_one(chunk)
            except Exception as exc:
                error = classify_error(exc)
                if not isinstance(error, EmbeddingError):
                    error = EmbeddingError(
                        f"Embedding failed for chunk {chunk.index}: {error.message}",
                        chunk_index=chunk.index,
                        retryable=error.retryable,
                        details={"cause": type(error).__name__},
                    )
                logger.warning("Embedding failed | chunk=%d error=%s", chunk.index, error)
                result.failures.append(EmbeddingFailure(chunk, error, chunk.index))
                continue
            result.successes.append(EmbeddedChunk(chunk, vector, chunk.index))
        return result

    def _match_vectors(
        self,
        batch:   list[TextChunk],
        vectors: list[list[float] | None],
    ) -> BatchEmbeddingResult:
        result = BatchEmbeddingResult()
        if len(vectors) != len(batch):
            logger.warning(
                "Embedding response size mismatch | expected=%d got=%d",
                len(batch), len(vectors),
            )

        for position, chunk in enumerate(batch):
            vector = vectors[position] if position < len(vectors) else None
            if vector is None or not self._valid(vector):
                result.failures.append(EmbeddingFailure(
                    chunk,
                    EmbeddingError(
                        f"Missing or invalid embedding at position {position}",
                        chunk_index=chunk.index,
                    ),
                    chunk.index,
                ))
            else:
                result.successes.append(EmbeddedChunk(chunk, vector, chunk.index))
        return result

    def _valid(self, vector: list[float] | None) -> bool:
        return bool(vector) and len(vector) == self._dimensions

    async def _request(self, texts: list[str]) -> list[list[float] | None]:
        kwargs: dict[str, Any] = {
            "model":           self._model,
            "input":           texts,
            "encoding_format": "float",
        }
        if self._dimensions != DEFAULT_DIMENSIONS.get(self._model, self._dimensions):
            kwargs["dimensions"] = self._dimensions

        t_api = time.monotonic()
        response = await self._timeouts.race(
            self._client.embeddings.create(**kwargs),
            seconds=self._timeout,
            description="embeddings.create",
        )
        logger.debug(
            "OpenAI embeddings | size=%d api_ms=%.0f",
            len(texts), (time.monotonic() - t_api) * 1000,
        )
        return [getattr(item, "embedding", None) for item in (response.data or [])]
