"""
Retry Strategy — Exponential Back-off + Circuit Breaker

Retry policy:
  delay(attempt) = min(initial × multiplier^(attempt-1), max_delay) + jitter
  jitter         = 0–20 % of the delay (spreads synchronized retries)
  RateLimitError → waits max(delay, retry_after) when the provider says so
  Non-retryable  → propagate immediately, no sleep

Circuit breaker:
  Each operation name owns a breaker. After `threshold` consecutive
  failures it opens and calls are rejected without touching the provider.
  After `reset_timeout` seconds one trial call is let through (half-open);
  success closes the circuit, failure re-opens it.

A RetryStrategy is created per pipeline run; breakers are not shared
between documents.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from docpipe.core.errors import ProcessingError, RateLimitError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    name:          str
    threshold:     int   = 5
    reset_timeout: float = 60.0

    failures:    int          = 0
    state:       CircuitState = CircuitState.CLOSED
    opened_at:   float        = 0.0

    def allow(self) -> bool:
        if self.state is CircuitState.OPEN:
            if time.monotonic() - self.opened_at >= self.reset_timeout:
                self.state = CircuitState.HALF_OPEN
                logger.info("Circuit breaker | op=%s state=half_open", self.name)
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("Circuit breaker | op=%s state=closed", self.name)
        self.failures = 0
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.threshold:
            self.state = CircuitState.OPEN
            self.opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker | op=%s state=open failures=%d reset_in=%.0fs",
                self.name, self.failures, self.reset_timeout,
            )


class RetryStrategy:
    """
    Usage::

        retry = RetryStrategy.from_settings()
        vectors = await retry.execute(
            lambda: client.embeddings.create(...),
            operation_name="embed_batch",
        )
    """

    def __init__(
        self,
        max_retries:       int   = 3,
        initial_delay:     float = 1.0,
        max_delay:         float = 10.0,
        multiplier:        float = 2.0,
        jitter:            bool  = True,
        breaker_threshold: int   = 5,
        breaker_timeout:   float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_retries       = max_retries
        self.initial_delay     = initial_delay
        self.max_delay         = max_delay
        self.multiplier        = multiplier
        self.jitter            = jitter
        self._breaker_threshold = breaker_threshold
        self._breaker_timeout   = breaker_timeout
        self._breakers: dict[str, CircuitBreaker] = {}
        self._sleep = sleep

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RetryStrategy":
        from docpipe.core.config import settings

        params: dict[str, Any] = {
            "max_retries":       settings.retry_max_retries,
            "initial_delay":     settings.retry_initial_delay,
            "max_delay":         settings.retry_max_delay,
            "multiplier":        settings.retry_multiplier,
            "jitter":            settings.retry_jitter,
            "breaker_threshold": settings.circuit_breaker_threshold,
            "breaker_timeout":   settings.circuit_breaker_timeout,
        }
        params.update(overrides)
        return cls(**params)

    def breaker(self, operation_name: str) -> CircuitBreaker:
        if operation_name not in self._breakers:
            self._breakers[operation_name] = CircuitBreaker(
                name=operation_name,
                threshold=self._breaker_threshold,
                reset_timeout=self._breaker_timeout,
            )
        return self._breakers[operation_name]

    def calculate_delay(self, attempt: int, error: ProcessingError | None = None) -> float:
        """Back-off before retry number `attempt` (1-based)."""
        delay = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(0, 0.2)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay

    async def execute(
        self,
        operation:      Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        max_retries:    int | None = None,
    ) -> T:
        """
        Run `operation` until it succeeds, fails non-retryably, or the
        attempt budget is spent. Raises the classified ProcessingError.
        """
        retries = self.max_retries if max_retries is None else max_retries
        breaker = self.breaker(operation_name)

        if not breaker.allow():
            raise ProcessingError(
                f"Circuit open for {operation_name}; skipping call",
                details={"operation": operation_name},
            )

        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as exc:
                error = classify_error(exc)
                breaker.record_failure()

                if not error.retryable or attempt >= retries:
                    if error.retryable:
                        logger.error(
                            "Retry exhausted | op=%s attempts=%d error=%s",
                            operation_name, attempt + 1, error,
                        )
                    if error is exc:
                        raise
                    raise error from exc

                attempt += 1
                delay = self.calculate_delay(attempt, error)
                logger.warning(
                    "Retrying | op=%s attempt=%d/%d delay=%.2fs error=%s",
                    operation_name, attempt, retries, delay, error,
                )
                await self._sleep(delay)

                if not breaker.allow():
                    raise ProcessingError(
                        f"Circuit open for {operation_name} after {attempt} attempts",
                        details={"operation": operation_name},
                    ) from exc
                continue

            breaker.record_success()
            return result
