"""
Unit Tests — Error taxonomy, RetryStrategy, CircuitBreaker, TimeoutManager
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from docpipe.core.errors import (
    DatabaseError,
    NetworkError,
    OperationTimeoutError,
    ProcessingError,
    RateLimitError,
    ServerError,
    ValidationError,
    classify_error,
    is_retryable,
)
from docpipe.core.retry import CircuitBreaker, CircuitState, RetryStrategy
from docpipe.core.timeouts import TimeoutManager


def _status_error(status: int, headers: dict | None = None) -> openai.APIStatusError:
    request  = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(status, request=request, headers=headers or {})
    return openai.APIStatusError(f"status {status}", response=response, body=None)


def _pg_error(sqlstate: str):
    orig = MagicMock()
    orig.sqlstate = sqlstate
    return orig


@pytest.mark.unit
@pytest.mark.resilience
class TestClassifyError:

    def test_rate_limit_carries_retry_after(self):
        error = classify_error(_status_error(429, {"retry-after": "7"}))
        assert isinstance(error, RateLimitError)
        assert error.retryable
        assert error.retry_after == 7.0

    def test_server_error_is_retryable(self):
        error = classify_error(_status_error(503))
        assert isinstance(error, ServerError)
        assert error.status_code == 503
        assert error.retryable

    def test_client_error_is_not_retryable(self):
        error = classify_error(_status_error(400))
        assert not error.retryable
        assert error.details["status_code"] == 400

    def test_connection_error_is_network(self):
        exc = openai.APIConnectionError(request=httpx.Request("POST", "https://x"))
        assert isinstance(classify_error(exc), NetworkError)

    def test_provider_timeout_is_soft(self):
        exc = openai.APITimeoutError(request=httpx.Request("POST", "https://x"))
        error = classify_error(exc)
        assert isinstance(error, OperationTimeoutError)
        assert error.retryable

    def test_unique_violation_not_retryable(self):
        exc = IntegrityError("INSERT", {}, _pg_error("23505"))
        error = classify_error(exc)
        assert isinstance(error, DatabaseError)
        assert error.code == "23505"
        assert not error.retryable

    def test_serialization_failure_retryable(self):
        exc = OperationalError("UPDATE", {}, _pg_error("40001"))
        assert is_retryable(exc)

    def test_unknown_exceptions_are_not_retryable(self):
        error = classify_error(KeyError("boom"))
        assert type(error) is ProcessingError
        assert not error.retryable

    def test_processing_errors_pass_through(self):
        original = ValidationError("bad")
        assert classify_error(original) is original

    def test_to_dict_includes_details(self):
        error = ProcessingError("oops", details={"stage": "embed"})
        assert error.to_dict() == {
            "error": "ProcessingError", "message": "oops", "retryable": False, "stage": "embed",
        }


@pytest.mark.unit
@pytest.mark.resilience
class TestRetryStrategy:

    async def test_succeeds_after_transient_failures(self, fast_retry):
        operation = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), "ok"])
        assert await fast_retry.execute(operation, "op") == "ok"
        assert operation.await_count == 3
        assert fast_retry._sleep.await_count == 2

    async def test_non_retryable_fails_immediately(self, fast_retry):
        operation = AsyncMock(side_effect=ValidationError("bad input"))
        with pytest.raises(ValidationError):
            await fast_retry.execute(operation, "op")
        assert operation.await_count == 1

    async def test_exhaustion_raises_last_classified_error(self, fast_retry):
        operation = AsyncMock(side_effect=_status_error(503))
        with pytest.raises(ServerError):
            await fast_retry.execute(operation, "op")
        assert operation.await_count == 3          # 1 + max_retries

    async def test_hard_timeout_is_not_retried(self, fast_retry):
        operation = AsyncMock(side_effect=OperationTimeoutError("late", hard=True))
        with pytest.raises(OperationTimeoutError):
            await fast_retry.execute(operation, "op")
        assert operation.await_count == 1

    def test_delay_grows_exponentially_and_caps(self):
        retry = RetryStrategy(initial_delay=1.0, max_delay=5.0, multiplier=2.0, jitter=False)
        assert [retry.calculate_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_adds_at_most_twenty_percent(self):
        retry = RetryStrategy(initial_delay=1.0, max_delay=10.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= retry.calculate_delay(1) <= 1.2

    def test_rate_limit_retry_after_wins(self):
        retry = RetryStrategy(initial_delay=1.0, jitter=False)
        assert retry.calculate_delay(1, RateLimitError("slow", retry_after=9.0)) == 9.0

    async def test_open_circuit_skips_call(self):
        retry = RetryStrategy(max_retries=0, breaker_threshold=2, sleep=AsyncMock())
        failing = AsyncMock(side_effect=NetworkError("down"))
        for _ in range(2):
            with pytest.raises(NetworkError):
                await retry.execute(failing, "flaky")

        untouched = AsyncMock(return_value="never")
        with pytest.raises(ProcessingError, match="Circuit open"):
            await retry.execute(untouched, "flaky")
        untouched.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.resilience
class TestCircuitBreaker:

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker("op", threshold=3)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow()

    def test_half_open_after_reset_timeout(self):
        breaker = CircuitBreaker("op", threshold=1, reset_timeout=0.0)
        breaker.record_failure()
        assert breaker.allow()
        assert breaker.state is CircuitState.HALF_OPEN

    def test_success_closes(self):
        breaker = CircuitBreaker("op", threshold=1, reset_timeout=0.0)
        breaker.record_failure()
        breaker.allow()
        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failures == 0


@pytest.mark.unit
@pytest.mark.resilience
class TestTimeoutManager:

    async def test_returns_result_within_deadline(self):
        manager = TimeoutManager("test")
        assert await manager.race(asyncio.sleep(0, result=42), seconds=1.0) == 42
        assert manager.active_count == 0

    async def test_deadline_cancels_work_and_raises_hard_timeout(self):
        manager = TimeoutManager("test")
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(OperationTimeoutError) as info:
            await manager.race(slow(), seconds=0.01, description="slow op")

        assert info.value.hard
        assert not info.value.retryable
        assert info.value.details["operation"] == "slow op"
        assert cancelled.is_set()
        assert manager.active_count == 0

    async def test_tracking_cleared_on_failure(self):
        manager = TimeoutManager("test")

        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await manager.race(broken(), seconds=1.0)
        assert manager.active_count == 0

    async def test_cancel_all_cancels_pending(self):
        manager = TimeoutManager("test")
        task = asyncio.ensure_future(manager.race(asyncio.sleep(10), seconds=30))
        await asyncio.sleep(0)
        assert manager.active_count == 1

        assert manager.cancel_all() == 1
        with pytest.raises(asyncio.CancelledError):
            await task
        assert manager.active_count == 0
