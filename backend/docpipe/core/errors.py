"""
Processing Error Taxonomy
═════════════════════════

Every failure the pipeline reasons about is a ProcessingError subclass. The
`retryable` flag is the single input RetryStrategy uses to decide whether to
back off and try again.

  ProcessingError
  ├── ValidationError          bad input / malformed structured response
  ├── RetryableError           transient, safe to retry
  │   ├── RateLimitError       HTTP 429, carries retry_after
  │   ├── NetworkError         connection refused / reset / DNS
  │   └── ServerError          HTTP 5xx
  ├── OperationTimeoutError    deadline expired (hard → never retried)
  ├── DatabaseError            persistence failure (retryable per SQLSTATE)
  ├── ExtractionError          source file unreadable / empty
  │   ├── PDFExtractionError
  │   └── AudioExtractionError
  ├── EmbeddingError           carries the offending chunk index
  └── PartialFailureError      carries successes + failures

classify_error() converts foreign exceptions (openai, httpx, SQLAlchemy,
asyncio) into this taxonomy so callers never branch on vendor types.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import openai
from sqlalchemy.exc import DBAPIError


class ProcessingError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False

    def __init__(
        self,
        message:   str,
        *,
        retryable: bool | None = None,
        details:   dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error":     type(self).__name__,
            "message":   self.message,
            "retryable": self.retryable,
            **self.details,
        }


class ValidationError(ProcessingError):
    pass


class RetryableError(ProcessingError):
    retryable = True


class RateLimitError(RetryableError):
    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NetworkError(RetryableError):
    pass


class ServerError(RetryableError):
    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class OperationTimeoutError(ProcessingError):
    """
    A deadline expired.

    Deadlines enforced by TimeoutManager are hard (the caller already waited
    as long as it is willing to); a provider-side timeout reported by the
    client library is soft and may be retried.
    """

    def __init__(
        self,
        message:         str,
        *,
        timeout_seconds: float | None = None,
        hard:            bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, retryable=not hard, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.hard = hard


class DatabaseError(ProcessingError):
    def __init__(self, message: str, *, code: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.code = code


class ExtractionError(ProcessingError):
    pass


class PDFExtractionError(ExtractionError):
    pass


class AudioExtractionError(ExtractionError):
    pass


class EmbeddingError(ProcessingError):
    def __init__(self, message: str, *, chunk_index: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.chunk_index = chunk_index


class PartialFailureError(ProcessingError):
    """Too many sub-operations failed; carries both outcome sets."""

    def __init__(
        self,
        message:   str,
        *,
        successes: list | None = None,
        failures:  list | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.successes = successes or []
        self.failures  = failures or []


# ---------------------------------------------------------------------------
# Classification of foreign exceptions
# ---------------------------------------------------------------------------

_CONNECTION_ERROR_NAMES = (
    "ConnectionRefusedError",
    "ConnectionResetError",
    "ConnectError",
    "RemoteProtocolError",
    "gaierror",
)


def _retry_after_seconds(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _classify_status(exc: Exception, status: int, response: httpx.Response | None) -> ProcessingError:
    if status == 429:
        return RateLimitError(
            f"Rate limit exceeded: {exc}",
            retry_after=_retry_after_seconds(response),
        )
    if status >= 500:
        return ServerError(f"Server error ({status}): {exc}", status_code=status)
    return ProcessingError(f"Request rejected ({status}): {exc}", details={"status_code": status})


def _classify_database(exc: DBAPIError) -> DatabaseError:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    code = str(code) if code else None

    # 23xxx integrity, 40xxx transaction rollback, 53xxx insufficient resources
    if code and code.startswith(("40", "53")):
        retryable = True
    elif code and code.startswith("23"):
        retryable = False
    else:
        retryable = bool(exc.connection_invalidated)

    return DatabaseError(f"Database error: {exc}", code=code, retryable=retryable)


def classify_error(exc: BaseException) -> ProcessingError:
    """Map any exception onto the processing taxonomy."""
    if isinstance(exc, ProcessingError):
        return exc

    if isinstance(exc, openai.APITimeoutError):
        return OperationTimeoutError(f"Provider timeout: {exc}", hard=False)
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(f"Connection error: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return _classify_status(exc, exc.status_code, exc.response)

    if isinstance(exc, httpx.TimeoutException):
        return OperationTimeoutError(f"HTTP timeout: {exc}", hard=False)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc, exc.response.status_code, exc.response)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Transport error: {exc}")

    if isinstance(exc, DBAPIError):
        return _classify_database(exc)

    if isinstance(exc, asyncio.TimeoutError):
        return OperationTimeoutError(f"Timed out: {exc}", hard=False)
    if isinstance(exc, ConnectionError) or type(exc).__name__ in _CONNECTION_ERROR_NAMES:
        return NetworkError(f"Connection error: {exc}")

    return ProcessingError(f"{type(exc).__name__}: {exc}")


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc).retryable
