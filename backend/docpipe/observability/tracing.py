"""
Observability Tracing — LangSmith + timing spans

LangSmith:
  Enrichment calls go through LangChain's ChatOpenAI, so setting
  LANGCHAIN_TRACING_V2 / LANGCHAIN_API_KEY / LANGCHAIN_PROJECT is enough to
  capture every abstract, keyword and quiz prompt. TracingConfig.init()
  copies the key from settings into the environment when it is configured.

Decorator `@traced(name)`:
  Wraps an async pipeline stage with timing and error logging. It is
  always active, whether or not LangSmith is.

Environment variables:
  LANGCHAIN_TRACING_V2=true
  LANGCHAIN_API_KEY=ls__...
  LANGCHAIN_PROJECT=docpipe
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


# ---------------------------------------------------------------------------
# TracingConfig: initialise at process startup (API and worker)
# ---------------------------------------------------------------------------

class TracingConfig:

    _initialised: bool = False

    @classmethod
    def init(cls) -> None:
        if cls._initialised:
            return
        cls._initialised = True
        cls._init_langsmith()

    @staticmethod
    def _init_langsmith() -> None:
        from docpipe.core.config import settings

        if settings.langsmith_api_key and not os.environ.get("LANGCHAIN_API_KEY"):
            os.environ["LANGCHAIN_TRACING_V2"] = "true"
            os.environ["LANGCHAIN_API_KEY"]    = settings.langsmith_api_key
            os.environ["LANGCHAIN_PROJECT"]    = settings.langsmith_project
            logger.info("LangSmith tracing enabled | project=%s", settings.langsmith_project)
        elif os.environ.get("LANGCHAIN_TRACING_V2") == "true":
            logger.info(
                "LangSmith tracing active (from env) | project=%s",
                os.environ.get("LANGCHAIN_PROJECT", "default"),
            )
        else:
            logger.debug("LangSmith tracing disabled (LANGCHAIN_TRACING_V2 not set)")


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Usage::

        @traced("pipeline.embed")
        async def embed(...): ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, (time.perf_counter() - t0) * 1000, exc,
                )
                raise
            logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, (time.perf_counter() - t0) * 1000)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
