"""
Timeout Manager — deadline enforcement with real cancellation.

race() wraps an awaitable in a task and waits on it with asyncio.wait_for.
When the deadline passes the task is cancelled (the HTTP request inside the
openai / httpx client is torn down with it) and OperationTimeoutError is
raised. Hard deadlines are never retried by RetryStrategy.

Every in-flight race is tracked so the owning stage can cancel_all() when it
finishes early or fails.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, TypeVar

from docpipe.core.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TimeoutManager:

    def __init__(self, name: str = "timeouts") -> None:
        self._name = name
        self._active: dict[int, tuple[str, asyncio.Future[Any]]] = {}
        self._ids = itertools.count(1)

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def race(
        self,
        awaitable:   Awaitable[T],
        seconds:     float,
        description: str = "operation",
        message:     str | None = None,
    ) -> T:
        """Await `awaitable`, cancelling it if it runs past `seconds`."""
        race_id = next(self._ids)
        future  = asyncio.ensure_future(awaitable)
        self._active[race_id] = (description, future)
        t0 = time.monotonic()

        try:
            return await asyncio.wait_for(future, timeout=seconds)
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - t0
            logger.warning(
                "Timeout | scope=%s op=%s limit=%.1fs elapsed=%.1fs",
                self._name, description, seconds, elapsed,
            )
            raise OperationTimeoutError(
                message or f"{description} exceeded timeout of {seconds:.1f}s",
                timeout_seconds=seconds,
                hard=True,
                details={"operation": description, "elapsed_seconds": round(elapsed, 2)},
            ) from None
        finally:
            self._active.pop(race_id, None)

    def cancel_all(self) -> int:
        """Cancel every pending race. Returns the number cancelled."""
        cancelled = 0
        for description, future in list(self._active.values()):
            if not future.done():
                future.cancel()
                cancelled += 1
                logger.debug("Timeout cleanup | scope=%s cancelled=%s", self._name, description)
        self._active.clear()
        return cancelled

    def cleanup(self) -> None:
        cancelled = self.cancel_all()
        if cancelled:
            logger.info("Timeout cleanup | scope=%s cancelled=%d", self._name, cancelled)
