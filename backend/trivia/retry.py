"""Structured retry with backoff, a per-attempt timeout and a cancellation event."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from .errors import TransientNetworkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DelayPolicy = Callable[[int], float]


def exponential_backoff(base: float = 2.0, factor: float = 1.5, cap: float = 5.0) -> DelayPolicy:
    """No wait before attempt 1, then ``min(base * factor**(n - 2), cap)`` before attempt n."""

    def delay(attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return min(base * factor ** (attempt - 2), cap)

    return delay


def fixed_delay(seconds: float) -> DelayPolicy:
    def delay(attempt: int) -> float:
        return 0.0 if attempt <= 1 else seconds

    return delay


class RetryCancelled(Exception):
    pass


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    delay: DelayPolicy,
    timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientNetworkError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    name: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` are used up.

    A per-attempt timeout surfaces as ``TransientNetworkError`` and is retried
    like any other error listed in ``retry_on``. Errors outside ``retry_on``
    propagate immediately. Once attempts are exhausted the last error is
    re-raised. Setting ``cancel_event`` stops further attempts with
    ``RetryCancelled``; an attempt already in flight is left to finish.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        wait = delay(attempt)
        if wait > 0:
            logger.info("retry_backoff", operation=name, attempt=attempt, wait=wait)
            await sleep(wait)
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelled(f"{name} cancelled before attempt {attempt}")

        try:
            if timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout)
            except asyncio.TimeoutError as exc:
                raise TransientNetworkError(f"{name} timed out after {timeout}s", cause=exc) from exc
        except retry_on as exc:
            logger.warning(
                "retry_attempt_failed",
                operation=name,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )
            if attempt >= max_attempts:
                raise
