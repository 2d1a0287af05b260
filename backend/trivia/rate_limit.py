"""Fixed-window rate limiter keyed by identity and activity."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class RateLimitAction(str, Enum):
    SESSION_CREATE = "session-create"
    SCORE_SUBMIT = "score-submit"
    QUESTION_FETCH = "question-fetch"


@dataclass(frozen=True)
class RateLimitConfig:
    max_attempts: int
    window_seconds: float


DEFAULT_LIMITS: Dict[RateLimitAction, RateLimitConfig] = {
    RateLimitAction.SESSION_CREATE: RateLimitConfig(max_attempts=3, window_seconds=10),
    RateLimitAction.SCORE_SUBMIT: RateLimitConfig(max_attempts=20, window_seconds=10),
    RateLimitAction.QUESTION_FETCH: RateLimitConfig(max_attempts=10, window_seconds=60),
}


class RateLimiter:
    """Admission check: each allowed call counts against the current window.

    Windows are per ``(action, identity)`` and restart once
    ``window_seconds`` have elapsed since the first counted call.
    """

    def __init__(
        self,
        limits: Optional[Dict[RateLimitAction, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._clock = clock
        self._windows: Dict[Tuple[RateLimitAction, str], Tuple[int, float]] = {}

    def check(self, action: RateLimitAction, identity: str) -> bool:
        config = self._limits.get(action)
        if config is None:
            return True

        now = self._clock()
        key = (action, identity)
        count, started = self._windows.get(key, (0, now))
        if now - started >= config.window_seconds:
            count, started = 0, now

        if count >= config.max_attempts:
            retry_in = started + config.window_seconds - now
            logger.warning("rate_limit_exceeded", action=action, identity=identity, retry_in=round(retry_in, 2))
            return False

        self._windows[key] = (count + 1, started)
        return True

    def reset(self) -> None:
        self._windows.clear()
