"""Downstream collaborators invoked after a session finalizes.

Achievement rules and leaderboard ranking live outside this service; only
the interfaces and logging defaults are defined here.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Optional, Protocol, Set

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class GameStats(BaseModel):
    user_id: int
    session_id: int
    category: str
    correct_answers: int
    total_questions: int
    best_streak: int
    average_response_time: float
    start_time: datetime
    end_time: Optional[datetime] = None


class AchievementProcessor(Protocol):
    async def process_game_end(self, stats: GameStats) -> None: ...


class LeaderboardRefresher(Protocol):
    async def refresh(self, user_id: int) -> None: ...


class LoggingAchievementProcessor:
    async def process_game_end(self, stats: GameStats) -> None:
        logger.info(
            "achievements_requested",
            user_id=stats.user_id,
            session_id=stats.session_id,
            correct_answers=stats.correct_answers,
            best_streak=stats.best_streak,
        )


class LoggingLeaderboardRefresher:
    async def refresh(self, user_id: int) -> None:
        logger.info("leaderboard_refresh_requested", user_id=user_id)


def fire_and_forget(coro: Awaitable[None], tasks: Set[asyncio.Task], name: str) -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; failures are logged, never raised."""

    task = asyncio.ensure_future(coro)
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("background_task_failed", task=name, error=repr(exc))

    task.add_done_callback(_done)
    return task
