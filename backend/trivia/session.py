from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Set

import structlog

from .client import TriviaClient
from .collaborators import AchievementProcessor, GameStats, LoggingAchievementProcessor, fire_and_forget
from .db import Settings, get_settings
from .errors import (
    QuestionCountMismatch,
    SessionBusyError,
    SessionCreationFailure,
    TransientNetworkError,
    TriviaError,
)
from .models import GameConfig, GameState
from .retry import RetryCancelled, exponential_backoff, retry_with_backoff
from .schemas import CreateSessionOut
from .state import GameStateStore
from .utils import now_utc

logger = structlog.get_logger(__name__)


class SessionLifecycleManager:
    """Creates, resets and ends the game session of one client instance.

    At most one creation runs at a time. ``reset``/``end_session`` bump an
    epoch counter so that a creation still in flight when the session is torn
    down has its result discarded instead of published.
    """

    def __init__(
        self,
        client: TriviaClient,
        store: GameStateStore,
        achievements: Optional[AchievementProcessor] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.store = store
        self.achievements = achievements or LoggingAchievementProcessor()
        self.config = config or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._creating = False
        self._epoch = 0
        self._session_id: Optional[str] = None
        self._last_reset: Optional[float] = None
        self._cancel = asyncio.Event()
        self._background: Set[asyncio.Task] = set()

    @property
    def creation_in_progress(self) -> bool:
        return self._creating

    @property
    def state(self) -> Optional[GameState]:
        if self._session_id is None:
            return None
        return self.store.snapshot(self._session_id)

    async def start_session(self, config: GameConfig) -> GameState:
        if self._creating:
            if self.state is not None:
                logger.warning("session_creation_in_progress", session_id=self._session_id)
                return self.state
            raise SessionBusyError("Game initialization in progress")

        self._creating = True
        self._cancel = asyncio.Event()
        epoch = self._epoch
        log = logger.bind(identity=config.identity, question_count=config.question_count)

        try:
            try:
                created = await retry_with_backoff(
                    lambda: self._create_once(config),
                    max_attempts=self.config.SESSION_CREATE_ATTEMPTS,
                    delay=exponential_backoff(
                        base=self.config.SESSION_BACKOFF_BASE_SECONDS,
                        factor=self.config.SESSION_BACKOFF_FACTOR,
                        cap=self.config.SESSION_BACKOFF_CAP_SECONDS,
                    ),
                    timeout=self.config.SESSION_CREATE_TIMEOUT_SECONDS,
                    cancel_event=self._cancel,
                    retry_on=(TransientNetworkError,),
                    sleep=self._sleep,
                    name="create_session",
                )
            except RetryCancelled as exc:
                raise SessionCreationFailure("Session creation cancelled", cause=exc) from exc
            except TransientNetworkError as exc:
                log.error("session_creation_failed", error=exc.message)
                raise SessionCreationFailure(
                    f"Failed to create game session after {self.config.SESSION_CREATE_ATTEMPTS} attempts",
                    cause=exc,
                ) from exc

            session_id = str(created.session_id)
            if epoch != self._epoch:
                log.warning("session_creation_discarded", session_id=session_id)
                fire_and_forget(self._cleanup(session_id), self._background, "orphan_cleanup")
                raise SessionCreationFailure("Session was reset while it was being created")

            state = GameState(
                session_id=session_id,
                questions=created.questions,
                current_question_index=0,
                time_remaining=self.config.ROUND_DURATION_SECONDS,
                identity=config.identity,
                start_time=now_utc(),
            )
            if self._session_id is not None and self._session_id != session_id:
                self.store.clear(self._session_id)
            self._session_id = session_id
            self.store.publish(state)
            log.info("session_started", session_id=session_id)
            return state
        finally:
            if epoch == self._epoch:
                self._creating = False

    async def reset(self) -> bool:
        """Tear down the current session; returns False when inside the cooldown."""

        if not self._enter_teardown():
            return False

        session_id = self._session_id
        if session_id is not None:
            await self._cleanup(session_id)
        self._release(session_id)
        return True

    async def end_session(self, session_id: str) -> bool:
        """Finish the current session; a completed one is handed to the achievement processor."""

        state = self.state
        if self._session_id != session_id or state is None:
            return False
        if not self._enter_teardown():
            return False

        try:
            await self._cleanup(session_id)
        finally:
            self._release(session_id)

        if state.status == "completed":
            fire_and_forget(self._process_achievements(session_id), self._background, "achievements")
        else:
            logger.info("achievements_skipped", session_id=session_id, status=state.status)
        return True

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _create_once(self, config: GameConfig) -> CreateSessionOut:
        created = await self.client.create_session(config)
        if not created.has_questions or len(created.questions) != config.question_count:
            raise QuestionCountMismatch(
                f"Expected {config.question_count} questions but received {len(created.questions)}"
            )
        return created

    def _enter_teardown(self) -> bool:
        now = self._clock()
        if self._last_reset is not None and now - self._last_reset < self.config.RESET_COOLDOWN_SECONDS:
            logger.info("reset_ignored_cooldown", since_last=round(now - self._last_reset, 3))
            return False
        self._last_reset = now
        self._epoch += 1
        self._cancel.set()
        return True

    def _release(self, session_id: Optional[str]) -> None:
        if session_id is not None:
            self.store.clear(session_id)
        self._session_id = None
        self._creating = False

    async def _cleanup(self, session_id: str) -> None:
        try:
            await self.client.cancel_session(session_id, timeout=self.config.CLEANUP_TIMEOUT_SECONDS)
            logger.info("session_cleanup_completed", session_id=session_id)
        except TriviaError as exc:
            logger.warning("session_cleanup_failed", session_id=session_id, error=exc.message)

    async def _process_achievements(self, session_id: str) -> None:
        results = await self.client.get_results(session_id)
        await self.achievements.process_game_end(
            GameStats(
                user_id=results.user_id,
                session_id=results.session_id,
                category=results.category,
                correct_answers=results.correct_answers,
                total_questions=results.total_questions,
                best_streak=results.best_streak,
                average_response_time=results.average_response_time,
                start_time=results.started_at,
                end_time=results.ended_at or now_utc(),
            )
        )
