from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog

from .client import TriviaClient
from .collaborators import fire_and_forget
from .db import Settings, get_settings
from .errors import TimingInvalidError, TransientNetworkError, TriviaError
from .models import FinalStats, GameState, Question, ScoreResult
from .retry import fixed_delay, retry_with_backoff
from .schemas import SubmitAnswerIn
from .scoring import ScoreCalculator
from .state import GameStateStore
from .utils import longest_run, now_utc

logger = structlog.get_logger(__name__)

MIN_ANSWER_WINDOW = timedelta(seconds=1)


class SubmissionPhase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class QuestionOutcome:
    question_index: int
    question_id: int
    answer: Optional[str]
    is_correct: bool
    points: int
    streak: int
    correct_answer: str
    phase: SubmissionPhase
    estimated_points: int = 0


class Countdown:
    """Periodic countdown for one question.

    Remaining time is recomputed from the clock on every tick rather than
    decremented, so late ticks do not drift. ``on_expire`` runs exactly once.
    """

    def __init__(
        self,
        duration: float,
        on_tick: Callable[[float], None],
        on_expire: Callable[[], None],
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.duration = duration
        self.interval = interval
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._clock = clock
        self._sleep = sleep
        self._started_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self.expired = False

    @property
    def remaining(self) -> float:
        if self._started_at is None:
            return self.duration
        return max(0.0, self.duration - (self._clock() - self._started_at))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self.expired = False
        self._started_at = self._clock()
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            remaining = self.remaining
            self._on_tick(remaining)
            if remaining <= 0:
                self._expire()
                return

    def _expire(self) -> None:
        if self.expired:
            return
        self.expired = True
        self._on_expire()


class AnswerSubmissionCoordinator:
    """Drives answer submission for one session, one question at a time.

    The local score estimate is published optimistically while a request is
    in flight and is always replaced by the server's figures once they
    arrive.
    """

    def __init__(
        self,
        client: TriviaClient,
        store: GameStateStore,
        session_id: str,
        config: Optional[Settings] = None,
        now: Callable[[], datetime] = now_utc,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        use_countdown: bool = True,
        on_finalized: Optional[Callable[[FinalStats], Awaitable[None]]] = None,
    ):
        self.client = client
        self.store = store
        self.session_id = session_id
        self.config = config or get_settings()
        self._now = now
        self._clock = clock
        self._sleep = sleep
        self._use_countdown = use_countdown
        self._on_finalized = on_finalized
        self.calculator = ScoreCalculator(
            None,
            duration=self.config.ROUND_DURATION_SECONDS,
            streak_bonus_per_level=self.config.STREAK_BONUS_PER_LEVEL,
            max_streak_bonus=self.config.MAX_STREAK_BONUS,
        )
        self.phase = SubmissionPhase.IDLE
        self.final_stats: Optional[FinalStats] = None
        self.countdown: Optional[Countdown] = None
        self._outcomes: Dict[int, QuestionOutcome] = {}
        self._in_flight: Optional[int] = None
        self._question_started: Optional[datetime] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def outcomes(self) -> List[QuestionOutcome]:
        return [self._outcomes[i] for i in sorted(self._outcomes)]

    def begin_question(self) -> None:
        """Start the clock for the current question."""

        state = self._state()
        if state is None:
            return
        self._question_started = self._now()
        self.phase = SubmissionPhase.IDLE
        self.store.update(self.session_id, time_remaining=self.config.ROUND_DURATION_SECONDS, last_error=None)
        if self._use_countdown:
            if self.countdown is not None:
                self.countdown.cancel()
            self.countdown = Countdown(
                self.config.ROUND_DURATION_SECONDS,
                on_tick=self._on_tick,
                on_expire=self._on_expire,
                interval=self.config.COUNTDOWN_TICK_SECONDS,
                clock=self._clock,
                sleep=self._sleep,
            )
            self.countdown.start()

    async def submit_answer(self, answer: Optional[str]) -> Optional[QuestionOutcome]:
        """Submit ``answer`` (None on timeout) for the current question.

        Repeated calls for a question that is in flight or already answered
        are no-ops: they return the recorded outcome, or None while the first
        call is still pending.
        """

        state = self._state()
        if state is None or state.status != "active" or state.current_question is None:
            return None

        index = state.current_question_index
        if index in self._outcomes:
            logger.info("duplicate_submission_suppressed", session_id=self.session_id, index=index)
            return self._outcomes[index]
        if self._in_flight is not None:
            logger.info("submission_in_flight", session_id=self.session_id, index=self._in_flight)
            return None

        self._in_flight = index
        self.phase = SubmissionPhase.SUBMITTING
        if self.countdown is not None:
            self.countdown.cancel()

        question = state.current_question
        remaining = 0.0 if answer is None else max(0.0, state.time_remaining)
        estimate = self.calculator.calculate_score(remaining, answer == question.correct_answer, state.streak)
        self.store.update(
            self.session_id,
            score=state.score + estimate.points,
            streak=estimate.resulting_streak,
            time_remaining=remaining,
        )

        sent_at = self._clock()
        try:
            outcome = await self._send(state, question, index, answer, estimate)
        except TriviaError as exc:
            self._in_flight = None
            self.phase = SubmissionPhase.IDLE
            if self._state() is not None:
                self.store.update(self.session_id, score=state.score, streak=state.streak, last_error=exc.message)
            raise

        self._outcomes[index] = outcome
        self._in_flight = None
        self.phase = outcome.phase
        if self._state() is None:
            return outcome

        self.store.update(
            self.session_id,
            score=state.score + outcome.points,
            streak=outcome.streak,
            best_streak=max(state.best_streak, outcome.streak),
            last_error=None,
        )

        network_time = self._clock() - sent_at
        reveal = max(self.config.REVEAL_DELAY_SECONDS - network_time, self.config.MIN_REVEAL_DELAY_SECONDS)
        await self._sleep(reveal)

        await self._advance(index)
        return outcome

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _send(
        self,
        state: GameState,
        question: Question,
        index: int,
        answer: Optional[str],
        estimate: ScoreResult,
    ) -> QuestionOutcome:
        end_time = self._now()
        start_time = self._normalize_start(self._question_started or end_time, end_time, answer)
        is_last = state.is_last_question

        request = SubmitAnswerIn(
            question_id=question.id,
            session_id=int(self.session_id),
            answer=answer,
            start_time=start_time,
            end_time=end_time,
            identity=state.identity,
            is_last_question=is_last,
            final_stats=self._estimate_final(state, estimate) if is_last else None,
        )

        try:
            result = await retry_with_backoff(
                lambda: self.client.submit_answer(request, timeout=self.config.SUBMIT_TIMEOUT_SECONDS),
                max_attempts=self.config.SUBMIT_ATTEMPTS,
                delay=fixed_delay(self.config.SUBMIT_RETRY_DELAY_SECONDS),
                timeout=self.config.SUBMIT_TIMEOUT_SECONDS,
                retry_on=(TransientNetworkError,),
                sleep=self._sleep,
                name="submit_answer",
            )
        except TimingInvalidError:
            logger.warning("submission_timing_rejected", session_id=self.session_id, index=index)
            return QuestionOutcome(
                question_index=index,
                question_id=question.id,
                answer=answer,
                is_correct=False,
                points=0,
                streak=0,
                correct_answer=question.correct_answer,
                phase=SubmissionPhase.REJECTED,
                estimated_points=estimate.points,
            )

        if result.score.points != estimate.points:
            logger.debug(
                "score_estimate_replaced",
                session_id=self.session_id,
                index=index,
                estimated=estimate.points,
                awarded=result.score.points,
            )
        return QuestionOutcome(
            question_index=index,
            question_id=question.id,
            answer=answer,
            is_correct=result.is_correct,
            points=result.score.points,
            streak=result.score.current_streak,
            correct_answer=result.correct_answer,
            phase=SubmissionPhase.TIMED_OUT if answer is None else SubmissionPhase.ACCEPTED,
            estimated_points=estimate.points,
        )

    def _normalize_start(self, start: datetime, end: datetime, answer: Optional[str]) -> datetime:
        if answer is None:
            return end - timedelta(seconds=self.config.ROUND_DURATION_SECONDS)
        if end - start < MIN_ANSWER_WINDOW:
            return end - MIN_ANSWER_WINDOW
        return start

    def _estimate_final(self, state: GameState, estimate: ScoreResult) -> FinalStats:
        recorded = self.outcomes
        return FinalStats(
            correct_answers=sum(1 for o in recorded if o.is_correct) + (1 if estimate.resulting_streak else 0),
            total_questions=len(state.questions),
            best_streak=max(state.best_streak, estimate.resulting_streak),
            final_score=state.score + estimate.points,
        )

    async def _advance(self, index: int) -> None:
        state = self._state()
        if state is None:
            return

        if index + 1 < len(state.questions):
            self.store.update(self.session_id, current_question_index=index + 1)
            self.begin_question()
            return

        self.phase = SubmissionPhase.FINALIZING
        outcomes = self.outcomes
        self.final_stats = FinalStats(
            correct_answers=sum(1 for o in outcomes if o.is_correct),
            total_questions=len(state.questions),
            best_streak=longest_run(o.is_correct for o in outcomes),
            final_score=sum(o.points for o in outcomes),
        )
        self.store.update(
            self.session_id,
            status="completed",
            score=self.final_stats.final_score,
            best_streak=self.final_stats.best_streak,
        )
        logger.info(
            "session_finalized",
            session_id=self.session_id,
            final_score=self.final_stats.final_score,
            correct_answers=self.final_stats.correct_answers,
        )
        if self._on_finalized is not None:
            await self._on_finalized(self.final_stats)

    def _state(self) -> Optional[GameState]:
        return self.store.snapshot(self.session_id)

    def _on_tick(self, remaining: float) -> None:
        if self._in_flight is None and self._state() is not None:
            self.store.update(self.session_id, time_remaining=remaining)

    def _on_expire(self) -> None:
        logger.info("question_timer_expired", session_id=self.session_id)
        fire_and_forget(self._submit_timeout(), self._background, "timeout_submission")

    async def _submit_timeout(self) -> None:
        try:
            await self.submit_answer(None)
        except TriviaError as exc:
            # Already on the snapshot as last_error; the player resubmits from there.
            logger.warning("timeout_submission_failed", session_id=self.session_id, error=exc.message)
