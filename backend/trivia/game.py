from __future__ import annotations

import asyncio
from collections import Counter
from typing import Dict, List, Optional, Set, Tuple

import structlog

from .collaborators import LeaderboardRefresher, fire_and_forget
from .db import Settings
from .errors import (
    DuplicateSubmission,
    QuestionProviderError,
    RateLimitExceeded,
    TimingInvalidError,
    ValidationError,
)
from .models import FinalStats, GameSession, PlayerResponse, Question, ScoreResult, SessionStatus, StreakRecord, User
from .questions import QuestionProvider, upsert_questions
from .rate_limit import RateLimitAction, RateLimiter
from .repository import TriviaRepository
from .schemas import (
    CreateSessionIn,
    CreateSessionOut,
    PublicSessionOut,
    ScoreOut,
    SessionResultsOut,
    SubmitAnswerIn,
    SubmitAnswerOut,
    UserStatsOut,
)
from .scoring import ScoreCalculator
from .timing import validate_timing
from .utils import longest_run

logger = structlog.get_logger(__name__)


class GameService:
    """Server side of a round: creates sessions and recomputes every answer.

    Submissions for one (session, player) pair run under a dedicated lock so
    the duplicate check, the streak read and the response insert form one
    unit. Downstream collaborators run only after that unit completes.
    """

    def __init__(
        self,
        repository: TriviaRepository,
        provider: QuestionProvider,
        rate_limiter: RateLimiter,
        leaderboard: LeaderboardRefresher,
        config: Settings,
    ):
        self.repository = repository
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.leaderboard = leaderboard
        self.config = config
        self.calculator = ScoreCalculator(
            rate_limiter,
            duration=config.ROUND_DURATION_SECONDS,
            streak_bonus_per_level=config.STREAK_BONUS_PER_LEVEL,
            max_streak_bonus=config.MAX_STREAK_BONUS,
        )
        self.locks: Dict[Tuple[int, str], asyncio.Lock] = {}
        self._background: Set[asyncio.Task] = set()

    def _lock(self, session_id: int, identity: str) -> asyncio.Lock:
        self.locks.setdefault((session_id, identity), asyncio.Lock())
        return self.locks[(session_id, identity)]

    async def create_session(self, payload: CreateSessionIn) -> CreateSessionOut:
        count = payload.question_count or self.config.DEFAULT_QUESTION_COUNT
        if count > self.config.MAX_QUESTION_COUNT:
            raise ValidationError(f"questionCount must be at most {self.config.MAX_QUESTION_COUNT}")

        identity = payload.identity.lower()
        if not self.rate_limiter.check(RateLimitAction.SESSION_CREATE, identity):
            raise RateLimitExceeded("Too many game sessions requested, try again shortly")
        if not self.rate_limiter.check(RateLimitAction.QUESTION_FETCH, identity):
            raise RateLimitExceeded("Too many question requests, try again shortly")

        user = await self.repository.upsert_user(identity)
        recent = await self.repository.recent_question_ids(user.id, self.config.RECENT_QUESTION_WINDOW)
        questions = await self.provider.get_questions(
            payload.category, payload.difficulty, count, exclude_ids=recent
        )
        if len(questions) != count:
            raise QuestionProviderError(f"Expected {count} questions but received {len(questions)}")

        session = await self.repository.create_session(
            [q.id for q in questions], category=payload.category, difficulty=payload.difficulty
        )
        await self.repository.transition_session(session.id, SessionStatus.ACTIVE)

        logger.info("session_created", session_id=session.id, identity=identity, questions=len(questions))
        return CreateSessionOut(session_id=session.id, has_questions=True, questions=questions)

    async def get_session(self, session_id: int) -> PublicSessionOut:
        session = await self.repository.get_session(session_id)
        return self._public(session)

    async def cancel_session(self, session_id: int) -> PublicSessionOut:
        session = await self.repository.get_session(session_id)
        cancelled = await self.repository.transition_session(session_id, SessionStatus.CANCELLED)
        if cancelled is None:
            # Completed or already cancelled sessions keep their status.
            logger.info("session_cancel_ignored", session_id=session_id, status=session.status)
            return self._public(await self.repository.get_session(session_id))
        logger.info("session_cancelled", session_id=session_id)
        return self._public(cancelled)

    async def submit_answer(self, payload: SubmitAnswerIn) -> SubmitAnswerOut:
        timing = validate_timing(
            payload.start_time,
            payload.end_time,
            duration=self.config.ROUND_DURATION_SECONDS,
            tolerance_ms=self.config.TIMING_TOLERANCE_MS,
        )

        identity = payload.identity.lower()
        final_stats: Optional[FinalStats] = None

        async with self._lock(payload.session_id, identity):
            user = await self.repository.upsert_user(identity)
            session = await self.repository.get_session(payload.session_id)
            if payload.question_id not in session.question_sequence:
                raise ValidationError(f"Question {payload.question_id} is not part of session {session.id}")
            question = await self.repository.get_question(payload.question_id)

            existing = await self.repository.find_response(session.id, question.id, user.id)
            if existing is not None:
                return await self._recorded_outcome(existing, question, user.id)

            if session.status != SessionStatus.ACTIVE:
                raise ValidationError(f"Session {session.id} is {session.status.value}")

            index = session.question_sequence.index(question.id)
            if index != session.current_index:
                raise ValidationError(
                    f"Question {index + 1} submitted while question {session.current_index + 1} is open"
                )
            is_last = index == len(session.question_sequence) - 1
            if payload.is_last_question != is_last:
                logger.warning("last_question_flag_mismatch", session_id=session.id, index=index)

            if timing.is_valid:
                is_correct = payload.answer is not None and payload.answer == question.correct_answer
                latest = await self.repository.latest_response(session.id, user.id)
                streak_before = latest.streak_count if latest else 0
                score = self.calculator.calculate_score(
                    timing.remaining_time, is_correct, streak_before, identity=identity
                )
            else:
                # Recorded as a wrong answer so the round can move on.
                logger.warning(
                    "submission_timing_invalid",
                    session_id=session.id,
                    question_id=question.id,
                    elapsed=timing.elapsed,
                )
                is_correct = False
                score = ScoreResult(points=0, max_points=self.calculator.max_points, resulting_streak=0)

            response = PlayerResponse(
                session_id=session.id,
                user_id=user.id,
                question_id=question.id,
                question_index=index,
                answer=payload.answer,
                is_correct=is_correct,
                points_earned=score.points,
                potential_points=score.max_points,
                streak_count=score.resulting_streak,
                time_remaining=timing.remaining_time if timing.is_valid else 0.0,
                response_time_ms=max(0, int(timing.elapsed * 1000)),
                answered_at=payload.end_time,
            )
            try:
                await self.repository.create_response(response)
            except DuplicateSubmission:
                recorded = await self.repository.find_response(session.id, question.id, user.id)
                return await self._recorded_outcome(recorded, question, user.id)

            user = await self.repository.apply_score(user.id, score.points, score.resulting_streak)
            await self.repository.advance_session(session.id, index)

            if is_last:
                final_stats = await self._finalize(session, user, payload.final_stats)

        if final_stats is not None:
            self._after_finalize(user.id)

        if not timing.is_valid:
            raise TimingInvalidError("Invalid timing")

        return SubmitAnswerOut(
            is_correct=is_correct,
            correct_answer=question.correct_answer,
            score=ScoreOut(
                points=score.points,
                current_streak=score.resulting_streak,
                best_streak=user.best_streak,
            ),
        )

    async def results(self, session_id: int) -> SessionResultsOut:
        session = await self.repository.get_session(session_id)
        responses = await self.repository.list_responses(session_id)
        out = SessionResultsOut(session_id=session.id, started_at=session.started_at, ended_at=session.ended_at)
        if not responses:
            return out

        user = await self.repository.get_user_by_id(responses[0].user_id)
        questions = await self.repository.get_questions([r.question_id for r in responses])
        categories = Counter(q.category.value for q in questions)

        out.user_id = responses[0].user_id
        out.identity = user.identity if user else ""
        out.category = categories.most_common(1)[0][0] if categories else "general"
        out.correct_answers = sum(1 for r in responses if r.is_correct)
        out.total_questions = len(responses)
        out.best_streak = max(r.streak_count for r in responses)
        out.total_points = sum(r.points_earned for r in responses)
        out.average_response_time = sum(r.response_time_ms for r in responses) / len(responses)
        return out

    async def user_stats(self, identity: str) -> UserStatsOut:
        user = await self.repository.get_user(identity)
        return UserStatsOut(
            identity=user.identity,
            total_points=user.total_points,
            games_played=user.games_played,
            best_streak=user.best_streak,
            last_played_at=user.last_played_at,
        )

    async def upsert_questions(self, questions: List[Question]) -> int:
        return await upsert_questions(self.repository.db, questions)

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget work (used on shutdown and in tests)."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _recorded_outcome(self, response: PlayerResponse, question: Question, user_id: int) -> SubmitAnswerOut:
        logger.info(
            "duplicate_submission_ignored",
            session_id=response.session_id,
            question_id=response.question_id,
            user_id=user_id,
        )
        user = await self.repository.get_user_by_id(user_id)
        return SubmitAnswerOut(
            is_correct=response.is_correct,
            correct_answer=question.correct_answer,
            duplicate=True,
            score=ScoreOut(
                points=response.points_earned,
                current_streak=response.streak_count,
                best_streak=user.best_streak if user else response.streak_count,
            ),
        )

    async def _finalize(self, session: GameSession, user: User, claimed: Optional[FinalStats]) -> FinalStats:
        responses = await self.repository.list_responses(session.id, user.id)
        stats = FinalStats(
            correct_answers=sum(1 for r in responses if r.is_correct),
            total_questions=len(session.question_sequence),
            best_streak=longest_run(r.is_correct for r in responses),
            final_score=sum(r.points_earned for r in responses),
        )
        if claimed is not None and claimed != stats:
            logger.info(
                "client_final_stats_diverged",
                session_id=session.id,
                claimed=claimed.model_dump(),
                recorded=stats.model_dump(),
            )

        await self.repository.transition_session(session.id, SessionStatus.COMPLETED)
        await self.repository.record_game_played(user.id)
        if stats.best_streak > 0:
            await self.repository.record_streak(
                StreakRecord(
                    user_id=user.id,
                    session_id=session.id,
                    streak_count=stats.best_streak,
                    points_earned=stats.final_score,
                )
            )
        logger.info("session_completed", session_id=session.id, user_id=user.id, final_score=stats.final_score)
        return stats

    def _after_finalize(self, user_id: int) -> None:
        fire_and_forget(self.leaderboard.refresh(user_id), self._background, "leaderboard")

    def _public(self, session: GameSession) -> PublicSessionOut:
        return PublicSessionOut(
            id=session.id,
            status=session.status,
            question_count=len(session.question_sequence),
            current_index=session.current_index,
            player_count=session.player_count,
            started_at=session.started_at,
            ended_at=session.ended_at,
        )
