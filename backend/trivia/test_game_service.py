from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from unittest import IsolatedAsyncioTestCase, mock

from backend.trivia.db import InMemoryDatabase, Settings, ensure_indexes
from backend.trivia.errors import (
    QuestionProviderError,
    RateLimitExceeded,
    TimingInvalidError,
    ValidationError,
)
from backend.trivia.game import GameService
from backend.trivia.models import Category, Difficulty, FinalStats, Question, SessionStatus
from backend.trivia.questions import StoredQuestionProvider, upsert_questions
from backend.trivia.rate_limit import RateLimitAction, RateLimitConfig, RateLimiter
from backend.trivia.repository import TriviaRepository
from backend.trivia.schemas import CreateSessionIn, SubmitAnswerIn

ANSWERED_AT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
IDENTITY = "Player@Example.com"


def make_question(qid: int, category: Category = Category.SCIENCE) -> Question:
    return Question(
        id=qid,
        content=f"Question {qid}?",
        correct_answer=f"right-{qid}",
        incorrect_answers=[f"wrong-{qid}-a", f"wrong-{qid}-b", f"wrong-{qid}-c"],
        difficulty=Difficulty.EASY,
        category=category,
    )


class GameServiceTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = InMemoryDatabase()
        await ensure_indexes(self.db)
        await upsert_questions(self.db, [make_question(i) for i in range(1, 21)])

        self.leaderboard = mock.AsyncMock()
        self.service = GameService(
            repository=TriviaRepository(self.db),
            provider=StoredQuestionProvider(self.db, random.Random(7)),
            rate_limiter=RateLimiter(),
            leaderboard=self.leaderboard,
            config=Settings(_env_file=None),
        )

    async def _start(self, count: int = 10):
        return await self.service.create_session(CreateSessionIn(identity=IDENTITY, question_count=count))

    def _answer(self, created, index: int, correct: bool = True, elapsed: float = 5.0, **extra) -> SubmitAnswerIn:
        question = created.questions[index]
        return SubmitAnswerIn(
            question_id=question.id,
            session_id=created.session_id,
            answer=question.correct_answer if correct else question.incorrect_answers[0],
            start_time=ANSWERED_AT - timedelta(seconds=elapsed),
            end_time=ANSWERED_AT,
            identity=IDENTITY,
            is_last_question=index == len(created.questions) - 1,
            **extra,
        )

    async def test_create_session_returns_distinct_questions_and_activates(self):
        created = await self._start()

        self.assertTrue(created.has_questions)
        self.assertEqual(len({q.id for q in created.questions}), 10)
        session = await self.service.get_session(created.session_id)
        self.assertEqual(session.status, SessionStatus.ACTIVE)
        self.assertEqual(session.question_count, 10)

    async def test_create_session_validates_request(self):
        with self.assertRaises(ValidationError):
            await self.service.create_session(CreateSessionIn(identity=IDENTITY, question_count=51))
        with self.assertRaises(ValidationError):
            await self.service.create_session(CreateSessionIn(identity=IDENTITY, category="astrology"))

    async def test_create_session_is_rate_limited(self):
        for _ in range(3):
            await self._start(2)
        with self.assertRaises(RateLimitExceeded):
            await self._start(2)

    async def test_short_question_bank_fails(self):
        with self.assertRaises(QuestionProviderError):
            await self._start(21)

    async def test_category_falls_back_to_other_categories(self):
        await upsert_questions(self.db, [make_question(100, Category.MUSIC)])

        created = await self.service.create_session(
            CreateSessionIn(identity=IDENTITY, question_count=3, category="music")
        )

        self.assertEqual(len(created.questions), 3)
        self.assertIn(100, [q.id for q in created.questions])

    async def test_correct_answer_scores_from_server_timing(self):
        created = await self._start()

        out = await self.service.submit_answer(self._answer(created, 0))

        # 15 - (5 - 0.5) = 10.5 seconds left, rounded half up.
        self.assertTrue(out.is_correct)
        self.assertEqual(out.score.points, 11)
        self.assertEqual(out.score.current_streak, 1)
        self.assertFalse(out.duplicate)

    async def test_timeout_answer_is_wrong(self):
        created = await self._start()
        payload = self._answer(created, 0, elapsed=15.0).model_copy(update={"answer": None})

        out = await self.service.submit_answer(payload)

        self.assertFalse(out.is_correct)
        self.assertEqual(out.score.points, 0)
        self.assertEqual(out.correct_answer, created.questions[0].correct_answer)

    async def test_duplicate_submission_is_scored_once(self):
        created = await self._start()
        first = await self.service.submit_answer(self._answer(created, 0))

        again = await self.service.submit_answer(self._answer(created, 0, elapsed=1.0))

        self.assertTrue(again.duplicate)
        self.assertEqual(again.score.points, first.score.points)
        user = await self.service.user_stats(IDENTITY)
        self.assertEqual(user.total_points, first.score.points)
        responses = await self.service.repository.list_responses(created.session_id)
        self.assertEqual(len(responses), 1)

    async def test_invalid_timing_is_recorded_as_wrong_and_round_continues(self):
        created = await self._start(3)

        with self.assertRaises(TimingInvalidError):
            await self.service.submit_answer(self._answer(created, 0, elapsed=16.0))

        responses = await self.service.repository.list_responses(created.session_id)
        self.assertEqual(len(responses), 1)
        self.assertFalse(responses[0].is_correct)
        self.assertEqual(responses[0].points_earned, 0)
        self.assertEqual(responses[0].streak_count, 0)

        session = await self.service.get_session(created.session_id)
        self.assertEqual(session.current_index, 1)

        second = await self.service.submit_answer(self._answer(created, 1))
        third = await self.service.submit_answer(self._answer(created, 2))
        await self.service.drain()

        self.assertEqual(second.score.points, 11)
        self.assertEqual(third.score.points, 12)
        session = await self.service.get_session(created.session_id)
        self.assertEqual(session.status, SessionStatus.COMPLETED)
        results = await self.service.results(created.session_id)
        self.assertEqual(results.correct_answers, 2)
        self.assertEqual(results.total_points, 23)

    async def test_out_of_order_question_is_rejected(self):
        created = await self._start()

        with self.assertRaises(ValidationError):
            await self.service.submit_answer(self._answer(created, 1))

    async def test_question_from_another_session_is_rejected(self):
        created = await self._start(2)
        outsider = next(i for i in range(1, 21) if i not in {q.id for q in created.questions})
        payload = self._answer(created, 0).model_copy(update={"question_id": outsider})

        with self.assertRaises(ValidationError):
            await self.service.submit_answer(payload)

    async def test_full_round_finalizes_with_server_totals(self):
        created = await self._start()
        pattern = [True, True, True, False, True, True, True, True, False, True]

        outs = []
        for index, correct in enumerate(pattern):
            extra = {}
            if index == len(pattern) - 1:
                extra["final_stats"] = FinalStats(correct_answers=10, total_questions=10, best_streak=10, final_score=999)
            outs.append(await self.service.submit_answer(self._answer(created, index, correct, **extra)))
        await self.service.drain()

        self.assertEqual([o.score.points for o in outs], [11, 12, 13, 0, 11, 12, 13, 14, 0, 11])
        self.assertEqual([o.score.current_streak for o in outs], [1, 2, 3, 0, 1, 2, 3, 4, 0, 1])

        session = await self.service.get_session(created.session_id)
        self.assertEqual(session.status, SessionStatus.COMPLETED)
        self.assertIsNotNone(session.ended_at)

        user = await self.service.user_stats(IDENTITY)
        self.assertEqual(user.identity, IDENTITY.lower())
        self.assertEqual(user.total_points, 97)
        self.assertEqual(user.best_streak, 4)
        self.assertEqual(user.games_played, 1)

        results = await self.service.results(created.session_id)
        self.assertEqual(results.correct_answers, 8)
        self.assertEqual(results.total_questions, 10)
        self.assertEqual(results.total_points, 97)
        self.assertEqual(results.category, "science")
        self.assertEqual(results.average_response_time, 5000)

        streaks = await self.db.streak_history.find({"session_id": created.session_id}).to_list()
        self.assertEqual([s["streak_count"] for s in streaks], [4])

        user_id = (await self.service.repository.get_user(IDENTITY)).id
        self.leaderboard.refresh.assert_awaited_once_with(user_id)

    async def test_collaborator_failure_does_not_fail_submission(self):
        self.leaderboard.refresh.side_effect = RuntimeError("leaderboard store down")
        created = await self._start(1)

        out = await self.service.submit_answer(self._answer(created, 0))
        await self.service.drain()

        self.assertTrue(out.is_correct)
        session = await self.service.get_session(created.session_id)
        self.assertEqual(session.status, SessionStatus.COMPLETED)

    async def test_cancel_active_session_blocks_further_answers(self):
        created = await self._start(2)

        cancelled = await self.service.cancel_session(created.session_id)

        self.assertEqual(cancelled.status, SessionStatus.CANCELLED)
        with self.assertRaises(ValidationError):
            await self.service.submit_answer(self._answer(created, 0))

    async def test_cancel_completed_session_is_a_no_op(self):
        created = await self._start(1)
        await self.service.submit_answer(self._answer(created, 0))

        out = await self.service.cancel_session(created.session_id)

        self.assertEqual(out.status, SessionStatus.COMPLETED)

    async def test_recently_seen_questions_are_avoided(self):
        first = await self._start(10)
        for index in range(10):
            await self.service.submit_answer(self._answer(first, index))

        second = await self._start(10)

        self.assertFalse({q.id for q in first.questions} & {q.id for q in second.questions})

    async def test_single_run_with_scattered_misses(self):
        created = await self._start()
        pattern = [False, True, True, True, True, True, True, True, False, False]

        outs = [await self.service.submit_answer(self._answer(created, i, c)) for i, c in enumerate(pattern)]
        await self.service.drain()

        points = [o.score.points for o in outs]
        self.assertEqual(points, [0, 11, 12, 13, 14, 15, 17, 17, 0, 0])
        results = await self.service.results(created.session_id)
        self.assertEqual(results.correct_answers, 7)
        self.assertEqual(results.best_streak, 7)
        self.assertEqual(results.total_points, sum(points))
        streaks = await self.db.streak_history.find({"session_id": created.session_id}).to_list()
        self.assertEqual([s["streak_count"] for s in streaks], [7])

    async def test_question_fetches_are_rate_limited(self):
        self.service.rate_limiter = RateLimiter(
            {
                RateLimitAction.SESSION_CREATE: RateLimitConfig(max_attempts=10, window_seconds=10),
                RateLimitAction.QUESTION_FETCH: RateLimitConfig(max_attempts=1, window_seconds=60),
            }
        )

        await self._start(2)
        with self.assertRaises(RateLimitExceeded):
            await self._start(2)
