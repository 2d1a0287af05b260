from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any, Collection, List, Optional, Protocol

import structlog

from .errors import QuestionProviderError, ValidationError
from .models import Category, Difficulty, Question, QuestionStatus

logger = structlog.get_logger(__name__)

RANDOM_CATEGORY = "random"
MIXED_DIFFICULTY = "mixed"


class QuestionProvider(Protocol):
    async def get_questions(
        self,
        category: str,
        difficulty: str,
        count: int,
        exclude_ids: Collection[int] = (),
    ) -> List[Question]:
        """Return exactly ``count`` approved questions or raise QuestionProviderError."""


def _parse_category(category: str) -> Optional[Category]:
    if category == RANDOM_CATEGORY:
        return None
    try:
        return Category(category)
    except ValueError as exc:
        raise ValidationError(f"Unknown category: {category}") from exc


def _parse_difficulty(difficulty: str) -> Optional[Difficulty]:
    if difficulty == MIXED_DIFFICULTY:
        return None
    try:
        return Difficulty(difficulty)
    except ValueError as exc:
        raise ValidationError(f"Unknown difficulty: {difficulty}") from exc


class StoredQuestionProvider:
    """Draws approved questions from the question bank collection.

    When the requested category cannot fill the round, questions from the
    other categories (same difficulty filter) top it up; recently seen
    questions are only reused as a last resort.
    """

    def __init__(self, database: Any, rng: Optional[random.Random] = None):
        self.db = database
        self.rng = rng or random.Random()

    async def get_questions(
        self,
        category: str,
        difficulty: str,
        count: int,
        exclude_ids: Collection[int] = (),
    ) -> List[Question]:
        wanted_category = _parse_category(category)
        wanted_difficulty = _parse_difficulty(difficulty)
        excluded = set(exclude_ids)

        pool = await self._approved(wanted_difficulty)
        fresh = [q for q in pool if q.id not in excluded]

        if wanted_category is None:
            picked = self._sample(fresh, count)
        else:
            picked = self._sample([q for q in fresh if q.category == wanted_category], count)
            if len(picked) < count:
                adjacent = [q for q in fresh if q.category != wanted_category]
                picked += self._sample(adjacent, count - len(picked))
                logger.info(
                    "question_category_fallback",
                    category=category,
                    difficulty=difficulty,
                    filled=len(picked),
                    requested=count,
                )

        if len(picked) < count:
            chosen = {q.id for q in picked}
            repeats = [q for q in pool if q.id in excluded and q.id not in chosen]
            picked += self._sample(repeats, count - len(picked))

        if len(picked) < count:
            raise QuestionProviderError(
                f"Only {len(picked)} of {count} questions available for {category}/{difficulty}"
            )

        self.rng.shuffle(picked)
        return picked

    async def _approved(self, difficulty: Optional[Difficulty]) -> List[Question]:
        query: dict = {"status": QuestionStatus.APPROVED.value}
        if difficulty is not None:
            query["difficulty"] = difficulty.value
        return [Question(**doc) async for doc in self.db.questions.find(query)]

    def _sample(self, questions: List[Question], count: int) -> List[Question]:
        if count <= 0:
            return []
        return self.rng.sample(questions, min(count, len(questions)))


async def upsert_questions(database: Any, questions: List[Question]) -> int:
    for question in questions:
        await database.questions.update_one(
            {"id": question.id},
            {"$set": question.model_dump(mode="json")},
            upsert=True,
        )
    return len(questions)


async def load_question_bank(database: Any, path: str) -> int:
    """Seed the question bank from a JSON list of question objects."""

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    questions = [Question(**item) for item in raw]
    count = await upsert_questions(database, questions)
    logger.info("question_bank_loaded", path=path, count=count)
    return count
