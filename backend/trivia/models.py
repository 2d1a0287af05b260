from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import now_utc


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class Category(str, Enum):
    TECHNOLOGY = "technology"
    SCIENCE = "science"
    LITERATURE = "literature"
    POP_CULTURE = "pop_culture"
    HISTORY = "history"
    GEOGRAPHY = "geography"
    SPORTS = "sports"
    GAMING = "gaming"
    INTERNET = "internet"
    MOVIES = "movies"
    MUSIC = "music"


class QuestionStatus(str, Enum):
    DRAFT = "draft"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# pending -> active -> {completed | cancelled}
SESSION_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.ACTIVE, SessionStatus.CANCELLED},
    SessionStatus.ACTIVE: {SessionStatus.COMPLETED, SessionStatus.CANCELLED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.CANCELLED: set(),
}


class Question(BaseModel):
    id: int
    content: str
    correct_answer: str
    incorrect_answers: List[str] = Field(min_length=1)
    difficulty: Difficulty
    category: Category
    status: QuestionStatus = QuestionStatus.APPROVED

    @model_validator(mode="after")
    def _distinct_answers(self) -> "Question":
        if len(set(self.incorrect_answers)) != len(self.incorrect_answers):
            raise ValueError("incorrect_answers must be unique")
        if self.correct_answer in self.incorrect_answers:
            raise ValueError("correct_answer must not appear among incorrect_answers")
        return self


class GameSession(BaseModel):
    id: int
    status: SessionStatus = SessionStatus.PENDING
    question_sequence: List[int] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=now_utc)
    ended_at: Optional[datetime] = None
    current_index: int = 0
    player_count: int = 1
    category: Optional[str] = None
    difficulty: Optional[str] = None

    def can_transition(self, target: SessionStatus) -> bool:
        return target in SESSION_TRANSITIONS[self.status]


class User(BaseModel):
    id: int
    identity: str
    total_points: int = 0
    games_played: int = 0
    best_streak: int = 0
    last_played_at: Optional[datetime] = None


class PlayerResponse(BaseModel):
    session_id: int
    user_id: int
    question_id: int
    question_index: int
    answer: Optional[str] = None
    is_correct: bool
    points_earned: int
    potential_points: int
    streak_count: int
    time_remaining: float
    response_time_ms: int
    answered_at: datetime


class StreakRecord(BaseModel):
    user_id: int
    session_id: int
    streak_count: int
    points_earned: int
    recorded_at: datetime = Field(default_factory=now_utc)


class ScoreResult(BaseModel):
    points: int
    max_points: int
    resulting_streak: int


class FinalStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    correct_answers: int = Field(default=0, alias="correctAnswers")
    total_questions: int = Field(default=0, alias="totalQuestions")
    best_streak: int = Field(default=0, alias="bestStreak")
    final_score: int = Field(default=0, alias="finalScore")


class GameConfig(BaseModel):
    identity: str
    question_count: int = Field(default=10, ge=1)
    category: str = "random"
    difficulty: str = "mixed"

    @field_validator("identity")
    @classmethod
    def _identity_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("identity must not be empty")
        return value.strip()


class GameState(BaseModel):
    """Immutable per-session snapshot; changes go through ``model_copy``."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    questions: List[Question]
    current_question_index: int = 0
    time_remaining: float = 15.0
    score: int = 0
    streak: int = 0
    best_streak: int = 0
    status: Literal["active", "completed", "cancelled"] = "active"
    identity: str
    start_time: datetime = Field(default_factory=now_utc)
    # Last failed submission, shown to the player until the next success.
    last_error: Optional[str] = None

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def is_last_question(self) -> bool:
        return self.current_question_index + 1 >= len(self.questions)
