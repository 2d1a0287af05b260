from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import FinalStats, Question, SessionStatus


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionIn(WireModel):
    identity: str = Field(min_length=1)
    question_count: Optional[int] = Field(default=None, ge=1)
    category: str = "random"
    difficulty: str = "mixed"


class CreateSessionOut(WireModel):
    success: bool = True
    session_id: int
    has_questions: bool
    questions: List[Question]


class PublicSessionOut(WireModel):
    id: int
    status: SessionStatus
    question_count: int
    current_index: int
    player_count: int = 1
    started_at: datetime
    ended_at: Optional[datetime] = None


class SubmitAnswerIn(WireModel):
    question_id: int
    session_id: int
    answer: Optional[str] = None
    start_time: datetime
    end_time: datetime
    identity: str = Field(min_length=1)
    is_last_question: bool = False
    # Client estimate, advisory only.
    final_stats: Optional[FinalStats] = None


class ScoreOut(WireModel):
    points: int
    current_streak: int
    best_streak: int


class SubmitAnswerOut(WireModel):
    success: bool = True
    is_correct: bool
    correct_answer: str
    duplicate: bool = False
    score: ScoreOut


class SessionResultsOut(WireModel):
    success: bool = True
    session_id: int
    user_id: int = 0
    identity: str = ""
    category: str = "general"
    correct_answers: int = 0
    total_questions: int = 0
    best_streak: int = 0
    total_points: int = 0
    average_response_time: float = 0.0
    started_at: datetime
    ended_at: Optional[datetime] = None


class UserStatsOut(WireModel):
    identity: str
    total_points: int
    games_played: int
    best_streak: int
    last_played_at: Optional[datetime] = None


class AdminUpsertQuestionsIn(WireModel):
    questions: List[Question]


class ErrorOut(WireModel):
    success: bool = False
    error: str
    code: str
