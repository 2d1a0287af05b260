from __future__ import annotations

from typing import Optional

from .errors import RateLimitExceeded
from .models import ScoreResult
from .rate_limit import RateLimitAction, RateLimiter
from .utils import round_half_up


class ScoreCalculator:
    """Streak-weighted scoring: one point per second left, plus 10% per streak level."""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        duration: float = 15.0,
        streak_bonus_per_level: float = 0.1,
        max_streak_bonus: float = 0.5,
    ):
        self.rate_limiter = rate_limiter
        self.max_points = int(duration)
        self.streak_bonus_per_level = streak_bonus_per_level
        self.max_streak_bonus = max_streak_bonus

    def calculate_score(
        self,
        remaining_time: float,
        is_correct: bool,
        streak_before: int,
        *,
        identity: str = "anonymous",
    ) -> ScoreResult:
        if self.rate_limiter is not None and not self.rate_limiter.check(RateLimitAction.SCORE_SUBMIT, identity):
            raise RateLimitExceeded("Rate limit exceeded for score submissions")

        if not is_correct:
            return ScoreResult(points=0, max_points=self.max_points, resulting_streak=0)

        base_points = round_half_up(min(max(remaining_time, 0.0), self.max_points))
        streak_bonus = min(streak_before * self.streak_bonus_per_level, self.max_streak_bonus)
        points = round_half_up(base_points * (1 + streak_bonus))

        return ScoreResult(points=points, max_points=self.max_points, resulting_streak=streak_before + 1)
