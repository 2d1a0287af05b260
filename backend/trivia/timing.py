"""Answer-timing validation against the round clock."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

DEFAULT_DURATION_SECONDS = 15.0
DEFAULT_TOLERANCE_MS = 500


@dataclass(frozen=True)
class TimingResult:
    is_valid: bool
    remaining_time: float
    elapsed: float


def validate_timing(
    start_time: datetime,
    end_time: datetime,
    duration: float = DEFAULT_DURATION_SECONDS,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
) -> TimingResult:
    """Check a claimed answer window and derive the time left on the clock.

    The tolerance absorbs clock and network skew: it is subtracted from the
    elapsed time before computing ``remaining_time`` and added to the upper
    bound of the validity check. Windows outside ``[0, duration + tolerance]``
    are invalid; they are never clamped into range.
    """

    tolerance = tolerance_ms / 1000
    elapsed = (end_time - start_time).total_seconds()
    adjusted_elapsed = max(0.0, elapsed - tolerance)
    remaining_time = max(0.0, duration - adjusted_elapsed)
    is_valid = 0 <= elapsed <= duration + tolerance
    return TimingResult(is_valid=is_valid, remaining_time=remaining_time, elapsed=elapsed)
