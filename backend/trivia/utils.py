import math
from datetime import datetime, timezone
from typing import Iterable


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; scores round .5 upwards.
    return int(math.floor(value + 0.5))


def longest_run(flags: Iterable[bool]) -> int:
    best = current = 0
    for flag in flags:
        current = current + 1 if flag else 0
        best = max(best, current)
    return best
