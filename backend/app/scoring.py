"""Answer scoring.

Points for a correct answer decay linearly with response time:

    factor = 1 - (1 - min_ratio) * clamp(elapsed / window, 0, 1)
    points = floor(question.points * factor + 0.5) + rank_bonus[correct_rank - 1]

so an instant answer earns full points and an answer at the lock deadline
earns ``min_ratio`` of them. Everything here is a pure function of its
arguments; no clock is read.
"""
from __future__ import annotations

import math
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .models import Question


class ScoringPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    speed_decay: bool = True
    min_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    window: Optional[float] = 20.0  # seconds; usually the lock timeout
    rank_bonus: Tuple[int, ...] = ()


def time_factor(elapsed: float, policy: ScoringPolicy) -> float:
    if not policy.speed_decay or not policy.window or policy.window <= 0:
        return 1.0
    progress = min(max(elapsed / policy.window, 0.0), 1.0)
    return 1.0 - (1.0 - policy.min_ratio) * progress


def score(
    question: Question,
    normalized_text: str,
    submitted_at: float,
    activated_at: float,
    policy: ScoringPolicy,
    correct_rank: int = 1,
) -> tuple[bool, int]:
    """Return ``(correct, points)`` for one normalized answer."""
    if normalized_text not in question.accepted_answers:
        return False, 0

    factor = time_factor(submitted_at - activated_at, policy)
    points = math.floor(question.points * factor + 0.5)
    if 1 <= correct_rank <= len(policy.rank_bonus):
        points += policy.rank_bonus[correct_rank - 1]
    return True, max(points, 0)
