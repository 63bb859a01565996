"""Per-card review scheduling.

A fixed heuristic rather than SM-2: a correct answer lowers difficulty by 0.1
and schedules the next review in 3 days, a wrong answer raises it by 0.1 and
schedules it for tomorrow. First reviews seed difficulty at 0.3 / 0.7.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field

CORRECT_INTERVAL = timedelta(days=3)
WRONG_INTERVAL = timedelta(days=1)
DIFFICULTY_STEP = 0.1
INITIAL_DIFFICULTY_CORRECT = 0.3
INITIAL_DIFFICULTY_WRONG = 0.7


class CardReviewStats(BaseModel):
    correct_count: int = Field(0, ge=0)
    wrong_count: int = Field(0, ge=0)
    difficulty: float = Field(0.5, ge=0.0, le=1.0)
    due_date: datetime
    last_study_time: datetime


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class ReviewScheduler:

    def apply(self, prev: Optional[CardReviewStats], correct: bool, now: Optional[datetime] = None) -> CardReviewStats:
        now = now or datetime.now(timezone.utc)
        due = now + (CORRECT_INTERVAL if correct else WRONG_INTERVAL)
        if prev is None:
            return CardReviewStats(
                correct_count=1 if correct else 0,
                wrong_count=0 if correct else 1,
                difficulty=INITIAL_DIFFICULTY_CORRECT if correct else INITIAL_DIFFICULTY_WRONG,
                due_date=due,
                last_study_time=now,
            )
        step = -DIFFICULTY_STEP if correct else DIFFICULTY_STEP
        return CardReviewStats(
            correct_count=prev.correct_count + (1 if correct else 0),
            wrong_count=prev.wrong_count + (0 if correct else 1),
            difficulty=_clamp01(prev.difficulty + step),
            due_date=due,
            last_study_time=now,
        )


def apply_review(prev: Optional[CardReviewStats], correct: bool, now: Optional[datetime] = None) -> CardReviewStats:
    return ReviewScheduler().apply(prev, correct, now=now)
