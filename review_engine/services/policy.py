"""
SM-2 family spaced repetition policy.

Feedback mapping:
  AGAIN  interval resets to 1 day, ease drops by again_penalty, failure streak +1
  HARD   ease drops by hard_penalty, interval = round(interval * ease)
  GOOD   ease unchanged,             interval = round(interval * ease)
  EASY   ease rises by easy_bonus,   interval = round(interval * ease), at least +1 day

Ease is clamped to [1.0, 5.0] and intervals to [1, 365] days. The first review
of a schedule goes through initial_state() instead, which never multiplies an
interval that was never earned.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from pydantic import BaseModel, Field

from review_engine.config import Settings
from review_engine.models.feedback import ReviewFeedback

MIN_EASE = 1.0
MAX_EASE = 5.0
MIN_INTERVAL_DAYS = 1
MAX_INTERVAL_DAYS = 365


class ScheduleState(Protocol):
    interval_days: int
    ease_factor: float
    consecutive_failures: int


@dataclass(frozen=True)
class NextState:
    interval_days: int
    ease_factor: float
    next_review_at: datetime
    consecutive_failures: int


class PolicyParameters(BaseModel):
    initial_ease: float = Field(default=2.5, ge=MIN_EASE, le=MAX_EASE)
    again_penalty: float = Field(default=0.2, ge=0)
    hard_penalty: float = Field(default=0.15, ge=0)
    easy_bonus: float = Field(default=0.15, ge=0)
    easy_initial_interval: int = Field(default=4, ge=MIN_INTERVAL_DAYS, le=MAX_INTERVAL_DAYS)

    @classmethod
    def from_settings(cls, config: Settings) -> PolicyParameters:
        return cls(
            initial_ease=config.initial_ease,
            again_penalty=config.again_penalty,
            hard_penalty=config.hard_penalty,
            easy_bonus=config.easy_bonus,
            easy_initial_interval=config.easy_initial_interval,
        )


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_ease(value: float) -> float:
    return round(max(MIN_EASE, min(MAX_EASE, value)), 2)


def clamp_interval(days: int) -> int:
    return max(MIN_INTERVAL_DAYS, min(MAX_INTERVAL_DAYS, days))


class SpacedRepetitionPolicy:
    def __init__(self, params: PolicyParameters | None = None) -> None:
        self.params = params or PolicyParameters()

    def initial_state(self, feedback: ReviewFeedback, now: datetime) -> NextState:
        """State after the very first review of an item."""
        ease = clamp_ease(self.params.initial_ease + self._ease_delta(feedback))
        interval = self.params.easy_initial_interval if feedback is ReviewFeedback.EASY else 1
        return NextState(
            interval_days=clamp_interval(interval),
            ease_factor=ease,
            next_review_at=now + timedelta(days=interval),
            consecutive_failures=1 if feedback.is_failure else 0,
        )

    def next_state(
        self, current: ScheduleState, feedback: ReviewFeedback, now: datetime
    ) -> NextState:
        """State after a recurring review."""
        if current.interval_days < MIN_INTERVAL_DAYS:
            raise ValueError(f"interval_days must be >= 1, got {current.interval_days}")
        if not MIN_EASE <= current.ease_factor <= MAX_EASE:
            raise ValueError(f"ease_factor must be within [1.0, 5.0], got {current.ease_factor}")

        ease = clamp_ease(current.ease_factor + self._ease_delta(feedback))

        if feedback.is_failure:
            interval = MIN_INTERVAL_DAYS
            failures = current.consecutive_failures + 1
        else:
            interval = round_half_up(current.interval_days * ease)
            if feedback is ReviewFeedback.EASY:
                interval = max(interval, current.interval_days + 1)
            interval = clamp_interval(interval)
            failures = 0

        return NextState(
            interval_days=interval,
            ease_factor=ease,
            next_review_at=now + timedelta(days=interval),
            consecutive_failures=failures,
        )

    def _ease_delta(self, feedback: ReviewFeedback) -> float:
        if feedback is ReviewFeedback.AGAIN:
            return -self.params.again_penalty
        if feedback is ReviewFeedback.HARD:
            return -self.params.hard_penalty
        if feedback is ReviewFeedback.EASY:
            return self.params.easy_bonus
        return 0.0
