from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from review_engine.models.feedback import ReviewFeedback

QUICK_RESPONSE_SECONDS = 30.0
SLOW_RESPONSE_SECONDS = 60.0

_BASE_SCORE = {
    ReviewFeedback.AGAIN: 0.0,
    ReviewFeedback.HARD: 60.0,
    ReviewFeedback.GOOD: 80.0,
    ReviewFeedback.EASY: 100.0,
}


class StudyPattern(str, Enum):
    QUICK_CORRECT = "quick_correct"
    SLOW_CORRECT = "slow_correct"
    QUICK_INCORRECT = "quick_incorrect"
    SLOW_INCORRECT = "slow_incorrect"


def performance_score(feedback: ReviewFeedback, response_time: float | None) -> float:
    """Score a single answer on 0-100: feedback sets the base, slow answers lose up to 20%."""
    base = _BASE_SCORE[feedback]
    if response_time is None or response_time <= QUICK_RESPONSE_SECONDS:
        factor = 1.0
    elif response_time <= SLOW_RESPONSE_SECONDS:
        factor = 0.9
    else:
        factor = 0.8
    return round(base * factor, 1)


def classify_pattern(is_correct: bool, response_time: float | None) -> StudyPattern | None:
    if response_time is None:
        return None
    quick = response_time <= QUICK_RESPONSE_SECONDS
    if is_correct:
        return StudyPattern.QUICK_CORRECT if quick else StudyPattern.SLOW_CORRECT
    return StudyPattern.QUICK_INCORRECT if quick else StudyPattern.SLOW_INCORRECT


class StudyRecordCreate(BaseModel):
    """Record-creation command produced by a schedule transition."""

    model_config = ConfigDict(frozen=True)

    transition_id: str
    schedule_id: str
    learner_id: str
    item_id: str
    feedback: ReviewFeedback
    is_correct: bool
    response_time_seconds: float | None = Field(default=None, ge=0)
    answer_payload: Any = None
    performance_score: float
    study_pattern: StudyPattern | None = None
    created_at: datetime

    @classmethod
    def from_feedback(
        cls,
        *,
        transition_id: str,
        schedule_id: str,
        learner_id: str,
        item_id: str,
        feedback: ReviewFeedback,
        created_at: datetime,
        response_time: float | None = None,
        answer: Any = None,
    ) -> StudyRecordCreate:
        is_correct = not feedback.is_failure
        return cls(
            transition_id=transition_id,
            schedule_id=schedule_id,
            learner_id=learner_id,
            item_id=item_id,
            feedback=feedback,
            is_correct=is_correct,
            response_time_seconds=response_time,
            answer_payload=answer,
            performance_score=performance_score(feedback, response_time),
            study_pattern=classify_pattern(is_correct, response_time),
            created_at=created_at,
        )


class StudyRecord(StudyRecordCreate):
    id: str


class StudyPatternSummary(BaseModel):
    pattern: StudyPattern
    count: int
    percentage: float
    average_performance_score: float


class StudyPatternReport(BaseModel):
    learner_id: str
    since: datetime
    until: datetime
    total_records: int
    untimed_records: int
    patterns: list[StudyPatternSummary]
    dominant_pattern: StudyPattern | None = None
