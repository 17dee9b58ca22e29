"""
ReviewSchedule entity and its state machine.

    active ──feedback/postpone/advance/reprioritize──▶ active
    active ──mark_completed──▶ completed ──archive──▶ archived
    active ──archive──▶ archived

Purging is a row deletion handled by the review queue service; it is only
allowed for schedules that were never completed.

Transitions never mutate: they return a new ReviewSchedule (and, for
feedback, the StudyRecordCreate command that must be persisted with it).
"""
from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from review_engine.errors import InvalidStateError, ValidationError
from review_engine.models.feedback import ReviewFeedback
from review_engine.models.study_record import StudyRecordCreate

if TYPE_CHECKING:
    from review_engine.services.policy import SpacedRepetitionPolicy

MAX_POSTPONE = timedelta(days=30)
MAX_ADVANCE = timedelta(days=7)

REFERENCE_EASE = 2.5
RETENTION_FLOOR = 0.1
ADVANCED_EASE_THRESHOLD = 1.8
INTERMEDIATE_EASE_THRESHOLD = 2.3


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class DifficultyLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class ReviewSchedule(BaseModel):
    id: str
    learner_id: str
    item_id: str
    interval_days: int = Field(ge=1, le=365)
    ease_factor: float = Field(ge=1.0, le=5.0)
    next_review_at: datetime
    last_reviewed_at: datetime | None = None
    review_count: int = Field(default=0, ge=0)
    consecutive_failures: int = Field(default=0, ge=0)
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    priority_override: Priority | None = None
    completed_at: datetime | None = None
    version: int = 1
    created_at: datetime
    updated_at: datetime

    @classmethod
    def create(
        cls,
        learner_id: str,
        item_id: str,
        now: datetime,
        initial_ease: float = REFERENCE_EASE,
        schedule_id: str | None = None,
    ) -> ReviewSchedule:
        if not learner_id or not item_id:
            raise ValidationError("learner_id and item_id are required")
        return cls(
            id=schedule_id or str(uuid.uuid4()),
            learner_id=learner_id,
            item_id=item_id,
            interval_days=1,
            ease_factor=initial_ease,
            next_review_at=now + timedelta(days=1),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status is ScheduleStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def is_deleted(self) -> bool:
        return self.status is ScheduleStatus.ARCHIVED

    # --- Transitions ---

    def apply_feedback(
        self,
        feedback: ReviewFeedback,
        policy: SpacedRepetitionPolicy,
        now: datetime,
        response_time: float | None = None,
        answer: Any = None,
    ) -> tuple[ReviewSchedule, StudyRecordCreate]:
        self._require_active("apply feedback to")
        if self.review_count == 0:
            state = policy.initial_state(feedback, now)
        else:
            state = policy.next_state(self, feedback, now)

        updated = self.model_copy(
            update={
                "interval_days": state.interval_days,
                "ease_factor": state.ease_factor,
                "next_review_at": state.next_review_at,
                "consecutive_failures": state.consecutive_failures,
                "review_count": self.review_count + 1,
                "last_reviewed_at": now,
                "updated_at": now,
                "version": self.version + 1,
            }
        )
        record = StudyRecordCreate.from_feedback(
            transition_id=f"{self.id}:{updated.version}",
            schedule_id=self.id,
            learner_id=self.learner_id,
            item_id=self.item_id,
            feedback=feedback,
            created_at=now,
            response_time=response_time,
            answer=answer,
        )
        return updated, record

    def postpone(self, duration: timedelta, now: datetime) -> ReviewSchedule:
        self._require_active("postpone")
        if duration <= timedelta(0) or duration > MAX_POSTPONE:
            raise ValidationError("Postpone duration must be positive and at most 30 days")
        return self._bump(now, next_review_at=self.next_review_at + duration)

    def advance(self, duration: timedelta, now: datetime) -> ReviewSchedule:
        self._require_active("advance")
        if duration <= timedelta(0) or duration > MAX_ADVANCE:
            raise ValidationError("Advance duration must be positive and at most 7 days")
        # Advancing past "now" collapses to "due now"
        return self._bump(now, next_review_at=max(self.next_review_at - duration, now))

    def reprioritize(self, priority: Priority | None, now: datetime) -> ReviewSchedule:
        self._require_active("reprioritize")
        return self._bump(now, priority_override=priority)

    def mark_completed(self, now: datetime) -> ReviewSchedule:
        self._require_active("complete")
        return self._bump(now, status=ScheduleStatus.COMPLETED, completed_at=now)

    def archive(self, now: datetime) -> ReviewSchedule:
        if self.status is ScheduleStatus.ARCHIVED:
            raise InvalidStateError(f"Review schedule {self.id} is already archived")
        return self._bump(now, status=ScheduleStatus.ARCHIVED)

    def _bump(self, now: datetime, **changes: Any) -> ReviewSchedule:
        changes.update(updated_at=now, version=self.version + 1)
        return self.model_copy(update=changes)

    def _require_active(self, action: str) -> None:
        if not self.is_active:
            raise InvalidStateError(
                f"Cannot {action} review schedule {self.id} in state '{self.status.value}'"
            )

    # --- Derived queries ---

    def is_overdue(self, now: datetime) -> bool:
        return self.next_review_at < now

    def minutes_until_due(self, now: datetime) -> int:
        return math.floor((self.next_review_at - now).total_seconds() / 60)

    def retention_probability(self, now: datetime) -> float:
        """Forgetting-curve estimate: exp(-elapsed / strength), strength = interval scaled by ease."""
        reviewed_at = self.last_reviewed_at or self.created_at
        elapsed_days = (now - reviewed_at).total_seconds() / 86400
        if elapsed_days <= 0:
            return 1.0
        strength = self.interval_days * (self.ease_factor / REFERENCE_EASE)
        retention = math.exp(-elapsed_days / strength)
        return max(RETENTION_FLOOR, min(1.0, retention))

    def days_since_last_review(self, now: datetime) -> float:
        reviewed_at = self.last_reviewed_at or self.created_at
        return max(0.0, (now - reviewed_at).total_seconds() / 86400)

    def difficulty_level(self) -> DifficultyLevel:
        if self.ease_factor <= ADVANCED_EASE_THRESHOLD:
            return DifficultyLevel.ADVANCED
        if self.ease_factor <= INTERMEDIATE_EASE_THRESHOLD:
            return DifficultyLevel.INTERMEDIATE
        return DifficultyLevel.BEGINNER
