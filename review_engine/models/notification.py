from __future__ import annotations

import re
from datetime import datetime, time
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from review_engine.errors import ValidationError

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


class NotificationCategory(str, Enum):
    REVIEW_REMINDERS = "review_reminders"
    OVERDUE_ALERTS = "overdue_alerts"
    MILESTONE_ALERTS = "milestone_alerts"
    DAILY_SUMMARY = "daily_summary"


class NotificationType(str, Enum):
    REVIEW_DUE = "review_due"
    REVIEW_OVERDUE = "review_overdue"
    STREAK_MILESTONE = "streak_milestone"
    DAILY_SUMMARY = "daily_summary"

    @property
    def category(self) -> NotificationCategory:
        return _CATEGORY[self]


_CATEGORY = {
    NotificationType.REVIEW_DUE: NotificationCategory.REVIEW_REMINDERS,
    NotificationType.REVIEW_OVERDUE: NotificationCategory.OVERDUE_ALERTS,
    NotificationType.STREAK_MILESTONE: NotificationCategory.MILESTONE_ALERTS,
    NotificationType.DAILY_SUMMARY: NotificationCategory.DAILY_SUMMARY,
}


class NotificationStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    SUPPRESSED = "suppressed"


class DeliveryChannel(str, Enum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"


class NotificationMessage(BaseModel):
    id: str
    recipient_id: str
    type: NotificationType
    urgent: bool = False
    title: str
    body: str
    data: dict[str, Any] | None = None
    scheduled_at: datetime
    sent_at: datetime | None = None
    status: NotificationStatus = NotificationStatus.SCHEDULED
    suppressed_reason: str | None = None
    attempts: int = 0
    last_error: str | None = None
    claimed_until: datetime | None = None
    created_at: datetime

    @property
    def category(self) -> NotificationCategory:
        return self.type.category


class NotificationSettings(BaseModel):
    """Per-learner notification preferences. Immutable; use apply_updates()."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    learner_id: str
    enabled: bool = True
    review_reminders: bool = True
    overdue_alerts: bool = True
    milestone_alerts: bool = True
    daily_summary: bool = True
    quiet_hours_start: str = "22:00"
    quiet_hours_end: str = "08:00"
    timezone: str = "UTC"
    channels: tuple[DeliveryChannel, ...] = (DeliveryChannel.IN_APP,)
    reminder_minutes_before: int = Field(default=30, ge=5, le=1440)

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        match = _HHMM.match(value)
        if not match:
            raise ValueError("quiet hours must use HH:MM format")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{value}'") from e
        return value

    @field_validator("channels")
    @classmethod
    def _check_channels(cls, value: tuple[DeliveryChannel, ...]) -> tuple[DeliveryChannel, ...]:
        if not value:
            raise ValueError("at least one delivery channel is required")
        if len(set(value)) != len(value):
            raise ValueError("delivery channels must be unique")
        return value

    @classmethod
    def create_default(cls, learner_id: str, timezone: str = "UTC") -> NotificationSettings:
        return cls(learner_id=learner_id, timezone=timezone)

    def apply_updates(self, updates: dict[str, Any]) -> NotificationSettings:
        """Return a new settings value with updates merged in, validated as a whole."""
        if "learner_id" in updates and updates["learner_id"] != self.learner_id:
            raise ValidationError("learner_id cannot be changed")
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ValidationError(f"Unknown notification settings: {', '.join(sorted(unknown))}")
        try:
            return type(self).model_validate({**self.model_dump(), **updates})
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    def is_category_enabled(self, category: NotificationCategory) -> bool:
        return bool(getattr(self, category.value))

    def is_quiet_time(self, at: datetime) -> bool:
        """True when `at`, seen in the learner's timezone, falls inside quiet hours.

        The window is half-open [start, end). A window whose start is after its
        end wraps midnight; start == end means no quiet hours.
        """
        start = _parse_hhmm(self.quiet_hours_start)
        end = _parse_hhmm(self.quiet_hours_end)
        if start == end:
            return False
        local = at.astimezone(ZoneInfo(self.timezone)).time().replace(tzinfo=None)
        if start < end:
            return start <= local < end
        return local >= start or local < end


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class NotificationDecision(BaseModel):
    send: bool
    reason: str | None = None
    channels: tuple[DeliveryChannel, ...] = ()


class BatchResult(BaseModel):
    processed: int = 0
    sent: int = 0
    suppressed: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: list[str] = []


class ScanResult(BaseModel):
    overdue_enqueued: int = 0
    reminders_enqueued: int = 0
    batch: BatchResult


class NotificationStatistics(BaseModel):
    recipient_id: str
    total: int
    total_sent: int
    total_suppressed: int
    pending: int
    success_rate: float
    average_delivery_seconds: float
    by_type: dict[str, int]
    recent_failures: int
