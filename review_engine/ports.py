"""
Outbound ports the engine depends on.

The SQLite adapters in review_engine.db.sqlite implement all of these; any
other backend only has to satisfy the same shapes.
"""
from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from review_engine.models.notification import (
    DeliveryChannel,
    NotificationMessage,
    NotificationSettings,
)
from review_engine.models.schedule import ReviewSchedule, ScheduleStatus
from review_engine.models.study_record import StudyRecord, StudyRecordCreate

# Opens a write transaction: commits on normal exit, rolls back on error.
TransactionFactory = Callable[[], AbstractAsyncContextManager[Any]]


class ReviewScheduleStore(Protocol):
    async def find_by_id(self, schedule_id: str) -> ReviewSchedule | None: ...

    async def find_by_learner_and_item(
        self, learner_id: str, item_id: str
    ) -> ReviewSchedule | None: ...

    async def find_by_learner(self, learner_id: str) -> list[ReviewSchedule]: ...

    async def find_by_item(self, item_id: str) -> list[ReviewSchedule]: ...

    async def find_due_for_learner(
        self, learner_id: str, until: datetime
    ) -> list[ReviewSchedule]: ...

    async def find_overdue_for_learner(
        self, learner_id: str, now: datetime
    ) -> list[ReviewSchedule]: ...

    async def find_overdue(self, now: datetime, limit: int) -> list[ReviewSchedule]: ...

    async def find_due_between(
        self, start: datetime, end: datetime, limit: int
    ) -> list[ReviewSchedule]: ...

    async def count_for_learner(
        self, learner_id: str, statuses: tuple[ScheduleStatus, ...]
    ) -> int: ...

    async def add(self, schedule: ReviewSchedule) -> None: ...

    async def save(self, schedule: ReviewSchedule, expected_version: int) -> None:
        """Persist `schedule` only if the stored version still equals `expected_version`.

        Raises ConcurrencyError otherwise.
        """
        ...

    async def delete(self, schedule_id: str) -> bool: ...


class StudyRecordStore(Protocol):
    async def save(self, record: StudyRecordCreate) -> StudyRecord:
        """Insert once per transition_id; a repeated call returns the stored record."""
        ...

    async def find_by_learner(
        self,
        learner_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[StudyRecord]:
        """Records in [since, until], newest first."""
        ...

    async def find_by_item(
        self,
        item_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[StudyRecord]:
        """Every learner's records for one item in [since, until], newest first."""
        ...

    async def activity_minutes(
        self, learner_id: str, since: datetime, until: datetime
    ) -> list[datetime]:
        """Distinct minutes (UTC) in [since, until] in which the learner studied."""
        ...


class NotificationSettingsStore(Protocol):
    async def find_by_learner(self, learner_id: str) -> NotificationSettings | None: ...

    async def save(self, settings: NotificationSettings) -> None: ...


class NotificationQueue(Protocol):
    async def enqueue(self, message: NotificationMessage) -> bool:
        """Store a scheduled message. Returns False if the id already exists."""
        ...

    async def get(self, message_id: str) -> NotificationMessage | None: ...

    async def pending(
        self, now: datetime, limit: int, max_attempts: int
    ) -> list[NotificationMessage]: ...

    async def claim(self, message_id: str, now: datetime, until: datetime) -> bool:
        """Lease a scheduled message for delivery. False if sent, suppressed or leased."""
        ...

    async def defer(self, message_id: str, until: datetime) -> None:
        """Unlease a scheduled message and move its scheduled_at to `until`."""
        ...

    async def mark_sent(self, message_id: str, sent_at: datetime) -> bool: ...

    async def mark_suppressed(self, message_id: str, reason: str) -> bool: ...

    async def record_failure(self, message_id: str, error: str) -> None: ...

    async def sent_times_since(self, recipient_id: str, since: datetime) -> list[datetime]:
        """sent_at of the recipient's messages sent after `since`, oldest first."""
        ...

    async def find_by_recipient(
        self, recipient_id: str, limit: int = 1000
    ) -> list[NotificationMessage]: ...


class NotificationSender(Protocol):
    async def send(self, message: NotificationMessage, channel: DeliveryChannel) -> None:
        """Deliver one message on one channel. Raises DeliveryError on failure."""
        ...
