from __future__ import annotations

from dataclasses import dataclass
from functools import partial

import aiosqlite

from review_engine.clock import Clock, SystemClock
from review_engine.config import Settings, settings
from review_engine.db.sqlite import (
    SqliteNotificationQueue,
    SqliteNotificationSettingsStore,
    SqliteReviewScheduleStore,
    SqliteStudyRecordStore,
    transaction,
)
from review_engine.ports import NotificationSender
from review_engine.services.notifications import NotificationManager
from review_engine.services.review_queue import ReviewQueueService
from review_engine.services.senders import sender_from_settings


@dataclass
class ReviewEngine:
    review_queue: ReviewQueueService
    notifications: NotificationManager


def build_engine(
    db: aiosqlite.Connection,
    clock: Clock | None = None,
    sender: NotificationSender | None = None,
    config: Settings = settings,
) -> ReviewEngine:
    """Wire both services onto one SQLite connection."""
    clock = clock or SystemClock()
    begin = partial(transaction, db)
    schedules = SqliteReviewScheduleStore(db)
    review_queue = ReviewQueueService(
        schedules, SqliteStudyRecordStore(db), begin, clock=clock, config=config
    )
    notifications = NotificationManager(
        SqliteNotificationSettingsStore(db),
        SqliteNotificationQueue(db),
        sender or sender_from_settings(config),
        begin,
        schedules,
        clock=clock,
        config=config,
    )
    return ReviewEngine(review_queue=review_queue, notifications=notifications)
