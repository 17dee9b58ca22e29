from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from review_engine.config import settings
from review_engine.errors import ConcurrencyError
from review_engine.models.notification import (
    DeliveryChannel,
    NotificationMessage,
    NotificationSettings,
    NotificationStatus,
    NotificationType,
)
from review_engine.models.schedule import Priority, ReviewSchedule, ScheduleStatus
from review_engine.models.study_record import StudyRecord, StudyRecordCreate

logger = logging.getLogger(__name__)

_db_path: Path | None = None

# Fixed-width UTC text so that string comparison in SQL orders like time.
TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS review_schedules (
    id                   TEXT PRIMARY KEY,
    learner_id           TEXT NOT NULL,
    item_id              TEXT NOT NULL,
    interval_days        INTEGER NOT NULL DEFAULT 1,
    ease_factor          REAL NOT NULL DEFAULT 2.5,
    next_review_at       TEXT NOT NULL,
    last_reviewed_at     TEXT,
    review_count         INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    status               TEXT NOT NULL DEFAULT 'active',
    priority_override    TEXT,
    completed_at         TEXT,
    version              INTEGER NOT NULL DEFAULT 1,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL,
    UNIQUE (learner_id, item_id)
);
CREATE INDEX IF NOT EXISTS idx_schedules_learner_due
    ON review_schedules(learner_id, status, next_review_at);
CREATE INDEX IF NOT EXISTS idx_schedules_due ON review_schedules(status, next_review_at);
CREATE INDEX IF NOT EXISTS idx_schedules_item ON review_schedules(item_id);

CREATE TABLE IF NOT EXISTS study_records (
    id                    TEXT PRIMARY KEY,
    transition_id         TEXT NOT NULL UNIQUE,
    schedule_id           TEXT NOT NULL,
    learner_id            TEXT NOT NULL,
    item_id               TEXT NOT NULL,
    feedback              TEXT NOT NULL,
    is_correct            INTEGER NOT NULL,
    response_time_seconds REAL,
    answer_payload        TEXT,
    performance_score     REAL NOT NULL,
    study_pattern         TEXT,
    created_at            TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_learner_time ON study_records(learner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_records_schedule ON study_records(schedule_id);
CREATE INDEX IF NOT EXISTS idx_records_item_time ON study_records(item_id, created_at);

CREATE TABLE IF NOT EXISTS notification_settings (
    learner_id              TEXT PRIMARY KEY,
    enabled                 INTEGER NOT NULL DEFAULT 1,
    review_reminders        INTEGER NOT NULL DEFAULT 1,
    overdue_alerts          INTEGER NOT NULL DEFAULT 1,
    milestone_alerts        INTEGER NOT NULL DEFAULT 1,
    daily_summary           INTEGER NOT NULL DEFAULT 1,
    quiet_hours_start       TEXT NOT NULL DEFAULT '22:00',
    quiet_hours_end         TEXT NOT NULL DEFAULT '08:00',
    timezone                TEXT NOT NULL DEFAULT 'UTC',
    channels                TEXT NOT NULL DEFAULT '["in_app"]',
    reminder_minutes_before INTEGER NOT NULL DEFAULT 30,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id                TEXT PRIMARY KEY,
    recipient_id      TEXT NOT NULL,
    type              TEXT NOT NULL,
    urgent            INTEGER NOT NULL DEFAULT 0,
    title             TEXT NOT NULL,
    body              TEXT NOT NULL,
    data              TEXT,
    scheduled_at      TEXT NOT NULL,
    sent_at           TEXT,
    status            TEXT NOT NULL DEFAULT 'scheduled',
    suppressed_reason TEXT,
    attempts          INTEGER NOT NULL DEFAULT 0,
    last_error        TEXT,
    claimed_until     TEXT,
    created_at        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, sent_at);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);
INSERT OR IGNORE INTO schema_version(version) VALUES (1);
"""


async def init_sqlite(data_dir: Path) -> Path:
    global _db_path
    _db_path = data_dir / settings.sqlite_filename
    async with aiosqlite.connect(_db_path) as db:
        await db.executescript(SCHEMA_SQL)
        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        current_version = (await cursor.fetchone())[0]
        await db.commit()
    logger.info("SQLite ready at %s (schema v%s)", _db_path, current_version)
    return _db_path


async def connect(path: Path | None = None) -> aiosqlite.Connection:
    """Open a long-lived connection. The caller owns it and must close it."""
    target = path or _db_path
    assert target is not None, "SQLite not initialized"
    db = await aiosqlite.connect(target)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys=ON")
    return db


async def get_db() -> AsyncIterator[aiosqlite.Connection]:
    assert _db_path is not None, "SQLite not initialized"
    async with aiosqlite.connect(_db_path) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        yield db


_write_locks: weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Serialise a unit of writes on `db`: commit on success, roll back on error.

    Not reentrant. Store write methods never commit on their own, so every
    write must happen inside one of these blocks.
    """
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks.setdefault(db, asyncio.Lock())
    async with lock:
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def _dump_json(value: object) -> str | None:
    return None if value is None else json.dumps(value)


def _load_json(value: str | None) -> object:
    return None if value is None else json.loads(value)


# --- Review schedules ---


_SCHEDULE_COLUMNS = (
    "id, learner_id, item_id, interval_days, ease_factor, next_review_at, "
    "last_reviewed_at, review_count, consecutive_failures, status, "
    "priority_override, completed_at, version, created_at, updated_at"
)


def _row_to_schedule(row: aiosqlite.Row) -> ReviewSchedule:
    d = dict(row)
    for key in ("next_review_at", "last_reviewed_at", "completed_at", "created_at", "updated_at"):
        d[key] = _parse_ts(d[key])
    d["status"] = ScheduleStatus(d["status"])
    if d["priority_override"] is not None:
        d["priority_override"] = Priority(d["priority_override"])
    return ReviewSchedule(**d)


def _schedule_values(s: ReviewSchedule) -> tuple:
    return (
        s.learner_id,
        s.item_id,
        s.interval_days,
        s.ease_factor,
        _ts(s.next_review_at),
        _ts(s.last_reviewed_at),
        s.review_count,
        s.consecutive_failures,
        s.status.value,
        s.priority_override.value if s.priority_override else None,
        _ts(s.completed_at),
        s.version,
        _ts(s.created_at),
        _ts(s.updated_at),
    )


class SqliteReviewScheduleStore:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def _fetch(self, sql: str, params: tuple) -> list[ReviewSchedule]:
        cursor = await self.db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_schedule(r) for r in rows]

    async def find_by_id(self, schedule_id: str) -> ReviewSchedule | None:
        cursor = await self.db.execute(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules WHERE id = ?",  # noqa: S608
            (schedule_id,),
        )
        row = await cursor.fetchone()
        return _row_to_schedule(row) if row else None

    async def find_by_learner_and_item(
        self, learner_id: str, item_id: str
    ) -> ReviewSchedule | None:
        cursor = await self.db.execute(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE learner_id = ? AND item_id = ?",
            (learner_id, item_id),
        )
        row = await cursor.fetchone()
        return _row_to_schedule(row) if row else None

    async def find_by_learner(self, learner_id: str) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE learner_id = ? ORDER BY created_at, id",
            (learner_id,),
        )

    async def find_by_item(self, item_id: str) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE item_id = ? ORDER BY created_at, id",
            (item_id,),
        )

    async def find_due_for_learner(
        self, learner_id: str, until: datetime
    ) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE learner_id = ? AND status = 'active' AND next_review_at <= ? "
            "ORDER BY next_review_at, id",
            (learner_id, _ts(until)),
        )

    async def find_overdue_for_learner(
        self, learner_id: str, now: datetime
    ) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE learner_id = ? AND status = 'active' AND next_review_at < ? "
            "ORDER BY next_review_at, id",
            (learner_id, _ts(now)),
        )

    async def find_overdue(self, now: datetime, limit: int) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE status = 'active' AND next_review_at < ? "
            "ORDER BY next_review_at, id LIMIT ?",
            (_ts(now), limit),
        )

    async def find_due_between(
        self, start: datetime, end: datetime, limit: int
    ) -> list[ReviewSchedule]:
        return await self._fetch(
            f"SELECT {_SCHEDULE_COLUMNS} FROM review_schedules "  # noqa: S608
            "WHERE status = 'active' AND next_review_at >= ? AND next_review_at <= ? "
            "ORDER BY next_review_at, id LIMIT ?",
            (_ts(start), _ts(end), limit),
        )

    async def count_for_learner(
        self, learner_id: str, statuses: tuple[ScheduleStatus, ...]
    ) -> int:
        if not statuses:
            return 0
        placeholders = ", ".join("?" for _ in statuses)
        cursor = await self.db.execute(
            f"SELECT COUNT(*) FROM review_schedules "  # noqa: S608
            f"WHERE learner_id = ? AND status IN ({placeholders})",
            (learner_id, *(s.value for s in statuses)),
        )
        return (await cursor.fetchone())[0]

    async def add(self, schedule: ReviewSchedule) -> None:
        try:
            await self.db.execute(
                f"INSERT INTO review_schedules ({_SCHEDULE_COLUMNS}) "  # noqa: S608
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (schedule.id, *_schedule_values(schedule)),
            )
        except sqlite3.IntegrityError as e:
            raise ConcurrencyError(
                f"Review schedule for learner {schedule.learner_id} "
                f"and item {schedule.item_id} already exists"
            ) from e

    async def save(self, schedule: ReviewSchedule, expected_version: int) -> None:
        cursor = await self.db.execute(
            """UPDATE review_schedules
               SET learner_id = ?, item_id = ?, interval_days = ?, ease_factor = ?,
                   next_review_at = ?, last_reviewed_at = ?, review_count = ?,
                   consecutive_failures = ?, status = ?, priority_override = ?,
                   completed_at = ?, version = ?, created_at = ?, updated_at = ?
               WHERE id = ? AND version = ?""",
            (*_schedule_values(schedule), schedule.id, expected_version),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyError(
                f"Review schedule {schedule.id} was modified concurrently "
                f"(expected version {expected_version})"
            )

    async def delete(self, schedule_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM review_schedules WHERE id = ?", (schedule_id,))
        return (cursor.rowcount or 0) > 0


# --- Study records ---


def _row_to_record(row: aiosqlite.Row) -> StudyRecord:
    d = dict(row)
    d["is_correct"] = bool(d["is_correct"])
    d["answer_payload"] = _load_json(d["answer_payload"])
    d["created_at"] = _parse_ts(d["created_at"])
    return StudyRecord(**d)


class SqliteStudyRecordStore:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def save(self, record: StudyRecordCreate) -> StudyRecord:
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO study_records
               (id, transition_id, schedule_id, learner_id, item_id, feedback,
                is_correct, response_time_seconds, answer_payload,
                performance_score, study_pattern, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                str(uuid.uuid4()),
                record.transition_id,
                record.schedule_id,
                record.learner_id,
                record.item_id,
                record.feedback.value,
                int(record.is_correct),
                record.response_time_seconds,
                _dump_json(record.answer_payload),
                record.performance_score,
                record.study_pattern.value if record.study_pattern else None,
                _ts(record.created_at),
            ),
        )
        if cursor.rowcount == 0:
            logger.debug("Study record for transition %s already stored", record.transition_id)
        cursor = await self.db.execute(
            "SELECT * FROM study_records WHERE transition_id = ?", (record.transition_id,)
        )
        return _row_to_record(await cursor.fetchone())

    async def find_by_learner(
        self,
        learner_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[StudyRecord]:
        clauses = ["learner_id = ?"]
        params: list[object] = [learner_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(until))
        sql = (
            f"SELECT * FROM study_records WHERE {' AND '.join(clauses)} "  # noqa: S608
            "ORDER BY created_at DESC, id DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await self.db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    async def find_by_item(
        self,
        item_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[StudyRecord]:
        clauses = ["item_id = ?"]
        params: list[object] = [item_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(until))
        cursor = await self.db.execute(
            f"SELECT * FROM study_records WHERE {' AND '.join(clauses)} "  # noqa: S608
            "ORDER BY created_at DESC, id DESC",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_record(r) for r in rows]

    async def activity_minutes(
        self, learner_id: str, since: datetime, until: datetime
    ) -> list[datetime]:
        # Every UTC offset is a whole number of minutes, so one minute never spans two local days
        cursor = await self.db.execute(
            """SELECT DISTINCT substr(created_at, 1, 16) FROM study_records
               WHERE learner_id = ? AND created_at >= ? AND created_at <= ?""",
            (learner_id, _ts(since), _ts(until)),
        )
        rows = await cursor.fetchall()
        return [
            datetime.strptime(r[0], "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc) for r in rows
        ]


# --- Notification settings ---


def _row_to_settings(row: aiosqlite.Row) -> NotificationSettings:
    d = dict(row)
    d.pop("updated_at")
    for key in ("enabled", "review_reminders", "overdue_alerts", "milestone_alerts", "daily_summary"):
        d[key] = bool(d[key])
    d["channels"] = tuple(DeliveryChannel(c) for c in json.loads(d["channels"]))
    return NotificationSettings(**d)


class SqliteNotificationSettingsStore:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def find_by_learner(self, learner_id: str) -> NotificationSettings | None:
        cursor = await self.db.execute(
            "SELECT * FROM notification_settings WHERE learner_id = ?", (learner_id,)
        )
        row = await cursor.fetchone()
        return _row_to_settings(row) if row else None

    async def save(self, settings: NotificationSettings) -> None:
        await self.db.execute(
            """INSERT INTO notification_settings
               (learner_id, enabled, review_reminders, overdue_alerts, milestone_alerts,
                daily_summary, quiet_hours_start, quiet_hours_end, timezone, channels,
                reminder_minutes_before, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(learner_id) DO UPDATE SET
                   enabled = excluded.enabled,
                   review_reminders = excluded.review_reminders,
                   overdue_alerts = excluded.overdue_alerts,
                   milestone_alerts = excluded.milestone_alerts,
                   daily_summary = excluded.daily_summary,
                   quiet_hours_start = excluded.quiet_hours_start,
                   quiet_hours_end = excluded.quiet_hours_end,
                   timezone = excluded.timezone,
                   channels = excluded.channels,
                   reminder_minutes_before = excluded.reminder_minutes_before,
                   updated_at = excluded.updated_at""",
            (
                settings.learner_id,
                int(settings.enabled),
                int(settings.review_reminders),
                int(settings.overdue_alerts),
                int(settings.milestone_alerts),
                int(settings.daily_summary),
                settings.quiet_hours_start,
                settings.quiet_hours_end,
                settings.timezone,
                json.dumps([c.value for c in settings.channels]),
                settings.reminder_minutes_before,
                _ts(datetime.now(timezone.utc)),
            ),
        )


# --- Notification queue ---


def _row_to_message(row: aiosqlite.Row) -> NotificationMessage:
    d = dict(row)
    d["type"] = NotificationType(d["type"])
    d["status"] = NotificationStatus(d["status"])
    d["urgent"] = bool(d["urgent"])
    d["data"] = _load_json(d["data"])
    for key in ("scheduled_at", "sent_at", "claimed_until", "created_at"):
        d[key] = _parse_ts(d[key])
    return NotificationMessage(**d)


class SqliteNotificationQueue:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def enqueue(self, message: NotificationMessage) -> bool:
        cursor = await self.db.execute(
            """INSERT OR IGNORE INTO notifications
               (id, recipient_id, type, urgent, title, body, data, scheduled_at,
                sent_at, status, suppressed_reason, attempts, last_error,
                claimed_until, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.recipient_id,
                message.type.value,
                int(message.urgent),
                message.title,
                message.body,
                _dump_json(message.data),
                _ts(message.scheduled_at),
                _ts(message.sent_at),
                message.status.value,
                message.suppressed_reason,
                message.attempts,
                message.last_error,
                _ts(message.claimed_until),
                _ts(message.created_at),
            ),
        )
        return cursor.rowcount > 0

    async def get(self, message_id: str) -> NotificationMessage | None:
        cursor = await self.db.execute("SELECT * FROM notifications WHERE id = ?", (message_id,))
        row = await cursor.fetchone()
        return _row_to_message(row) if row else None

    async def pending(
        self, now: datetime, limit: int, max_attempts: int
    ) -> list[NotificationMessage]:
        ts = _ts(now)
        cursor = await self.db.execute(
            """SELECT * FROM notifications
               WHERE status = 'scheduled' AND scheduled_at <= ? AND attempts < ?
               AND (claimed_until IS NULL OR claimed_until <= ?)
               ORDER BY urgent DESC, scheduled_at ASC, id ASC
               LIMIT ?""",
            (ts, max_attempts, ts, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(r) for r in rows]

    async def claim(self, message_id: str, now: datetime, until: datetime) -> bool:
        cursor = await self.db.execute(
            """UPDATE notifications SET claimed_until = ?
               WHERE id = ? AND status = 'scheduled'
               AND (claimed_until IS NULL OR claimed_until <= ?)""",
            (_ts(until), message_id, _ts(now)),
        )
        return cursor.rowcount == 1

    async def defer(self, message_id: str, until: datetime) -> None:
        await self.db.execute(
            """UPDATE notifications SET scheduled_at = ?, claimed_until = NULL
               WHERE id = ? AND status = 'scheduled'""",
            (_ts(until), message_id),
        )

    async def mark_sent(self, message_id: str, sent_at: datetime) -> bool:
        cursor = await self.db.execute(
            """UPDATE notifications
               SET status = 'sent', sent_at = ?, attempts = attempts + 1, claimed_until = NULL
               WHERE id = ? AND status = 'scheduled'""",
            (_ts(sent_at), message_id),
        )
        return cursor.rowcount == 1

    async def mark_suppressed(self, message_id: str, reason: str) -> bool:
        cursor = await self.db.execute(
            """UPDATE notifications
               SET status = 'suppressed', suppressed_reason = ?, claimed_until = NULL
               WHERE id = ? AND status = 'scheduled'""",
            (reason, message_id),
        )
        return cursor.rowcount == 1

    async def record_failure(self, message_id: str, error: str) -> None:
        await self.db.execute(
            """UPDATE notifications
               SET attempts = attempts + 1, last_error = ?, claimed_until = NULL
               WHERE id = ? AND status = 'scheduled'""",
            (error, message_id),
        )

    async def sent_times_since(self, recipient_id: str, since: datetime) -> list[datetime]:
        cursor = await self.db.execute(
            """SELECT sent_at FROM notifications
               WHERE recipient_id = ? AND status = 'sent' AND sent_at > ?
               ORDER BY sent_at ASC""",
            (recipient_id, _ts(since)),
        )
        rows = await cursor.fetchall()
        return [_parse_ts(r[0]) for r in rows]

    async def find_by_recipient(
        self, recipient_id: str, limit: int = 1000
    ) -> list[NotificationMessage]:
        cursor = await self.db.execute(
            """SELECT * FROM notifications WHERE recipient_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (recipient_id, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_message(r) for r in rows]
