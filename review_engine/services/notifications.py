"""
Reminder notifications: when to emit them and how to deliver them.

A queued message is either sent or suppressed, never both, and at most once.
Each batch leases (claims) a message before deciding on it, so two batches
that overlap in time cannot both deliver it. Delivery failures leave the
message scheduled with one more attempt recorded; a message that runs out of
attempts simply stops being picked up.
"""
from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from review_engine.clock import Clock, SystemClock, as_utc
from review_engine.config import Settings, settings
from review_engine.errors import DeliveryError, ValidationError
from review_engine.models.notification import (
    BatchResult,
    NotificationDecision,
    NotificationMessage,
    NotificationSettings,
    NotificationStatistics,
    NotificationStatus,
    NotificationType,
    ScanResult,
)
from review_engine.models.schedule import ReviewSchedule
from review_engine.ports import (
    NotificationQueue,
    NotificationSender,
    NotificationSettingsStore,
    ReviewScheduleStore,
    TransactionFactory,
)

logger = logging.getLogger(__name__)

_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "review-engine/notifications")


def notification_id(*parts: str) -> str:
    """Stable message id, so that re-scanning the same situation enqueues nothing new."""
    return str(uuid.uuid5(_ID_NAMESPACE, ":".join(parts)))


class NotificationPolicy:
    def should_send(
        self,
        learner_id: str,
        candidate: NotificationMessage,
        prefs: NotificationSettings,
        now: datetime,
    ) -> NotificationDecision:
        if candidate.recipient_id != learner_id or prefs.learner_id != learner_id:
            raise ValueError(f"notification {candidate.id} is not addressed to {learner_id}")
        if not prefs.enabled:
            return NotificationDecision(send=False, reason="notifications_disabled")
        if not prefs.is_category_enabled(candidate.category):
            return NotificationDecision(
                send=False, reason=f"category_disabled:{candidate.category.value}"
            )
        if not candidate.urgent and prefs.is_quiet_time(now):
            return NotificationDecision(send=False, reason="quiet_hours")
        return NotificationDecision(send=True, channels=prefs.channels)


class NotificationManager:
    def __init__(
        self,
        settings_store: NotificationSettingsStore,
        queue: NotificationQueue,
        sender: NotificationSender,
        transaction: TransactionFactory,
        schedules: ReviewScheduleStore,
        clock: Clock | None = None,
        policy: NotificationPolicy | None = None,
        config: Settings = settings,
    ) -> None:
        self.settings_store = settings_store
        self.queue = queue
        self.sender = sender
        self._transaction = transaction
        self.schedules = schedules
        self.clock = clock or SystemClock()
        self.policy = policy or NotificationPolicy()
        self.config = config

    # --- Settings ---

    async def get_settings(self, learner_id: str) -> NotificationSettings:
        stored = await self.settings_store.find_by_learner(learner_id)
        if stored is not None:
            return stored
        return NotificationSettings.create_default(learner_id, timezone=self.config.timezone)

    async def update_settings(
        self, learner_id: str, updates: dict[str, Any]
    ) -> NotificationSettings:
        current = await self.get_settings(learner_id)
        updated = current.apply_updates(updates)
        async with self._transaction():
            await self.settings_store.save(updated)
        logger.info("Updated notification settings for %s: %s", learner_id, sorted(updates))
        return updated

    # --- Enqueueing ---

    async def schedule_notification(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        body: str,
        scheduled_at: datetime | None = None,
        urgent: bool = False,
        data: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> NotificationMessage:
        """Queue a message. Enqueueing an id that already exists returns the stored message."""
        if not recipient_id:
            raise ValidationError("recipient_id is required")
        if not title.strip() or not body.strip():
            raise ValidationError("title and body must not be empty")
        now = self.clock.now()
        message = NotificationMessage(
            id=message_id or str(uuid.uuid4()),
            recipient_id=recipient_id,
            type=type,
            urgent=urgent,
            title=title,
            body=body,
            data=data,
            scheduled_at=as_utc(scheduled_at) if scheduled_at is not None else now,
            created_at=now,
        )
        async with self._transaction():
            inserted = await self.queue.enqueue(message)
        if not inserted:
            existing = await self.queue.get(message.id)
            return existing or message
        logger.debug("Queued %s notification %s for %s", type.value, message.id, recipient_id)
        return message

    async def notify_now(
        self,
        recipient_id: str,
        type: NotificationType,
        title: str,
        body: str,
        urgent: bool = False,
        data: dict[str, Any] | None = None,
    ) -> NotificationMessage:
        """Queue a message and run it through the policy and sender immediately."""
        message = await self.schedule_notification(
            recipient_id, type, title, body, urgent=urgent, data=data
        )
        await self._process_one(message, self.clock.now(), BatchResult())
        return await self.queue.get(message.id) or message

    # --- Processing ---

    async def process_queue(
        self, batch_size: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        now = as_utc(now) if now is not None else self.clock.now()
        limit = batch_size or self.config.notification_batch_size
        pending = await self.queue.pending(now, limit, self.config.notification_max_attempts)
        result = BatchResult()
        for message in pending:
            result.processed += 1
            try:
                await self._process_one(message, now, result)
            except Exception as e:
                # One broken message must not stall the rest of the batch
                logger.exception("Failed to process notification %s", message.id)
                result.failed += 1
                result.errors.append(f"{message.id}: {e}")
        if pending:
            logger.info(
                "Notification batch: %d processed, %d sent, %d suppressed, "
                "%d failed, %d deferred, %d skipped",
                result.processed,
                result.sent,
                result.suppressed,
                result.failed,
                result.deferred,
                result.skipped,
            )
        return result

    async def _process_one(
        self, message: NotificationMessage, now: datetime, result: BatchResult
    ) -> None:
        lease = now + timedelta(seconds=self.config.notification_claim_seconds)
        async with self._transaction():
            claimed = await self.queue.claim(message.id, now, lease)
        if not claimed:
            result.skipped += 1
            return

        prefs = await self.get_settings(message.recipient_id)
        decision = self.policy.should_send(message.recipient_id, message, prefs, now)
        if not decision.send:
            async with self._transaction():
                await self.queue.mark_suppressed(message.id, decision.reason or "suppressed")
            logger.info("Suppressed notification %s: %s", message.id, decision.reason)
            result.suppressed += 1
            return

        if not message.urgent:
            frees_at = await self._hourly_cap_frees_at(message.recipient_id, now)
            if frees_at is not None:
                async with self._transaction():
                    await self.queue.defer(message.id, frees_at)
                logger.debug("Deferred notification %s until %s", message.id, frees_at)
                result.deferred += 1
                return

        errors = []
        for channel in decision.channels:
            try:
                await self.sender.send(message, channel)
            except DeliveryError as e:
                errors.append(str(e))
                continue
            async with self._transaction():
                await self.queue.mark_sent(message.id, now)
            logger.debug("Sent notification %s via %s", message.id, channel.value)
            result.sent += 1
            return

        error = "; ".join(errors)
        async with self._transaction():
            await self.queue.record_failure(message.id, error)
        logger.warning("Delivery of notification %s failed: %s", message.id, error)
        result.failed += 1
        result.errors.append(f"{message.id}: {error}")

    async def _hourly_cap_frees_at(self, recipient_id: str, now: datetime) -> datetime | None:
        """When the recipient next has room under the hourly cap, or None if it has room now."""
        window = timedelta(hours=1)
        sent = await self.queue.sent_times_since(recipient_id, now - window)
        cap = self.config.max_notifications_per_hour
        if len(sent) < cap:
            return None
        if cap <= 0:
            return now + window
        # Room opens once the oldest sends over the cap leave the window
        return sent[len(sent) - cap] + window

    # --- Periodic scan ---

    async def scan(self, now: datetime | None = None) -> ScanResult:
        """Enqueue overdue alerts and upcoming reminders, then process one batch."""
        now = as_utc(now) if now is not None else self.clock.now()
        limit = self.config.scan_limit

        overdue = await self.schedules.find_overdue(now, limit)
        by_learner: dict[str, list[ReviewSchedule]] = {}
        for schedule in overdue:
            by_learner.setdefault(schedule.learner_id, []).append(schedule)

        overdue_enqueued = 0
        prefs_cache: dict[str, NotificationSettings] = {}
        for learner_id, schedules in by_learner.items():
            prefs = prefs_cache[learner_id] = await self.get_settings(learner_id)
            # At most one overdue alert per learner per local day
            local_day = now.astimezone(ZoneInfo(prefs.timezone)).date().isoformat()
            count = len(schedules)
            overdue_enqueued += await self._enqueue_once(
                notification_id("overdue", learner_id, local_day),
                recipient_id=learner_id,
                type=NotificationType.REVIEW_OVERDUE,
                title="Reviews overdue",
                body=f"You have {count} overdue review{'s' if count != 1 else ''}.",
                scheduled_at=now,
                data={"count": count, "schedule_ids": [s.id for s in schedules]},
            )

        reminders_enqueued = 0
        horizon = now + timedelta(minutes=self.config.reminder_horizon_minutes)
        for schedule in await self.schedules.find_due_between(now, horizon, limit):
            learner_id = schedule.learner_id
            if learner_id not in prefs_cache:
                prefs_cache[learner_id] = await self.get_settings(learner_id)
            lead = timedelta(minutes=prefs_cache[learner_id].reminder_minutes_before)
            reminders_enqueued += await self._enqueue_once(
                notification_id("due", schedule.id, schedule.next_review_at.isoformat()),
                recipient_id=learner_id,
                type=NotificationType.REVIEW_DUE,
                title="Review coming up",
                body=f"Item {schedule.item_id} is due for review.",
                scheduled_at=max(now, schedule.next_review_at - lead),
                data={"schedule_id": schedule.id, "item_id": schedule.item_id},
            )

        batch = await self.process_queue(now=now)
        return ScanResult(
            overdue_enqueued=overdue_enqueued,
            reminders_enqueued=reminders_enqueued,
            batch=batch,
        )

    async def _enqueue_once(self, message_id: str, **fields: Any) -> int:
        message = NotificationMessage(id=message_id, created_at=self.clock.now(), **fields)
        async with self._transaction():
            inserted = await self.queue.enqueue(message)
        return int(inserted)

    # --- Reporting ---

    async def get_notification_statistics(self, learner_id: str) -> NotificationStatistics:
        messages = await self.queue.find_by_recipient(learner_id)
        sent = [m for m in messages if m.status is NotificationStatus.SENT]
        suppressed = [m for m in messages if m.status is NotificationStatus.SUPPRESSED]
        pending = [m for m in messages if m.status is NotificationStatus.SCHEDULED]

        settled = len(sent) + len(suppressed)
        delays = [
            max(0.0, (m.sent_at - m.scheduled_at).total_seconds())
            for m in sent
            if m.sent_at is not None
        ]
        return NotificationStatistics(
            recipient_id=learner_id,
            total=len(messages),
            total_sent=len(sent),
            total_suppressed=len(suppressed),
            pending=len(pending),
            success_rate=round(len(sent) / settled * 100, 1) if settled else 0.0,
            average_delivery_seconds=round(sum(delays) / len(delays), 1) if delays else 0.0,
            by_type=dict(Counter(m.type.value for m in messages)),
            recent_failures=sum(1 for m in pending if m.last_error),
        )
