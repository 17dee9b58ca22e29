import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from review_engine.engine import build_engine
from review_engine.errors import DeliveryError, ValidationError
from review_engine.models.notification import (
    DeliveryChannel,
    NotificationMessage,
    NotificationSettings,
    NotificationStatus,
    NotificationType,
)
from review_engine.services.notifications import NotificationPolicy, notification_id
from review_engine.services.senders import LogSender, WebhookSender

from tests.conftest import T0, RecordingSender


def candidate(urgent=False, type=NotificationType.REVIEW_DUE, recipient="learner-1"):
    return NotificationMessage(
        id="m-1",
        recipient_id=recipient,
        type=type,
        urgent=urgent,
        title="Review",
        body="Time to review",
        scheduled_at=T0,
        created_at=T0,
    )


# --- Policy ---


def test_quiet_hours_suppress_non_urgent_messages():
    """22:00-08:00 quiet hours, checked at 23:30 local time."""
    prefs = NotificationSettings.create_default("learner-1")
    late = T0.replace(hour=23, minute=30)
    policy = NotificationPolicy()

    decision = policy.should_send("learner-1", candidate(), prefs, late)
    assert not decision.send
    assert decision.reason == "quiet_hours"

    urgent = policy.should_send("learner-1", candidate(urgent=True), prefs, late)
    assert urgent.send
    assert urgent.channels == (DeliveryChannel.IN_APP,)


def test_disabled_settings_and_categories_suppress():
    policy = NotificationPolicy()
    off = NotificationSettings(learner_id="learner-1", enabled=False)
    assert policy.should_send("learner-1", candidate(urgent=True), off, T0).reason == (
        "notifications_disabled"
    )
    no_overdue = NotificationSettings(learner_id="learner-1", overdue_alerts=False)
    decision = policy.should_send(
        "learner-1", candidate(type=NotificationType.REVIEW_OVERDUE), no_overdue, T0
    )
    assert decision.reason == "category_disabled:overdue_alerts"
    assert policy.should_send("learner-1", candidate(), no_overdue, T0).send


def test_channels_keep_preference_order():
    prefs = NotificationSettings(
        learner_id="learner-1", channels=(DeliveryChannel.EMAIL, DeliveryChannel.PUSH)
    )
    decision = NotificationPolicy().should_send("learner-1", candidate(), prefs, T0)
    assert decision.channels == (DeliveryChannel.EMAIL, DeliveryChannel.PUSH)


def test_policy_rejects_misaddressed_candidates():
    prefs = NotificationSettings.create_default("learner-1")
    with pytest.raises(ValueError):
        NotificationPolicy().should_send("learner-1", candidate(recipient="learner-2"), prefs, T0)


# --- Queue processing ---


async def enqueue(manager, n, recipient="learner-1", urgent=False):
    return [
        await manager.schedule_notification(
            recipient, NotificationType.REVIEW_DUE, f"Review {i}", "Due now", urgent=urgent
        )
        for i in range(n)
    ]


@pytest.mark.asyncio
async def test_batch_sends_due_messages(engine, sender):
    manager = engine.notifications
    messages = await enqueue(manager, 3)

    result = await manager.process_queue()

    assert (result.processed, result.sent, result.failed) == (3, 3, 0)
    assert sorted(mid for mid, _ in sender.sent) == sorted(m.id for m in messages)
    for message in messages:
        stored = await manager.queue.get(message.id)
        assert stored.status is NotificationStatus.SENT
        assert stored.sent_at == T0
        assert stored.claimed_until is None
    assert (await manager.process_queue()).processed == 0


@pytest.mark.asyncio
async def test_future_messages_wait(engine, sender):
    manager = engine.notifications
    await manager.schedule_notification(
        "learner-1",
        NotificationType.DAILY_SUMMARY,
        "Summary",
        "Your day",
        scheduled_at=T0 + timedelta(hours=1),
    )
    assert (await manager.process_queue()).processed == 0
    assert (await manager.process_queue(now=T0 + timedelta(hours=1))).sent == 1


@pytest.mark.asyncio
async def test_delivery_failure_does_not_stop_the_batch(db, clock, config):
    failing = AsyncMock()
    failing.send.side_effect = [DeliveryError("gateway down"), None, None]
    manager = build_engine(db, clock=clock, sender=failing, config=config).notifications
    messages = await enqueue(manager, 3)

    result = await manager.process_queue()

    assert (result.processed, result.sent, result.failed) == (3, 2, 1)
    assert len(result.errors) == 1
    stored = [await manager.queue.get(m.id) for m in messages]
    [failed] = [m for m in stored if m.status is NotificationStatus.SCHEDULED]
    assert failed.attempts == 1
    assert failed.last_error == "gateway down"
    assert failing.send.await_count == 3


@pytest.mark.asyncio
async def test_falls_back_to_next_channel(db, clock, config):
    sender = RecordingSender(failing={DeliveryChannel.PUSH})
    manager = build_engine(db, clock=clock, sender=sender, config=config).notifications
    await manager.update_settings("learner-1", {"channels": ["push", "email"]})
    [message] = await enqueue(manager, 1)

    result = await manager.process_queue()

    assert result.sent == 1
    assert sender.sent == [(message.id, DeliveryChannel.EMAIL)]


@pytest.mark.asyncio
async def test_exhausted_messages_stop_being_retried(db, clock, config):
    config.notification_max_attempts = 2
    sender = RecordingSender(failing=set(DeliveryChannel))
    manager = build_engine(db, clock=clock, sender=sender, config=config).notifications
    [message] = await enqueue(manager, 1)

    assert (await manager.process_queue()).failed == 1
    assert (await manager.process_queue()).failed == 1
    assert (await manager.process_queue()).processed == 0
    stored = await manager.queue.get(message.id)
    assert stored.attempts == 2
    assert stored.status is NotificationStatus.SCHEDULED


@pytest.mark.asyncio
async def test_quiet_hours_suppress_in_batch(engine, clock, sender):
    clock.set(T0.replace(hour=23, minute=30))
    manager = engine.notifications
    [quiet] = await enqueue(manager, 1)
    [loud] = await enqueue(manager, 1, urgent=True)

    result = await manager.process_queue()

    assert (result.sent, result.suppressed) == (1, 1)
    assert sender.sent == [(loud.id, DeliveryChannel.IN_APP)]
    stored = await manager.queue.get(quiet.id)
    assert stored.status is NotificationStatus.SUPPRESSED
    assert stored.suppressed_reason == "quiet_hours"
    assert stored.sent_at is None


@pytest.mark.asyncio
async def test_hourly_cap_defers_non_urgent(db, clock, config):
    config.max_notifications_per_hour = 2
    sender = RecordingSender()
    manager = build_engine(db, clock=clock, sender=sender, config=config).notifications
    await enqueue(manager, 3)
    await enqueue(manager, 1, urgent=True)

    result = await manager.process_queue()

    # The urgent message goes first and still counts towards the cap
    assert (result.sent, result.deferred) == (2, 2)
    # Deferred messages wait for the window to clear instead of blocking the queue
    assert await manager.queue.pending(T0, 10, config.notification_max_attempts) == []
    later = T0 + timedelta(hours=1)
    pending = await manager.queue.pending(later, 10, config.notification_max_attempts)
    assert len(pending) == 2
    assert all(m.claimed_until is None and not m.urgent for m in pending)
    assert all(m.scheduled_at == later for m in pending)
    # An hour later the cap has room again
    clock.advance(timedelta(hours=1, seconds=1))
    assert (await manager.process_queue()).sent == 2


@pytest.mark.asyncio
async def test_naive_times_are_taken_as_utc(engine, sender):
    manager = engine.notifications
    message = await manager.schedule_notification(
        "learner-1",
        NotificationType.REVIEW_DUE,
        "Later",
        "Due soon",
        scheduled_at=datetime(2024, 3, 1, 12, 30),
    )
    assert message.scheduled_at == T0 + timedelta(minutes=30)

    assert (await manager.process_queue(now=datetime(2024, 3, 1, 12, 10))).processed == 0
    assert (await manager.process_queue(now=datetime(2024, 3, 1, 12, 45))).sent == 1
    stored = await manager.queue.get(message.id)
    assert stored.sent_at == T0 + timedelta(minutes=45)
    scan = await manager.scan(now=datetime(2024, 3, 1, 12, 50))
    assert scan.overdue_enqueued == 0


@pytest.mark.asyncio
async def test_capped_recipient_does_not_starve_others(db, clock, config):
    config.max_notifications_per_hour = 1
    manager = build_engine(db, clock=clock, sender=RecordingSender(), config=config).notifications
    clock.set(T0 - timedelta(minutes=10))
    heavy = await enqueue(manager, 4, recipient="heavy")
    clock.set(T0)
    [other] = await enqueue(manager, 1, recipient="other")

    for _ in range(3):
        await manager.process_queue(batch_size=3)
        clock.advance(timedelta(minutes=1))

    assert (await manager.queue.get(other.id)).status is NotificationStatus.SENT
    stored = [await manager.queue.get(m.id) for m in heavy]
    assert sum(m.status is NotificationStatus.SENT for m in stored) == 1
    waiting = [m for m in stored if m.status is NotificationStatus.SCHEDULED]
    assert len(waiting) == 3
    assert all(m.scheduled_at == T0 + timedelta(hours=1) for m in waiting)


@pytest.mark.asyncio
async def test_duplicate_ids_are_enqueued_once(engine, sender):
    manager = engine.notifications
    first = await manager.schedule_notification(
        "learner-1", NotificationType.REVIEW_DUE, "One", "Body", message_id="fixed"
    )
    second = await manager.schedule_notification(
        "learner-1", NotificationType.REVIEW_DUE, "Two", "Body", message_id="fixed"
    )
    assert second.title == first.title == "One"
    await manager.process_queue()
    await manager.process_queue()
    assert sender.sent == [("fixed", DeliveryChannel.IN_APP)]


@pytest.mark.asyncio
async def test_overlapping_batches_send_each_message_once(db, clock, config):
    delivered = []

    async def slow_send(message, channel):
        await asyncio.sleep(0.01)
        delivered.append(message.id)

    sender = AsyncMock()
    sender.send.side_effect = slow_send
    manager = build_engine(db, clock=clock, sender=sender, config=config).notifications
    messages = await enqueue(manager, 4)

    first, second = await asyncio.gather(manager.process_queue(), manager.process_queue())

    assert first.sent + second.sent == 4
    assert sorted(delivered) == sorted(m.id for m in messages)


@pytest.mark.asyncio
async def test_schedule_notification_validates(engine):
    with pytest.raises(ValidationError):
        await engine.notifications.schedule_notification(
            "learner-1", NotificationType.REVIEW_DUE, " ", "Body"
        )


@pytest.mark.asyncio
async def test_notify_now(engine, sender):
    message = await engine.notifications.notify_now(
        "learner-1", NotificationType.STREAK_MILESTONE, "7 day streak", "Keep going"
    )
    assert message.status is NotificationStatus.SENT
    assert sender.sent == [(message.id, DeliveryChannel.IN_APP)]


# --- Scan ---


@pytest.mark.asyncio
async def test_scan_enqueues_alerts_once(engine, seed, sender):
    await seed("learner-1", "late-1", next_review_at=T0 - timedelta(hours=5))
    await seed("learner-1", "late-2", next_review_at=T0 - timedelta(days=1))
    soon = await seed("learner-1", "soon", next_review_at=T0 + timedelta(minutes=20))
    await seed("learner-1", "later", next_review_at=T0 + timedelta(hours=5))
    manager = engine.notifications

    result = await manager.scan()

    assert result.overdue_enqueued == 1
    assert result.reminders_enqueued == 1
    assert result.batch.sent == 2
    overdue = await manager.queue.get(notification_id("overdue", "learner-1", "2024-03-01"))
    assert overdue.data["count"] == 2
    assert overdue.type is NotificationType.REVIEW_OVERDUE
    reminder = await manager.queue.get(
        notification_id("due", soon.id, soon.next_review_at.isoformat())
    )
    assert reminder.status is NotificationStatus.SENT

    again = await manager.scan()
    assert (again.overdue_enqueued, again.reminders_enqueued, again.batch.processed) == (0, 0, 0)
    assert len(sender.sent) == 2


@pytest.mark.asyncio
async def test_scan_respects_settings(engine, seed, sender):
    await seed("learner-1", "late", next_review_at=T0 - timedelta(hours=1))
    await engine.notifications.update_settings("learner-1", {"overdue_alerts": False})

    result = await engine.notifications.scan()

    assert result.overdue_enqueued == 1
    assert result.batch.suppressed == 1
    assert sender.sent == []


# --- Settings and statistics ---


@pytest.mark.asyncio
async def test_settings_default_and_update(engine):
    manager = engine.notifications
    prefs = await manager.get_settings("learner-1")
    assert prefs == NotificationSettings.create_default("learner-1")

    updated = await manager.update_settings(
        "learner-1", {"quiet_hours_start": "23:00", "timezone": "Europe/Berlin"}
    )
    assert updated.quiet_hours_start == "23:00"
    assert await manager.get_settings("learner-1") == updated

    with pytest.raises(ValidationError):
        await manager.update_settings("learner-1", {"sms": True})
    assert await manager.get_settings("learner-1") == updated


@pytest.mark.asyncio
async def test_notification_statistics(engine, clock):
    manager = engine.notifications
    await enqueue(manager, 2)
    await manager.schedule_notification(
        "learner-1", NotificationType.REVIEW_OVERDUE, "Late", "Overdue", scheduled_at=T0
    )
    await manager.update_settings("learner-1", {"overdue_alerts": False})
    clock.advance(timedelta(seconds=30))
    await manager.process_queue()
    await manager.schedule_notification(
        "learner-1",
        NotificationType.DAILY_SUMMARY,
        "Later",
        "Tomorrow",
        scheduled_at=T0 + timedelta(days=1),
    )

    result = await manager.get_notification_statistics("learner-1")

    assert result.total == 4
    assert result.total_sent == 2
    assert result.total_suppressed == 1
    assert result.pending == 1
    assert result.success_rate == pytest.approx(66.7)
    assert result.average_delivery_seconds == 30.0
    assert result.by_type == {"review_due": 2, "review_overdue": 1, "daily_summary": 1}
    assert result.recent_failures == 0


# --- Senders ---


@pytest.mark.asyncio
async def test_webhook_sender_posts_json():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    sender = WebhookSender("https://hooks.example/notify", transport=httpx.MockTransport(handler))
    await sender.send(candidate(), DeliveryChannel.PUSH)

    [request] = seen
    assert request.method == "POST"
    body = request.read()
    assert b'"channel":"push"' in body.replace(b" ", b"")
    assert b'"recipient_id":"learner-1"' in body.replace(b" ", b"")


@pytest.mark.asyncio
async def test_webhook_sender_raises_on_rejection():
    sender = WebhookSender(
        "https://hooks.example/notify",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(DeliveryError):
        await sender.send(candidate(), DeliveryChannel.EMAIL)


@pytest.mark.asyncio
async def test_webhook_sender_wraps_transport_errors():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    sender = WebhookSender("https://hooks.example/notify", transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError):
        await sender.send(candidate(), DeliveryChannel.EMAIL)


@pytest.mark.asyncio
async def test_log_sender_logs(caplog):
    caplog.set_level("INFO", logger="review_engine.services.senders")
    await LogSender().send(candidate(), DeliveryChannel.IN_APP)
    assert "learner-1" in caplog.text
