from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from review_engine.clock import Clock, SystemClock, as_utc
from review_engine.config import Settings, settings
from review_engine.errors import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from review_engine.models.feedback import ReviewFeedback
from review_engine.models.queue import (
    PurgeOutcome,
    RetentionItem,
    RetentionReport,
    ItemPerformanceReport,
    LearnerItemPerformance,
    LearnerRating,
    ReviewCompletionResult,
    ReviewQueueItem,
    ReviewStatistics,
    RiskLevel,
    StatisticsReport,
)
from review_engine.models.schedule import (
    DifficultyLevel,
    Priority,
    ReviewSchedule,
    ScheduleStatus,
)
from review_engine.models.study_record import StudyPatternReport, StudyRecord
from review_engine.ports import ReviewScheduleStore, StudyRecordStore, TransactionFactory
from review_engine.services import statistics as stats
from review_engine.services.policy import PolicyParameters, SpacedRepetitionPolicy

logger = logging.getLogger(__name__)


class ReviewQueueService:
    """Due/overdue queues, feedback submission and learner statistics."""

    def __init__(
        self,
        schedules: ReviewScheduleStore,
        records: StudyRecordStore,
        transaction: TransactionFactory,
        clock: Clock | None = None,
        policy: SpacedRepetitionPolicy | None = None,
        config: Settings = settings,
    ) -> None:
        self.schedules = schedules
        self.records = records
        self._transaction = transaction
        self.clock = clock or SystemClock()
        self.policy = policy or SpacedRepetitionPolicy(PolicyParameters.from_settings(config))
        self.config = config
        self.tz = ZoneInfo(config.timezone)

    def _now(self, now: datetime | None) -> datetime:
        return as_utc(now) if now is not None else self.clock.now()

    # --- Scheduling ---

    async def schedule_item(self, learner_id: str, item_id: str) -> ReviewSchedule:
        """Return the learner's schedule for `item_id`, creating it on first request."""
        existing = await self.schedules.find_by_learner_and_item(learner_id, item_id)
        if existing is not None:
            return existing
        schedule = ReviewSchedule.create(
            learner_id, item_id, self.clock.now(), initial_ease=self.policy.params.initial_ease
        )
        try:
            async with self._transaction():
                await self.schedules.add(schedule)
        except ConcurrencyError:
            # Lost a create race for the same pair; the winner's row is the schedule
            existing = await self.schedules.find_by_learner_and_item(learner_id, item_id)
            if existing is None:
                raise
            return existing
        logger.info("Scheduled item %s for learner %s (%s)", item_id, learner_id, schedule.id)
        return schedule

    # --- Queues ---

    async def get_due_items(
        self, learner_id: str, now: datetime | None = None
    ) -> list[ReviewQueueItem]:
        """Active schedules due by the end of today, most important first."""
        now = self._now(now)
        _, day_end = stats.day_bounds(now, self.tz)
        schedules = await self.schedules.find_due_for_learner(learner_id, day_end)
        items = [self._to_queue_item(s, now) for s in schedules]
        items.sort(key=_queue_order)
        return items

    async def get_overdue_items(
        self, learner_id: str, now: datetime | None = None
    ) -> list[ReviewQueueItem]:
        """Overdue schedules, oldest first."""
        now = self._now(now)
        schedules = await self.schedules.find_overdue_for_learner(learner_id, now)
        items = [self._to_queue_item(s, now) for s in schedules]
        items.sort(key=lambda i: (i.next_review_at, i.schedule_id))
        return items

    def priority_of(self, schedule: ReviewSchedule, now: datetime) -> Priority:
        if schedule.priority_override is not None:
            return schedule.priority_override
        if (
            schedule.is_overdue(now)
            or schedule.consecutive_failures > 0
            or schedule.difficulty_level() is DifficultyLevel.ADVANCED
        ):
            return Priority.HIGH
        if schedule.minutes_until_due(now) <= self.config.due_soon_minutes:
            return Priority.MEDIUM
        return Priority.LOW

    def _to_queue_item(self, schedule: ReviewSchedule, now: datetime) -> ReviewQueueItem:
        return ReviewQueueItem(
            schedule_id=schedule.id,
            learner_id=schedule.learner_id,
            item_id=schedule.item_id,
            next_review_at=schedule.next_review_at,
            interval_days=schedule.interval_days,
            ease_factor=schedule.ease_factor,
            review_count=schedule.review_count,
            consecutive_failures=schedule.consecutive_failures,
            priority=self.priority_of(schedule, now),
            is_overdue=schedule.is_overdue(now),
            minutes_until_due=schedule.minutes_until_due(now),
            difficulty_level=schedule.difficulty_level(),
            retention_probability=round(schedule.retention_probability(now), 4),
        )

    # --- Feedback ---

    async def submit_feedback(
        self,
        learner_id: str,
        schedule_id: str,
        feedback: ReviewFeedback | str | int,
        response_time: float | None = None,
        answer: object = None,
    ) -> ReviewCompletionResult:
        """Apply one answer to a schedule and log it.

        The schedule update and the study record are written in one
        transaction. The update only succeeds if nobody else saved the
        schedule since it was loaded; otherwise ConcurrencyError is raised and
        nothing is written.
        """
        parsed = ReviewFeedback.parse(feedback)
        if response_time is not None and (
            isinstance(response_time, bool)
            or not isinstance(response_time, (int, float))
            or not math.isfinite(response_time)
            or response_time < 0
        ):
            raise ValidationError("response_time must be a non-negative number of seconds")

        schedule = await self._load_owned(learner_id, schedule_id)
        updated, record_command = schedule.apply_feedback(
            parsed, self.policy, self.clock.now(), response_time=response_time, answer=answer
        )

        try:
            async with self._transaction():
                await self.schedules.save(updated, expected_version=schedule.version)
                record = await self.records.save(record_command)
        except ConcurrencyError:
            logger.warning(
                "Feedback on schedule %s lost a concurrent update (version %d)",
                schedule_id,
                schedule.version,
            )
            raise

        logger.info(
            "Feedback %s on schedule %s: interval %d -> %d, ease %.2f -> %.2f",
            parsed.value,
            schedule_id,
            schedule.interval_days,
            updated.interval_days,
            schedule.ease_factor,
            updated.ease_factor,
        )
        return ReviewCompletionResult(
            schedule_id=schedule_id,
            previous_interval=schedule.interval_days,
            new_interval=updated.interval_days,
            previous_ease_factor=schedule.ease_factor,
            new_ease_factor=updated.ease_factor,
            next_review_at=updated.next_review_at,
            review_count=updated.review_count,
            consecutive_failures=updated.consecutive_failures,
            study_record_id=record.id,
        )

    # --- Administrative adjustments ---

    async def postpone(
        self, learner_id: str, schedule_id: str, duration: timedelta
    ) -> ReviewSchedule:
        return await self._mutate(learner_id, schedule_id, lambda s, now: s.postpone(duration, now))

    async def advance(
        self, learner_id: str, schedule_id: str, duration: timedelta
    ) -> ReviewSchedule:
        return await self._mutate(learner_id, schedule_id, lambda s, now: s.advance(duration, now))

    async def reprioritize(
        self, learner_id: str, schedule_id: str, priority: Priority | str | None
    ) -> ReviewSchedule:
        if priority is not None and not isinstance(priority, Priority):
            try:
                priority = Priority(str(priority).lower())
            except ValueError as e:
                raise ValidationError(f"Invalid priority: {priority!r}") from e
        return await self._mutate(
            learner_id, schedule_id, lambda s, now: s.reprioritize(priority, now)
        )

    async def complete(self, learner_id: str, schedule_id: str) -> ReviewSchedule:
        return await self._mutate(learner_id, schedule_id, lambda s, now: s.mark_completed(now))

    async def archive(self, learner_id: str, schedule_id: str) -> ReviewSchedule:
        return await self._mutate(learner_id, schedule_id, lambda s, now: s.archive(now))

    async def purge(
        self, learner_id: str, schedule_id: str, preserve_statistics: bool = False
    ) -> PurgeOutcome:
        """Hard-delete a schedule that was never completed.

        Completed schedules are only retired: with preserve_statistics they are
        archived, otherwise the purge is refused. Study records always stay.
        """
        schedule = await self._load_owned(learner_id, schedule_id)
        if schedule.is_completed:
            if not preserve_statistics:
                raise InvalidStateError(
                    f"Review schedule {schedule_id} was completed and cannot be purged"
                )
            if schedule.status is not ScheduleStatus.ARCHIVED:
                archived = schedule.archive(self.clock.now())
                async with self._transaction():
                    await self.schedules.save(archived, expected_version=schedule.version)
                logger.info("Archived completed schedule %s instead of purging", schedule_id)
            return PurgeOutcome.ARCHIVED

        async with self._transaction():
            deleted = await self.schedules.delete(schedule_id)
        if not deleted:
            raise ConcurrencyError(f"Review schedule {schedule_id} disappeared during purge")
        logger.info("Purged schedule %s of learner %s", schedule_id, learner_id)
        return PurgeOutcome.PURGED

    async def _mutate(
        self,
        learner_id: str,
        schedule_id: str,
        change: Callable[[ReviewSchedule, datetime], ReviewSchedule],
    ) -> ReviewSchedule:
        schedule = await self._load_owned(learner_id, schedule_id)
        updated = change(schedule, self.clock.now())
        async with self._transaction():
            await self.schedules.save(updated, expected_version=schedule.version)
        return updated

    async def _load_owned(self, learner_id: str, schedule_id: str) -> ReviewSchedule:
        schedule = await self.schedules.find_by_id(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Review schedule {schedule_id} not found")
        if schedule.learner_id != learner_id:
            raise UnauthorizedError(
                f"Review schedule {schedule_id} does not belong to learner {learner_id}"
            )
        return schedule

    # --- Statistics ---

    async def get_statistics(
        self, learner_id: str, now: datetime | None = None
    ) -> ReviewStatistics:
        now = self._now(now)
        day_start, day_end = stats.day_bounds(now, self.tz)

        total = await self.schedules.count_for_learner(
            learner_id, (ScheduleStatus.ACTIVE, ScheduleStatus.COMPLETED)
        )
        due = await self.schedules.find_due_for_learner(learner_id, day_end)
        today = await self.records.find_by_learner(learner_id, since=day_start, until=day_end)
        recent = await self.records.find_by_learner(
            learner_id, until=now, limit=self.config.retention_window
        )
        activity = await self.records.activity_minutes(
            learner_id,
            since=day_start - timedelta(days=self.config.streak_lookback_days),
            until=day_end,
        )

        return ReviewStatistics(
            total_scheduled=total,
            due_today=len(due),
            overdue_count=sum(1 for s in due if s.is_overdue(now)),
            completed_today=len(today),
            streak_days=stats.streak_days(activity, now.astimezone(self.tz).date(), self.tz),
            average_retention=stats.percent_correct(recent),
            total_time_spent=stats.minutes_spent(today),
        )

    async def get_statistics_report(
        self, learner_id: str, now: datetime | None = None
    ) -> StatisticsReport:
        """Statistics plus the derived completion, efficiency and productivity metrics."""
        base = await self.get_statistics(learner_id, now)
        rate = stats.completion_rate(base.completed_today, base.due_today)
        return StatisticsReport(
            **base.model_dump(),
            completion_rate=rate,
            efficiency=stats.efficiency(base.completed_today, base.total_time_spent),
            avg_session_time=stats.average_session_time(
                base.completed_today, base.total_time_spent
            ),
            productivity=stats.productivity_tier(
                rate, base.average_retention, base.streak_days
            ),
            consistency_score=stats.consistency_score(base.streak_days),
        )

    async def get_retention_report(
        self, learner_id: str, now: datetime | None = None
    ) -> RetentionReport:
        """Retention estimate for every active schedule, weakest first."""
        now = self._now(now)
        schedules = [s for s in await self.schedules.find_by_learner(learner_id) if s.is_active]
        items = []
        for s in schedules:
            probability = round(s.retention_probability(now), 4)
            items.append(
                RetentionItem(
                    schedule_id=s.id,
                    item_id=s.item_id,
                    probability=probability,
                    difficulty_level=s.difficulty_level(),
                    days_since_last_review=round(s.days_since_last_review(now), 2),
                    interval_days=s.interval_days,
                    next_review_at=s.next_review_at,
                    risk_level=stats.risk_level(probability),
                )
            )
        items.sort(key=lambda i: (i.probability, i.schedule_id))
        average = round(sum(i.probability for i in items) / len(items), 4) if items else 0.0
        return RetentionReport(
            learner_id=learner_id,
            calculated_at=now,
            items=items,
            average_probability=average,
            high_risk_count=sum(1 for i in items if i.risk_level is RiskLevel.HIGH),
            critical_risk_count=sum(1 for i in items if i.risk_level is RiskLevel.CRITICAL),
        )

    async def analyze_study_patterns(
        self,
        learner_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> StudyPatternReport:
        """Break the learner's answers down by speed and correctness."""
        until = self._now(until)
        if since is None:
            since = until - timedelta(days=self.config.retention_window)
        since = as_utc(since)
        if since > until:
            raise ValidationError("since must not be after until")
        records = await self.records.find_by_learner(learner_id, since=since, until=until)
        patterns, untimed, dominant = stats.summarize_patterns(records)
        return StudyPatternReport(
            learner_id=learner_id,
            since=since,
            until=until,
            total_records=len(records),
            untimed_records=untimed,
            patterns=patterns,
            dominant_pattern=dominant,
        )

    async def get_item_performance(
        self,
        item_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        include_learners: bool = False,
    ) -> ItemPerformanceReport:
        """Accuracy, timing and difficulty of one item across every learner scheduled on it.

        Records are limited to [since, until], which defaults to the last
        `item_performance_days`. Schedule-derived figures (ease, interval,
        failures) use every schedule for the item regardless of status.
        """
        if not item_id or not item_id.strip():
            raise ValidationError("item_id is required")
        until = self._now(until)
        if since is None:
            since = until - timedelta(days=self.config.item_performance_days)
        since = as_utc(since)
        if since > until:
            raise ValidationError("since must not be after until")

        schedules = await self.schedules.find_by_item(item_id)
        if not schedules:
            raise NotFoundError(f"No review schedules for item {item_id}")
        records = await self.records.find_by_item(item_id, since=since, until=until)

        correct = sum(1 for r in records if r.is_correct)
        accuracy = correct / len(records) if records else 0.0
        eases = [s.ease_factor for s in schedules]
        average_ease = sum(eases) / len(eases)
        average_failures = sum(s.consecutive_failures for s in schedules) / len(schedules)
        learners = _learner_breakdown(schedules, records) if include_learners else None

        return ItemPerformanceReport(
            item_id=item_id,
            since=since,
            until=until,
            total_learners=len({s.learner_id for s in schedules}),
            total_reviews=len(records),
            accuracy=round(accuracy * 100, 2),
            average_performance=(
                round(sum(r.performance_score for r in records) / len(records)) if records else 0
            ),
            average_response_time=stats.average_response_time(records),
            average_interval=round(sum(s.interval_days for s in schedules) / len(schedules), 1),
            consistency_score=stats.performance_consistency(records),
            retention_rate=stats.ease_retention_rate(eases),
            difficulty_trend=stats.difficulty_trend(records),
            current_difficulty=stats.item_difficulty(accuracy, average_ease),
            recommended_difficulty=stats.recommended_difficulty(accuracy, average_failures),
            top_performers=sum(
                1 for row in learners or () if row.rating is LearnerRating.EXCELLENT
            ),
            struggling_learners=sum(
                1 for row in learners or () if row.rating is LearnerRating.NEEDS_IMPROVEMENT
            ),
            learners=learners,
        )


def _learner_breakdown(
    schedules: list[ReviewSchedule], records: list[StudyRecord]
) -> list[LearnerItemPerformance]:
    by_learner: dict[str, list[StudyRecord]] = {}
    for record in records:
        by_learner.setdefault(record.learner_id, []).append(record)
    rows = []
    for schedule in schedules:
        mine = by_learner.get(schedule.learner_id, [])
        accuracy = stats.percent_correct(mine)
        rows.append(
            LearnerItemPerformance(
                learner_id=schedule.learner_id,
                review_count=len(mine),
                accuracy=accuracy,
                average_response_time=stats.average_response_time(mine),
                ease_factor=round(schedule.ease_factor, 2),
                difficulty_level=schedule.difficulty_level(),
                last_reviewed_at=max((r.created_at for r in mine), default=None),
                rating=stats.learner_rating(accuracy, schedule.ease_factor),
            )
        )
    rows.sort(key=lambda row: (-row.accuracy, row.learner_id))
    return rows


def _queue_order(item: ReviewQueueItem) -> tuple:
    return (
        item.priority.rank,
        not item.is_overdue,
        item.next_review_at,
        item.ease_factor,
        item.schedule_id,
    )
