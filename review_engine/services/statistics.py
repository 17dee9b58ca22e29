"""
Pure aggregation helpers behind the review statistics and reports.

Everything here works on already-loaded values, never touches storage, and
treats empty inputs as zeros rather than errors.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta
from math import sqrt
from zoneinfo import ZoneInfo

from review_engine.models.queue import (
    DifficultyTrend,
    ItemDifficulty,
    LearnerRating,
    Productivity,
    RiskLevel,
)
from review_engine.models.study_record import (
    StudyPattern,
    StudyPatternSummary,
    StudyRecord,
)

CONSISTENCY_TARGET_DAYS = 30

# (completion_rate, average_retention, streak_days) floors, best tier first
_PRODUCTIVITY_TIERS = (
    (Productivity.EXCELLENT, 90, 80, 7),
    (Productivity.GOOD, 70, 70, 0),
    (Productivity.FAIR, 50, 60, 0),
)

_RISK_FLOORS = (
    (RiskLevel.LOW, 0.8),
    (RiskLevel.MEDIUM, 0.6),
    (RiskLevel.HIGH, 0.4),
)


def day_bounds(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Start of the local calendar day containing `now` and the last instant of it."""
    local_day = now.astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end - timedelta(microseconds=1)


def streak_days(activity: Iterable[datetime], today: date, tz: ZoneInfo) -> int:
    """Consecutive local days with activity, walking back from `today`.

    A day without activity today means the streak is 0.
    """
    days = {moment.astimezone(tz).date() for moment in activity}
    streak = 0
    cursor = today
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def percent_correct(records: Sequence[StudyRecord]) -> int:
    if not records:
        return 0
    correct = sum(1 for r in records if r.is_correct)
    return round(correct / len(records) * 100)


def minutes_spent(records: Iterable[StudyRecord]) -> float:
    seconds = sum(r.response_time_seconds or 0.0 for r in records)
    return round(seconds / 60, 1)


def completion_rate(completed: int, due: int) -> int:
    if due <= 0:
        return 0
    return min(100, round(completed / due * 100))


def efficiency(completed: int, minutes: float) -> float:
    """Items per hour."""
    if minutes <= 0:
        return 0.0
    return round(completed / (minutes / 60), 1)


def average_session_time(completed: int, minutes: float) -> float:
    """Minutes per item."""
    if completed <= 0:
        return 0.0
    return round(minutes / completed, 1)


def productivity_tier(completion: int, retention: int, streak: int) -> Productivity:
    for tier, min_completion, min_retention, min_streak in _PRODUCTIVITY_TIERS:
        if completion >= min_completion and retention >= min_retention and streak >= min_streak:
            return tier
    return Productivity.NEEDS_IMPROVEMENT


def consistency_score(streak: int) -> int:
    return min(100, round(streak / CONSISTENCY_TARGET_DAYS * 100))


def risk_level(probability: float) -> RiskLevel:
    for level, floor in _RISK_FLOORS:
        if probability >= floor:
            return level
    return RiskLevel.CRITICAL


def summarize_patterns(
    records: Sequence[StudyRecord],
) -> tuple[list[StudyPatternSummary], int, StudyPattern | None]:
    """Per-pattern counts over timed records; returns (summaries, untimed, dominant)."""
    timed = [r for r in records if r.study_pattern is not None]
    counts = Counter(r.study_pattern for r in timed)
    summaries = []
    for pattern in StudyPattern:
        matching = [r for r in timed if r.study_pattern is pattern]
        if not matching:
            continue
        summaries.append(
            StudyPatternSummary(
                pattern=pattern,
                count=len(matching),
                percentage=round(len(matching) / len(timed) * 100, 1),
                average_performance_score=round(
                    sum(r.performance_score for r in matching) / len(matching), 1
                ),
            )
        )
    dominant = None
    if counts:
        # Ties resolve to the declaration order of StudyPattern
        dominant = max(StudyPattern, key=lambda p: counts.get(p, 0))
    return summaries, len(records) - len(timed), dominant


# --- Per-item performance ---

TREND_MIN_RECORDS = 20
TREND_THRESHOLD = 0.1

# Mean ease factors in this range map linearly onto a 0-100 retention estimate
_RETENTION_EASE_RANGE = (1.3, 2.5)

# (accuracy, average ease) floors, easiest first
_ITEM_DIFFICULTY_FLOORS = (
    (ItemDifficulty.EASY, 0.9, 2.3),
    (ItemDifficulty.MEDIUM, 0.75, 2.0),
    (ItemDifficulty.HARD, 0.6, 1.7),
)

# (accuracy percent, ease) floors, best first
_LEARNER_RATING_FLOORS = (
    (LearnerRating.EXCELLENT, 90, 2.3),
    (LearnerRating.GOOD, 75, 2.0),
    (LearnerRating.AVERAGE, 60, 0.0),
)


def _accuracy(records: Sequence[StudyRecord]) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.is_correct) / len(records)


def average_response_time(records: Iterable[StudyRecord]) -> float | None:
    """Mean response time in seconds over timed records, None if none were timed."""
    timed = [r.response_time_seconds for r in records if r.response_time_seconds is not None]
    if not timed:
        return None
    return round(sum(timed) / len(timed), 2)


def performance_consistency(records: Sequence[StudyRecord]) -> int:
    """100 minus the standard deviation of performance scores, clamped to 0-100."""
    if not records:
        return 0
    scores = [r.performance_score for r in records]
    mean = sum(scores) / len(scores)
    deviation = sqrt(sum((s - mean) ** 2 for s in scores) / len(scores))
    return max(0, min(100, round(100 - deviation)))


def ease_retention_rate(ease_factors: Sequence[float]) -> float:
    if not ease_factors:
        return 0.0
    low, high = _RETENTION_EASE_RANGE
    mean = sum(ease_factors) / len(ease_factors)
    return round(min(100.0, max(0.0, (mean - low) / (high - low) * 100)), 2)


def difficulty_trend(records: Sequence[StudyRecord]) -> DifficultyTrend:
    """Compare accuracy of the older and newer halves of the records."""
    if len(records) < TREND_MIN_RECORDS:
        return DifficultyTrend.STABLE
    ordered = sorted(records, key=lambda r: (r.created_at, r.id))
    half = len(ordered) // 2
    change = _accuracy(ordered[half:]) - _accuracy(ordered[:half])
    if change > TREND_THRESHOLD:
        return DifficultyTrend.IMPROVING
    if change < -TREND_THRESHOLD:
        return DifficultyTrend.DECLINING
    return DifficultyTrend.STABLE


def item_difficulty(accuracy: float, average_ease: float) -> ItemDifficulty:
    for level, min_accuracy, min_ease in _ITEM_DIFFICULTY_FLOORS:
        if accuracy >= min_accuracy and average_ease >= min_ease:
            return level
    return ItemDifficulty.VERY_HARD


def recommended_difficulty(accuracy: float, average_failures: float) -> ItemDifficulty:
    """Where the item should sit given how learners actually do on it."""
    if accuracy >= 0.95 and average_failures < 0.5:
        return ItemDifficulty.EASY
    if accuracy >= 0.8 and average_failures < 1:
        return ItemDifficulty.MEDIUM
    if accuracy >= 0.65:
        return ItemDifficulty.HARD
    return ItemDifficulty.VERY_HARD


def learner_rating(accuracy: int, ease_factor: float) -> LearnerRating:
    for rating, min_accuracy, min_ease in _LEARNER_RATING_FLOORS:
        if accuracy >= min_accuracy and ease_factor >= min_ease:
            return rating
    return LearnerRating.NEEDS_IMPROVEMENT
