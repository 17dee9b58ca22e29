from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from review_engine.models.schedule import DifficultyLevel, Priority


class ReviewQueueItem(BaseModel):
    schedule_id: str
    learner_id: str
    item_id: str
    next_review_at: datetime
    interval_days: int
    ease_factor: float
    review_count: int
    consecutive_failures: int
    priority: Priority
    is_overdue: bool
    minutes_until_due: int
    difficulty_level: DifficultyLevel
    retention_probability: float


class ReviewCompletionResult(BaseModel):
    schedule_id: str
    previous_interval: int
    new_interval: int
    previous_ease_factor: float
    new_ease_factor: float
    next_review_at: datetime
    review_count: int
    consecutive_failures: int
    study_record_id: str


class ReviewStatistics(BaseModel):
    total_scheduled: int
    due_today: int
    overdue_count: int
    completed_today: int
    streak_days: int
    average_retention: int  # percent correct over recent records
    total_time_spent: float  # minutes, today


class Productivity(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    NEEDS_IMPROVEMENT = "needs_improvement"


class StatisticsReport(ReviewStatistics):
    completion_rate: int
    efficiency: float  # items per hour
    avg_session_time: float  # minutes per item
    productivity: Productivity
    consistency_score: int


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RetentionItem(BaseModel):
    schedule_id: str
    item_id: str
    probability: float
    difficulty_level: DifficultyLevel
    days_since_last_review: float
    interval_days: int
    next_review_at: datetime
    risk_level: RiskLevel


class RetentionReport(BaseModel):
    learner_id: str
    calculated_at: datetime
    items: list[RetentionItem]
    average_probability: float
    high_risk_count: int
    critical_risk_count: int


class PurgeOutcome(str, Enum):
    PURGED = "purged"
    ARCHIVED = "archived"


class ItemDifficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    VERY_HARD = "very_hard"


class DifficultyTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class LearnerRating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    NEEDS_IMPROVEMENT = "needs_improvement"


class LearnerItemPerformance(BaseModel):
    learner_id: str
    review_count: int
    accuracy: int  # percent
    average_response_time: float | None  # seconds
    ease_factor: float
    difficulty_level: DifficultyLevel
    last_reviewed_at: datetime | None
    rating: LearnerRating


class ItemPerformanceReport(BaseModel):
    """How one item performs across every learner scheduled on it."""

    item_id: str
    since: datetime
    until: datetime
    total_learners: int
    total_reviews: int
    accuracy: float  # percent
    average_performance: int
    average_response_time: float | None  # seconds
    average_interval: float  # days
    consistency_score: int
    retention_rate: float  # percent, estimated from ease factors
    difficulty_trend: DifficultyTrend
    current_difficulty: ItemDifficulty
    recommended_difficulty: ItemDifficulty
    top_performers: int = 0
    struggling_learners: int = 0
    learners: list[LearnerItemPerformance] | None = None
