from review_engine.models.feedback import ReviewFeedback
from review_engine.models.notification import (
    BatchResult,
    DeliveryChannel,
    NotificationCategory,
    NotificationDecision,
    NotificationMessage,
    NotificationSettings,
    NotificationStatistics,
    NotificationStatus,
    NotificationType,
    ScanResult,
)
from review_engine.models.queue import (
    DifficultyTrend,
    ItemDifficulty,
    ItemPerformanceReport,
    LearnerItemPerformance,
    LearnerRating,
    Productivity,
    PurgeOutcome,
    RetentionItem,
    RetentionReport,
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
from review_engine.models.study_record import (
    StudyPattern,
    StudyPatternReport,
    StudyPatternSummary,
    StudyRecord,
    StudyRecordCreate,
)

__all__ = [
    "BatchResult",
    "DeliveryChannel",
    "DifficultyLevel",
    "DifficultyTrend",
    "ItemDifficulty",
    "ItemPerformanceReport",
    "LearnerItemPerformance",
    "LearnerRating",
    "NotificationCategory",
    "NotificationDecision",
    "NotificationMessage",
    "NotificationSettings",
    "NotificationStatistics",
    "NotificationStatus",
    "NotificationType",
    "Priority",
    "Productivity",
    "PurgeOutcome",
    "RetentionItem",
    "RetentionReport",
    "ReviewCompletionResult",
    "ReviewFeedback",
    "ReviewQueueItem",
    "ReviewSchedule",
    "ReviewStatistics",
    "RiskLevel",
    "ScanResult",
    "ScheduleStatus",
    "StatisticsReport",
    "StudyPattern",
    "StudyPatternReport",
    "StudyPatternSummary",
    "StudyRecord",
    "StudyRecordCreate",
]
