from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_dir: Path = Path.home() / ".review_engine" / "data"
    sqlite_filename: str = "reviews.db"
    host: str = "127.0.0.1"
    port: int = 8040
    log_level: str = "INFO"

    # Day boundaries ("today", streaks) are computed in this timezone
    timezone: str = "UTC"

    # Spaced repetition policy
    initial_ease: float = 2.5
    again_penalty: float = 0.2
    hard_penalty: float = 0.15
    easy_bonus: float = 0.15
    easy_initial_interval: int = 4

    # Review queue
    due_soon_minutes: int = 60
    retention_window: int = 30  # most recent records used for average retention
    streak_lookback_days: int = 365
    item_performance_days: int = 90  # default window for per-item reports

    # Notifications
    scan_interval_seconds: float = 60.0
    scan_limit: int = 500
    notification_batch_size: int = 100
    notification_max_attempts: int = 5
    notification_claim_seconds: int = 300
    max_notifications_per_hour: int = 10
    reminder_horizon_minutes: int = 60
    webhook_url: str | None = None
    webhook_timeout: float = 10.0

    model_config = {"env_prefix": "REVIEW_ENGINE_"}


settings = Settings()
