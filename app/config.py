import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


def _env_list(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("LOG_JSON")

    # Runtime flags
    testing: bool = _env_bool("TESTING")
    embedded_scheduler: bool = _env_bool("EMBEDDED_SCHEDULER")

    # Metering cadence
    snapshot_interval_seconds: int = int(os.getenv("SNAPSHOT_INTERVAL", "3600"))
    quota_reset_interval_seconds: int = int(os.getenv("QUOTA_RESET_INTERVAL", "300"))
    usage_alert_interval_seconds: int = int(os.getenv("USAGE_ALERT_INTERVAL", "300"))

    # Remote Outline servers
    outline_timeout_seconds: float = float(os.getenv("OUTLINE_TIMEOUT_SECONDS", "30"))
    metering_max_workers: int = int(os.getenv("METERING_MAX_WORKERS", "8"))

    # Analytics
    anomaly_baseline_floor_bytes: int = int(os.getenv("ANOMALY_BASELINE_FLOOR_BYTES", str(1024 * 1024)))
    anomaly_result_limit: int = int(os.getenv("ANOMALY_RESULT_LIMIT", "20"))
    forecast_window_days: int = int(os.getenv("FORECAST_WINDOW_DAYS", "7"))

    # Usage alerts
    notification_cooldown_hours: int = int(os.getenv("NOTIFICATION_COOLDOWN_HOURS", "24"))
    expiry_warning_days: int = int(os.getenv("EXPIRY_WARNING_DAYS", "3"))
    telegram_bot_token: str | None = os.getenv("TELEGRAM_BOT_TOKEN") or None
    telegram_admin_chat_ids: tuple[str, ...] = _env_list("TELEGRAM_ADMIN_CHAT_IDS")

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self


settings = Settings()
