import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # At-rest encryption for stored LeetCode sessions (64 hex chars = 32 bytes)
    ENCRYPTION_KEY: Optional[str] = None

    # LeetCode GraphQL
    LEETCODE_GRAPHQL_URL: str = "https://leetcode.com/graphql/"
    LEETCODE_TIMEOUT_SECONDS: float = 15.0
    LEETCODE_RECENT_LIMIT: int = 20
    LEETCODE_RATE_LIMIT_PER_SECOND: int = 20
    LEETCODE_RATE_LIMIT_COOLDOWN_SECONDS: int = 60
    PROBLEM_CACHE_TTL_DAYS: int = 7

    # Evaluation queue
    EVALUATION_CONCURRENCY: int = 10
    EVALUATION_JOB_ATTEMPTS: int = 3
    EVALUATION_BACKOFF_BASE_SECONDS: int = 5
    EVALUATION_RESULT_TTL_SECONDS: int = 86400  # keep finished jobs 24h
    EVALUATION_FAILURE_TTL_SECONDS: int = 604800  # keep failed jobs 7d
    EVALUATION_JOB_TIMEOUT: str = "5m"
    EVALUATION_RUN_RETENTION_DAYS: int = 7

    # Scheduler (cron expressions, evaluated in UTC)
    CRON_ENABLED: bool = False
    DAILY_EVALUATION_CRON: str = "0 1 * * *"
    DAILY_REMINDER_CRON: str = "0 18 * * *"
    WEEKLY_SUMMARY_CRON: str = "0 10 * * sun"

    # Email
    EMAIL_ENABLED: bool = False
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    EMAIL_FROM: str = "Code Duel <noreply@codeduel.com>"

    # Admin access
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("codeduel")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ENCRYPTION_KEY",
    ]
    if getattr(cfg, "EMAIL_ENABLED", False):
        required_keys += ["SMTP_HOST", "SMTP_USER", "SMTP_PASS"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    key = getattr(cfg, "ENCRYPTION_KEY", None)
    if key and len(key) != 64:
        message = "ENCRYPTION_KEY must be 64 hex characters"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
