import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    AUTO_CREATE_TABLES: bool = True
    STATEMENT_TIMEOUT_MS: int = 0  # 0 = disabled (PostgreSQL only)

    # Plan catalog limits
    MAX_SESSIONS_PER_PERIOD: int = 20
    MAX_DURATION_WEEKS: int = 52

    # Enrollment defaults
    DEFAULT_SESSIONS_PER_PERIOD: int = 2
    DEFAULT_PERIOD_TYPE: str = "month"  # week | month

    # Risk thresholds
    ENDING_SOON_DAYS: int = 14
    LOW_USAGE_PROGRESS_THRESHOLD: float = 0.5

    # Period rollover
    ROLLOVER_ON_DASHBOARD_LOAD: bool = True
    ROLLOVER_INTERVAL_SECONDS: int = 3600

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("coachmeter")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = ["DATABASE_URL"]
    if (getattr(cfg, "ENV", "") or "").lower() == "test":
        required_keys = ["TEST_DATABASE_URL"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not 0 < cfg.LOW_USAGE_PROGRESS_THRESHOLD <= 1:
        message = "LOW_USAGE_PROGRESS_THRESHOLD must be within (0, 1]"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
