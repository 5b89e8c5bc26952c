import logging
from dataclasses import dataclass
from datetime import timedelta

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (unset = in-memory stores)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Plan catalog source (JSON file); default catalog when unset
    PLAN_CATALOG_PATH: Optional[str] = None

    # Lifecycle policy
    GRACE_PERIOD_DAYS: int = 7
    PAST_DUE_POLICY: str = "unpaid"  # unpaid | canceled
    DUNNING_RETRY_HOURS: int = 24
    INCOMPLETE_EXPIRY_HOURS: int = 23
    ARCHIVE_AFTER_DAYS: int = 30

    # Concurrency
    CONFLICT_RETRY_LIMIT: int = 3

    # Scheduler
    SCHEDULER_INTERVAL_SECONDS: int = 300
    SCHEDULER_BATCH_LIMIT: int = 500

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


@dataclass(frozen=True)
class EnginePolicy:
    """Lifecycle knobs the pure state machine needs."""
    grace_period: timedelta = timedelta(days=7)
    past_due_policy: str = "unpaid"
    dunning_retry_interval: timedelta = timedelta(hours=24)
    incomplete_expiry: timedelta = timedelta(hours=23)
    archive_after: timedelta = timedelta(days=30)

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "EnginePolicy":
        cfg = cfg or settings
        policy = cfg.PAST_DUE_POLICY.lower()
        if policy not in ("unpaid", "canceled"):
            raise ValueError(f"PAST_DUE_POLICY must be 'unpaid' or 'canceled', got {cfg.PAST_DUE_POLICY!r}")
        return cls(
            grace_period=timedelta(days=cfg.GRACE_PERIOD_DAYS),
            past_due_policy=policy,
            dunning_retry_interval=timedelta(hours=cfg.DUNNING_RETRY_HOURS),
            incomplete_expiry=timedelta(hours=cfg.INCOMPLETE_EXPIRY_HOURS),
            archive_after=timedelta(days=cfg.ARCHIVE_AFTER_DAYS),
        )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("billing_engine")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.PAST_DUE_POLICY.lower() not in ("unpaid", "canceled"):
        message = f"Invalid PAST_DUE_POLICY: {cfg.PAST_DUE_POLICY}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
