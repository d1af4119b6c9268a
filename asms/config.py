"""
Centralized configuration with environment variable overrides.

Booking policy switches, capacity defaults, notification delivery limits
and the sweep schedule are all configurable here. Nothing is hardcoded in
the ledger, state machine or dispatcher.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from asms.logging_context import RequestIdFilter

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TIME_SLOTS = (
    "08:00-09:00,09:00-10:00,10:00-11:00,11:00-12:00,"
    "13:00-14:00,14:00-15:00,15:00-16:00,16:00-17:00"
)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    """Parse a boolean flag (true/false, yes/no, 1/0) from an env var."""
    raw = os.getenv(env_var, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


def _split_labels(raw: str) -> tuple[str, ...]:
    return tuple(label.strip() for label in raw.split(",") if label.strip())


@dataclass(frozen=True)
class BusinessConfig:
    """Business-specific settings loaded from environment or defaults."""

    name: str = os.getenv("BUSINESS_NAME", "Reliable Auto Care")
    time_slots: tuple[str, ...] = _split_labels(os.getenv("TIME_SLOTS", DEFAULT_TIME_SLOTS))


@dataclass(frozen=True)
class CapacityConfig:
    """Daily capacity defaults and release/reactivation policy."""

    default_max_daily_slots: int = _safe_int("DEFAULT_MAX_DAILY_SLOTS", "5")
    release_on_cancel: bool = _safe_bool("RELEASE_ON_CANCEL", "true")
    reactivate_manual_on_reset: bool = _safe_bool("REACTIVATE_MANUAL_ON_RESET", "false")


@dataclass(frozen=True)
class BookingConfig:
    """Booking policy switches for the state machine and slot checks."""

    exclude_completed_from_booked_slots: bool = _safe_bool(
        "EXCLUDE_COMPLETED_FROM_BOOKED_SLOTS", "false"
    )
    allow_past_dates: bool = _safe_bool("ALLOW_PAST_DATES", "false")
    assign_requires_confirmed: bool = _safe_bool("ASSIGN_REQUIRES_CONFIRMED", "false")


@dataclass(frozen=True)
class NotificationConfig:
    """Live push delivery limits."""

    push_timeout_sec: float = _safe_float("PUSH_TIMEOUT_SEC", "2.0")
    fanout_workers: int = _safe_int("FANOUT_WORKERS", "4")
    subscriber_queue_size: int = _safe_int("SUBSCRIBER_QUEUE_SIZE", "100")


@dataclass(frozen=True)
class SchedulerConfig:
    """Daily capacity sweep schedule. An empty timezone means host local time."""

    reset_hour: int = _safe_int("SWEEP_RESET_HOUR", "0")
    reset_minute: int = _safe_int("SWEEP_RESET_MINUTE", "0")
    timezone: str = os.getenv("SWEEP_TIMEZONE", "")
    misfire_grace_sec: int = _safe_int("SWEEP_MISFIRE_GRACE_SEC", "3600")


@dataclass(frozen=True)
class AdminBootstrapConfig:
    """Admin account created at startup when the roster has none."""

    username: str = os.getenv("ADMIN_USERNAME", "admin")
    display_name: str = os.getenv("ADMIN_DISPLAY_NAME", "Workshop Admin")
    email: str = os.getenv("ADMIN_EMAIL", "admin@example.com")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    business: BusinessConfig = field(default_factory=BusinessConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    admin: AdminBootstrapConfig = field(default_factory=AdminBootstrapConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_name: str = os.getenv("APP_NAME", "asms-core")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    slots = config.business.time_slots
    if not slots:
        raise ValueError("TIME_SLOTS must list at least one slot label")
    if len(set(slots)) != len(slots):
        raise ValueError(f"TIME_SLOTS contains duplicate labels: {list(slots)}")
    if config.capacity.default_max_daily_slots < 1:
        raise ValueError(
            "DEFAULT_MAX_DAILY_SLOTS must be >= 1, "
            f"got {config.capacity.default_max_daily_slots}"
        )
    if config.notifications.push_timeout_sec <= 0:
        raise ValueError(
            f"PUSH_TIMEOUT_SEC must be > 0, got {config.notifications.push_timeout_sec}"
        )
    if config.notifications.fanout_workers < 1:
        raise ValueError(
            f"FANOUT_WORKERS must be >= 1, got {config.notifications.fanout_workers}"
        )
    if config.notifications.subscriber_queue_size < 1:
        raise ValueError(
            "SUBSCRIBER_QUEUE_SIZE must be >= 1, "
            f"got {config.notifications.subscriber_queue_size}"
        )
    if not 0 <= config.scheduler.reset_hour <= 23:
        raise ValueError(
            f"SWEEP_RESET_HOUR must be between 0 and 23, got {config.scheduler.reset_hour}"
        )
    if not 0 <= config.scheduler.reset_minute <= 59:
        raise ValueError(
            f"SWEEP_RESET_MINUTE must be between 0 and 59, got {config.scheduler.reset_minute}"
        )
    if config.scheduler.misfire_grace_sec < 1:
        raise ValueError(
            "SWEEP_MISFIRE_GRACE_SEC must be >= 1, "
            f"got {config.scheduler.misfire_grace_sec}"
        )
    if not config.admin.username.strip():
        raise ValueError("ADMIN_USERNAME must not be empty")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] [%(request_id)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    logger.info("Configuration loaded for '%s'", config.business.name)
    return config


# Singleton instance
settings = load_config()
