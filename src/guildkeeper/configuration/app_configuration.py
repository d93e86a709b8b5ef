from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
import fcntl
import os
from typing import Any, Dict, Mapping, Optional
import yaml

from guildkeeper.datatypes.notification_datatypes import NotificationType
from guildkeeper.errors import ConfigurationError
from guildkeeper.util.logger import get_logger

logger = get_logger("app_configuration")


BASE_DIR = Path(os.environ.get("GUILDKEEPER_HOME", ".")).resolve()
CONFIG_PATH = BASE_DIR / "config" / "app_config.yml"


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key, {})
    return value if isinstance(value, dict) else {}


# --------------------------
# Typed sections
# --------------------------
@dataclass(frozen=True)
class JobSettings:
    """Cadence of one background unit. Exactly one of ``interval_seconds`` / ``cron`` is set."""

    interval_seconds: Optional[float] = None
    cron: Optional[str] = None
    enabled: bool = True
    initial_delay_seconds: float = 0.0


DEFAULT_JOBS: Dict[str, JobSettings] = {
    "reminder_delivery": JobSettings(interval_seconds=30),
    "scheduled_messages": JobSettings(interval_seconds=60),
    "audit_log_retention": JobSettings(cron="15 3 * * *"),
    "message_log_retention": JobSettings(cron="30 3 * * *"),
    "activity_event_retention": JobSettings(cron="45 3 * * *"),
    "analytics_retention": JobSettings(cron="0 4 * * *"),
    "notification_retention": JobSettings(interval_seconds=6 * 3600),
    "analytics_hourly_rollup": JobSettings(cron="5 * * * *", initial_delay_seconds=60),
    "analytics_daily_rollup": JobSettings(cron="20 0 * * *", initial_delay_seconds=60),
    "detector_sweep": JobSettings(interval_seconds=300),
    "dedup_index_purge": JobSettings(interval_seconds=600),
}


@dataclass(frozen=True)
class SchedulerSettings:
    shutdown_grace_seconds: float = 10.0
    max_jitter_ratio: float = 0.1
    jobs: Dict[str, JobSettings] = field(default_factory=lambda: dict(DEFAULT_JOBS))

    def job(self, name: str) -> JobSettings:
        return self.jobs.get(name, DEFAULT_JOBS.get(name, JobSettings(interval_seconds=60)))


@dataclass(frozen=True)
class ReminderSettings:
    batch_size: int = 50
    max_concurrent_deliveries: int = 5
    max_delivery_attempts: int = 3
    retry_delay_minutes: float = 5.0


@dataclass(frozen=True)
class NotificationRetentionSettings:
    """Ages in days; 0 keeps that class of notification forever."""

    dismissed_days: int = 7
    read_days: int = 30
    unread_days: int = 0
    by_type_days: Dict[NotificationType, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RetentionSettings:
    batch_size: int = 1000
    max_iterations: int = 100
    audit_log_days: int = 90
    message_log_days: int = 30
    activity_event_days: int = 30
    analytics_hourly_days: int = 90
    analytics_daily_days: int = 365
    notifications: NotificationRetentionSettings = field(default_factory=NotificationRetentionSettings)


@dataclass(frozen=True)
class IngestionQueueSettings:
    capacity: int = 10000
    max_retries: int = 3
    retry_backoff_seconds: float = 0.5
    drain_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class NotificationSettings:
    dedup_window_minutes: float = 15.0
    type_enabled: Dict[NotificationType, bool] = field(default_factory=dict)
    dedup_enabled: Dict[NotificationType, bool] = field(default_factory=dict)
    persistence_retries: int = 2
    push_timeout_seconds: float = 5.0

    def is_type_enabled(self, kind: NotificationType) -> bool:
        return self.type_enabled.get(kind, True)

    def is_dedup_enabled(self, kind: NotificationType) -> bool:
        return self.dedup_enabled.get(kind, True)


@dataclass(frozen=True)
class HealthSettings:
    failure_threshold: int = 3


@dataclass(frozen=True)
class AnalyticsSettings:
    hourly_lookback_hours: int = 6
    daily_lookback_days: int = 2


@dataclass(frozen=True)
class DetectionDefaults:
    spam_enabled: bool = True
    spam_max_messages: int = 5
    spam_window_seconds: float = 10.0
    caps_enabled: bool = False
    caps_percent: float = 70.0
    caps_min_length: int = 10
    toxicity_enabled: bool = False
    toxicity_threshold: float = 0.8
    new_account_multiplier: float = 0.7
    new_account_days: int = 7
    idle_window_grace_seconds: float = 600.0


def _positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")


def _type_map(raw: Any, cast) -> Dict[NotificationType, Any]:
    result: Dict[NotificationType, Any] = {}
    if not isinstance(raw, dict):
        return result
    for key, value in raw.items():
        try:
            result[NotificationType(str(key).lower())] = cast(value)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown notification type {key!r}") from exc
    return result


class AppConfig:
    """File-lock based accessor around the YAML-based application configuration.

    The class caches contents of ``config/app_config.yml``, exposes dictionary-like
    access helpers, and resolves each section into a frozen settings dataclass.
    Missing keys fall back to the dataclass defaults; values that are present but
    unusable raise :class:`ConfigurationError` when the section is accessed.
    """

    def __init__(self, config_path: Path = CONFIG_PATH) -> None:
        self.config_path = config_path
        self._data: Dict[str, Any] = {}
        self.reload()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AppConfig":
        """Build a config from an in-memory mapping instead of a file."""
        config = cls.__new__(cls)
        config.config_path = None
        config._data = dict(data)
        return config

    # --------------------------
    # Private helpers
    # --------------------------
    def load_from_disk(self) -> Dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = yaml.safe_load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            logger.error("[APP CONFIGURATION] Config file %s not found, using defaults.", self.config_path)
        except (OSError, yaml.YAMLError) as exc:
            logger.error("[APP CONFIGURATION] Failed to load config %s: %s", self.config_path, exc)
        return {}

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> Dict[str, Any]:
        """Re-read the YAML file and replace the in-memory cache."""
        if self.config_path is not None:
            self._data = self.load_from_disk()
        return self._data

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    # --------------------------
    # High-level shortcuts
    # --------------------------
    @property
    def database_path(self) -> Path:
        raw = _section(self._data, "database").get("path", "data/app.db")
        path = Path(str(raw))
        return path if path.is_absolute() else BASE_DIR / path

    @property
    def scheduler(self) -> SchedulerSettings:
        section = _section(self._data, "scheduler")
        jobs = dict(DEFAULT_JOBS)
        for name, raw in _section(section, "jobs").items():
            if not isinstance(raw, dict):
                raise ConfigurationError(f"scheduler.jobs.{name} must be a mapping")
            interval = raw.get("interval_seconds")
            cron = raw.get("cron")
            if interval is None and cron is None:
                default = DEFAULT_JOBS.get(name, JobSettings(interval_seconds=60))
                interval, cron = default.interval_seconds, default.cron
            if interval is not None and cron is not None:
                raise ConfigurationError(f"scheduler.jobs.{name} sets both interval_seconds and cron")
            if interval is not None:
                _positive(f"scheduler.jobs.{name}.interval_seconds", float(interval))
            jobs[name] = JobSettings(
                interval_seconds=float(interval) if interval is not None else None,
                cron=str(cron) if cron is not None else None,
                enabled=bool(raw.get("enabled", True)),
                initial_delay_seconds=float(raw.get("initial_delay_seconds", 0.0)),
            )
        return SchedulerSettings(
            shutdown_grace_seconds=float(section.get("shutdown_grace_seconds", 10.0)),
            max_jitter_ratio=float(section.get("max_jitter_ratio", 0.1)),
            jobs=jobs,
        )

    @property
    def reminders(self) -> ReminderSettings:
        section = _section(self._data, "reminders")
        settings = ReminderSettings(
            batch_size=int(section.get("batch_size", 50)),
            max_concurrent_deliveries=int(section.get("max_concurrent_deliveries", 5)),
            max_delivery_attempts=int(section.get("max_delivery_attempts", 3)),
            retry_delay_minutes=float(section.get("retry_delay_minutes", 5.0)),
        )
        _positive("reminders.batch_size", settings.batch_size)
        _positive("reminders.max_concurrent_deliveries", settings.max_concurrent_deliveries)
        _positive("reminders.max_delivery_attempts", settings.max_delivery_attempts)
        return settings

    @property
    def retention(self) -> RetentionSettings:
        section = _section(self._data, "retention")
        notif = _section(section, "notifications")
        settings = RetentionSettings(
            batch_size=int(section.get("batch_size", 1000)),
            max_iterations=int(section.get("max_iterations", 100)),
            audit_log_days=int(section.get("audit_log_days", 90)),
            message_log_days=int(section.get("message_log_days", 30)),
            activity_event_days=int(section.get("activity_event_days", 30)),
            analytics_hourly_days=int(section.get("analytics_hourly_days", 90)),
            analytics_daily_days=int(section.get("analytics_daily_days", 365)),
            notifications=NotificationRetentionSettings(
                dismissed_days=int(notif.get("dismissed_days", 7)),
                read_days=int(notif.get("read_days", 30)),
                unread_days=int(notif.get("unread_days", 0)),
                by_type_days=_type_map(notif.get("by_type_days"), int),
            ),
        )
        _positive("retention.batch_size", settings.batch_size)
        _positive("retention.max_iterations", settings.max_iterations)
        return settings

    @property
    def ingestion_queue(self) -> IngestionQueueSettings:
        section = _section(self._data, "ingestion_queue")
        settings = IngestionQueueSettings(
            capacity=int(section.get("capacity", 10000)),
            max_retries=int(section.get("max_retries", 3)),
            retry_backoff_seconds=float(section.get("retry_backoff_seconds", 0.5)),
            drain_timeout_seconds=float(section.get("drain_timeout_seconds", 5.0)),
        )
        _positive("ingestion_queue.capacity", settings.capacity)
        if settings.max_retries < 0:
            raise ConfigurationError(f"ingestion_queue.max_retries cannot be negative, got {settings.max_retries}")
        return settings

    @property
    def notifications(self) -> NotificationSettings:
        section = _section(self._data, "notifications")
        settings = NotificationSettings(
            dedup_window_minutes=float(section.get("dedup_window_minutes", 15.0)),
            type_enabled=_type_map(section.get("type_enabled"), bool),
            dedup_enabled=_type_map(section.get("dedup_enabled"), bool),
            persistence_retries=int(section.get("persistence_retries", 2)),
            push_timeout_seconds=float(section.get("push_timeout_seconds", 5.0)),
        )
        _positive("notifications.dedup_window_minutes", settings.dedup_window_minutes)
        _positive("notifications.push_timeout_seconds", settings.push_timeout_seconds)
        return settings

    @property
    def health(self) -> HealthSettings:
        section = _section(self._data, "health")
        settings = HealthSettings(failure_threshold=int(section.get("failure_threshold", 3)))
        _positive("health.failure_threshold", settings.failure_threshold)
        return settings

    @property
    def analytics(self) -> AnalyticsSettings:
        section = _section(self._data, "analytics")
        settings = AnalyticsSettings(
            hourly_lookback_hours=int(section.get("hourly_lookback_hours", 6)),
            daily_lookback_days=int(section.get("daily_lookback_days", 2)),
        )
        _positive("analytics.hourly_lookback_hours", settings.hourly_lookback_hours)
        _positive("analytics.daily_lookback_days", settings.daily_lookback_days)
        return settings

    @property
    def detection_defaults(self) -> DetectionDefaults:
        section = _section(self._data, "detection_defaults")
        defaults = DetectionDefaults()
        values = {name: section.get(name, getattr(defaults, name)) for name in defaults.__dataclass_fields__}
        return DetectionDefaults(**values)
