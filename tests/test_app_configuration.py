import json
from pathlib import Path

import pytest

from guildkeeper.configuration.app_configuration import (
    DEFAULT_JOBS,
    AppConfig,
    DetectionDefaults,
    RetentionSettings,
)
from guildkeeper.datatypes.notification_datatypes import NotificationType
from guildkeeper.errors import ConfigurationError


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "app_config.yml"


def test_app_config_reload_parses_yaml(config_path: Path) -> None:
    config_payload = {
        "scheduler": {
            "shutdown_grace_seconds": 3,
            "jobs": {
                "reminder_delivery": {"interval_seconds": 15},
                "audit_log_retention": {"cron": "0 2 * * *", "enabled": False},
            },
        },
        "reminders": {"max_concurrent_deliveries": 2},
        "retention": {"audit_log_days": 30, "notifications": {"by_type_days": {"status": 3}}},
        "notifications": {"type_enabled": {"event": False}},
    }
    config_path.write_text(json.dumps(config_payload), encoding="utf-8")

    config = AppConfig(config_path)

    scheduler = config.scheduler
    assert scheduler.shutdown_grace_seconds == pytest.approx(3)
    assert scheduler.job("reminder_delivery").interval_seconds == pytest.approx(15)
    audit = scheduler.job("audit_log_retention")
    assert audit.cron == "0 2 * * *"
    assert audit.interval_seconds is None
    assert audit.enabled is False
    # untouched jobs keep their defaults
    assert scheduler.job("detector_sweep") == DEFAULT_JOBS["detector_sweep"]

    assert config.reminders.max_concurrent_deliveries == 2
    assert config.reminders.batch_size == 50
    assert config.retention.audit_log_days == 30
    assert config.retention.notifications.by_type_days == {NotificationType.STATUS: 3}
    assert config.notifications.is_type_enabled(NotificationType.EVENT) is False
    assert config.notifications.is_type_enabled(NotificationType.ALERT) is True


def test_app_config_missing_file_returns_defaults(tmp_path: Path) -> None:
    missing_path = tmp_path / "does_not_exist.yml"

    config = AppConfig(missing_path)

    assert config.data == {}
    assert config.retention == RetentionSettings()
    assert config.detection_defaults == DetectionDefaults()
    assert config.health.failure_threshold == 3
    assert set(config.scheduler.jobs) == set(DEFAULT_JOBS)


def test_app_config_invalid_yaml_returns_defaults(config_path: Path) -> None:
    config_path.write_text("scheduler: [unclosed", encoding="utf-8")
    assert AppConfig(config_path).data == {}


def test_app_config_get_and_reload(config_path: Path) -> None:
    config_path.write_text("health:\n  failure_threshold: 5\n", encoding="utf-8")
    config = AppConfig(config_path)
    assert config.get("health") == {"failure_threshold": 5}
    assert config.get("missing", "fallback") == "fallback"

    config_path.write_text("health:\n  failure_threshold: 7\n", encoding="utf-8")
    config.reload()
    assert config.health.failure_threshold == 7


def test_job_with_interval_and_cron_rejected() -> None:
    config = AppConfig.from_mapping(
        {"scheduler": {"jobs": {"detector_sweep": {"interval_seconds": 60, "cron": "* * * * *"}}}}
    )
    with pytest.raises(ConfigurationError):
        config.scheduler


@pytest.mark.parametrize(
    "section, data",
    [
        ("scheduler", {"jobs": {"detector_sweep": {"interval_seconds": 0}}}),
        ("reminders", {"batch_size": 0}),
        ("ingestion_queue", {"capacity": -1}),
        ("notifications", {"dedup_window_minutes": 0}),
        ("notifications", {"type_enabled": {"carrier_pigeon": True}}),
        ("health", {"failure_threshold": 0}),
        ("analytics", {"hourly_lookback_hours": 0}),
    ],
)
def test_invalid_values_rejected_on_access(section, data) -> None:
    config = AppConfig.from_mapping({section: data})
    with pytest.raises(ConfigurationError):
        getattr(config, section)


def test_database_path_resolves_relative_to_base_dir(tmp_path: Path) -> None:
    absolute = tmp_path / "elsewhere.db"
    assert AppConfig.from_mapping({"database": {"path": str(absolute)}}).database_path == absolute
    relative = AppConfig.from_mapping({"database": {"path": "data/custom.db"}}).database_path
    assert relative.is_absolute()
    assert relative.parts[-2:] == ("data", "custom.db")
