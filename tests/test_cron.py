from datetime import datetime, timedelta, timezone

import pytest

from guildkeeper.datatypes.schedule_datatypes import ScheduleFrequency
from guildkeeper.errors import ConfigurationError
from guildkeeper.scheduler.cron import (
    add_months,
    calculate_next_execution,
    next_fire_time,
    validate_cron_expression,
    validate_schedule,
)

BASE = datetime(2024, 1, 31, 10, 30, tzinfo=timezone.utc)


def test_validate_cron_expression() -> None:
    assert validate_cron_expression("*/5 * * * *") == (True, None)

    ok, reason = validate_cron_expression("not a cron")
    assert ok is False
    assert "Invalid cron expression" in reason

    ok, reason = validate_cron_expression("   ")
    assert ok is False
    assert reason == "Cron expression is required"


def test_next_fire_time_is_strictly_after_reference() -> None:
    on_the_hour = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert next_fire_time("0 * * * *", on_the_hour) == datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)
    assert next_fire_time("15 3 * * *", on_the_hour) == datetime(2024, 1, 2, 3, 15, tzinfo=timezone.utc)


def test_next_fire_time_treats_naive_as_utc() -> None:
    result = next_fire_time("30 * * * *", datetime(2024, 1, 1, 12, 0))
    assert result.tzinfo is not None
    assert result == datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)


def test_next_fire_time_rejects_bad_expression() -> None:
    with pytest.raises(ConfigurationError):
        next_fire_time("61 * * * *", BASE)


def test_add_months_clamps_day() -> None:
    assert add_months(BASE, 1) == datetime(2024, 2, 29, 10, 30, tzinfo=timezone.utc)
    assert add_months(datetime(2023, 12, 15, tzinfo=timezone.utc), 1) == datetime(2024, 1, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "frequency, expected",
    [
        (ScheduleFrequency.HOURLY, BASE + timedelta(hours=1)),
        (ScheduleFrequency.DAILY, BASE + timedelta(days=1)),
        (ScheduleFrequency.WEEKLY, BASE + timedelta(days=7)),
        (ScheduleFrequency.MONTHLY, datetime(2024, 2, 29, 10, 30, tzinfo=timezone.utc)),
    ],
)
def test_calculate_next_execution_fixed_frequencies(frequency, expected) -> None:
    assert calculate_next_execution(frequency, None, BASE) == expected


def test_calculate_next_execution_once_has_no_next() -> None:
    assert calculate_next_execution(ScheduleFrequency.ONCE, None, BASE) is None


def test_calculate_next_execution_custom_uses_cron() -> None:
    assert calculate_next_execution(ScheduleFrequency.CUSTOM, "0 12 * * *", BASE) == datetime(
        2024, 1, 31, 12, 0, tzinfo=timezone.utc
    )
    assert calculate_next_execution(ScheduleFrequency.CUSTOM, "0 9 * * *", BASE) == datetime(
        2024, 2, 1, 9, 0, tzinfo=timezone.utc
    )
    with pytest.raises(ConfigurationError):
        calculate_next_execution(ScheduleFrequency.CUSTOM, None, BASE)


def test_validate_schedule() -> None:
    validate_schedule(ScheduleFrequency.DAILY, None)
    validate_schedule(ScheduleFrequency.CUSTOM, "0 9 * * 1")
    with pytest.raises(ConfigurationError):
        validate_schedule(ScheduleFrequency.CUSTOM, "every monday")
