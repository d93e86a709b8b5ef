"""
Schedule arithmetic as pure functions.

``next_fire_time`` wraps croniter so the runner, the scheduled-message job and
the settings forms all agree on what a cron expression means. Nothing here
touches the clock; callers pass the reference time in.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from croniter import croniter

from guildkeeper.datatypes.schedule_datatypes import ScheduleFrequency
from guildkeeper.errors import ConfigurationError


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def validate_cron_expression(expression: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Return ``(True, None)`` for a usable expression, else ``(False, reason)``."""
    if expression is None or not expression.strip():
        return False, "Cron expression is required"
    if not croniter.is_valid(expression.strip()):
        return False, f"Invalid cron expression: {expression!r}"
    return True, None


def next_fire_time(expression: str, from_time: datetime) -> datetime:
    """
    First time strictly after ``from_time`` that matches ``expression`` (UTC).

    Raises:
        ConfigurationError: If the expression does not parse.
    """
    ok, reason = validate_cron_expression(expression)
    if not ok:
        raise ConfigurationError(reason)
    return _as_utc(croniter(expression.strip(), _as_utc(from_time)).get_next(datetime))


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_next_execution(
    frequency: ScheduleFrequency,
    cron_expression: Optional[str],
    base_time: datetime,
) -> Optional[datetime]:
    """
    Next execution after ``base_time`` for a scheduled message.

    Returns ``None`` for :attr:`ScheduleFrequency.ONCE`, meaning the message
    has no further executions.
    """
    base = _as_utc(base_time)
    if frequency is ScheduleFrequency.ONCE:
        return None
    if frequency is ScheduleFrequency.HOURLY:
        return base + timedelta(hours=1)
    if frequency is ScheduleFrequency.DAILY:
        return base + timedelta(days=1)
    if frequency is ScheduleFrequency.WEEKLY:
        return base + timedelta(days=7)
    if frequency is ScheduleFrequency.MONTHLY:
        return add_months(base, 1)
    if frequency is ScheduleFrequency.CUSTOM:
        if cron_expression is None:
            raise ConfigurationError("Cron expression is required when frequency is custom")
        return next_fire_time(cron_expression, base)
    raise ConfigurationError(f"Unknown schedule frequency: {frequency!r}")


def validate_schedule(frequency: ScheduleFrequency, cron_expression: Optional[str]) -> None:
    """Reject a frequency/expression pair before it is stored."""
    if frequency is ScheduleFrequency.CUSTOM:
        ok, reason = validate_cron_expression(cron_expression)
        if not ok:
            raise ConfigurationError(reason)
