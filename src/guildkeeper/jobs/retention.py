"""
Batched deletion of rows past their retention age.

Each sweep deletes at most ``batch_size`` rows per statement so it never holds
the write lock for long, and keeps going until a batch comes back short or
``max_iterations`` is hit. The stop event is checked between batches.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List, Optional

from guildkeeper.configuration.app_configuration import NotificationRetentionSettings
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.notification_datatypes import Notification
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.errors import ConfigurationError
from guildkeeper.util.logger import get_logger

logger = get_logger("retention")

BATCH_DELAY_SECONDS = 0.1


class RetentionSweep:
    """
    Scheduled unit deleting rows of one table (optionally filtered) older than ``age_days``.

    Args:
        name: Label used in logs.
        repository: Table to sweep.
        age_days: Rows whose ``column`` is older than this are deleted. 0 disables the sweep.
        batch_size: Maximum rows deleted per statement.
        max_iterations: Upper bound on batches per invocation.
        column: Timestamp column compared against the cutoff.
        condition: Extra predicate ANDed to the age check.
        batch_delay: Pause between batches, letting other writers in.
    """

    def __init__(
        self,
        name: str,
        repository: Repository,
        age_days: int,
        *,
        batch_size: int = 1000,
        max_iterations: int = 100,
        column: str = "created_at",
        condition: Optional[Where] = None,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ) -> None:
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        if max_iterations <= 0:
            raise ConfigurationError(f"max_iterations must be positive, got {max_iterations}")
        if age_days < 0:
            raise ConfigurationError(f"age_days cannot be negative, got {age_days}")
        self.name = name
        self._repository = repository
        self.age_days = age_days
        self.batch_size = batch_size
        self.max_iterations = max_iterations
        self.column = column
        self.condition = condition
        self.batch_delay = batch_delay

    async def __call__(self, stop_event: asyncio.Event) -> int:
        if self.age_days == 0:
            return 0

        cutoff = utcnow() - timedelta(days=self.age_days)
        where = Where.before(self.column, cutoff)
        if self.condition is not None:
            where = where & self.condition

        total = 0
        batches = 0
        while batches < self.max_iterations and not stop_event.is_set():
            deleted = await self._repository.delete_where(where, self.batch_size)
            batches += 1
            total += deleted
            if deleted < self.batch_size:
                break
            if self.batch_delay:
                await asyncio.sleep(self.batch_delay)
        else:
            if batches >= self.max_iterations:
                logger.warning("[RETENTION] %s stopped after %d batches; rows may remain", self.name, batches)

        if total:
            logger.info("[RETENTION] %s deleted %d rows older than %d days in %d batches", self.name, total, self.age_days, batches)
        return total


class RetentionSweepGroup:
    """Several sweeps run in order as one scheduled unit."""

    def __init__(self, phases: List[RetentionSweep]) -> None:
        self.phases = list(phases)

    async def __call__(self, stop_event: asyncio.Event) -> int:
        total = 0
        for phase in self.phases:
            if stop_event.is_set():
                break
            total += await phase(stop_event)
        return total


class NotificationRetentionSweep(RetentionSweepGroup):
    """
    Notification cleanup in phases, each with its own age.

    Order: per-type ages, then dismissed, read and unread notifications.
    A phase with age 0 keeps its notifications forever.
    """

    def __init__(
        self,
        repository: Repository[Notification],
        settings: NotificationRetentionSettings,
        *,
        batch_size: int = 1000,
        max_iterations: int = 100,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ) -> None:
        common = dict(batch_size=batch_size, max_iterations=max_iterations, batch_delay=batch_delay)
        not_dismissed = Where.eq("dismissed_at", None)

        phases: List[RetentionSweep] = [
            RetentionSweep(
                f"notifications[{kind.value}]", repository, days,
                condition=Where.eq("type", kind) & not_dismissed, **common,
            )
            for kind, days in settings.by_type_days.items()
        ]
        phases += [
            RetentionSweep(
                "notifications[dismissed]", repository, settings.dismissed_days,
                column="dismissed_at", condition=Where("dismissed_at IS NOT NULL"), **common,
            ),
            RetentionSweep(
                "notifications[read]", repository, settings.read_days,
                column="read_at", condition=Where("read_at IS NOT NULL") & not_dismissed, **common,
            ),
            RetentionSweep(
                "notifications[unread]", repository, settings.unread_days,
                condition=Where.eq("read_at", None) & not_dismissed, **common,
            ),
        ]
        super().__init__(phases)
