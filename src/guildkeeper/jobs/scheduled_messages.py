"""
Guild messages posted once or on a repeating schedule.

Schedules are validated when they are created or edited
(:class:`ScheduledMessageService`), so a bad cron expression is rejected at the
form instead of breaking the job later. :class:`ScheduledMessageJob` posts the
due messages and advances ``next_execution_at``.
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime
from typing import Any, List, Optional

from guildkeeper.bot.sender import MessageSender, build_embed
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.schedule_datatypes import ScheduledMessage, ScheduleFrequency, utcnow
from guildkeeper.errors import ConfigurationError
from guildkeeper.scheduler.cron import calculate_next_execution, next_fire_time, validate_schedule
from guildkeeper.util.logger import get_logger

logger = get_logger("scheduled_messages")

_EDITABLE_FIELDS = frozenset({"channel_id", "title", "content", "frequency", "cron_expression", "next_execution_at", "is_enabled"})


def _check(message: ScheduledMessage, now: datetime, *, require_future: bool = True) -> None:
    if not message.title.strip():
        raise ValueError("Title cannot be empty")
    if not message.content.strip():
        raise ValueError("Content cannot be empty")
    validate_schedule(message.frequency, message.cron_expression)
    if message.is_enabled and message.next_execution_at is None:
        raise ValueError("next_execution_at is required")
    if message.next_execution_at is None:
        return
    if message.next_execution_at.tzinfo is None:
        raise ValueError("next_execution_at must be timezone-aware")
    if require_future and message.is_enabled and message.next_execution_at <= now:
        raise ValueError("next_execution_at must be in the future")


class ScheduledMessageService:
    """Create/edit/delete scheduled messages with validation at acceptance time."""

    def __init__(self, repository: Repository[ScheduledMessage]) -> None:
        self._repository = repository

    async def create(
        self,
        guild_id: str,
        channel_id: str,
        title: str,
        content: str,
        frequency: ScheduleFrequency,
        *,
        next_execution_at: Optional[datetime] = None,
        cron_expression: Optional[str] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledMessage:
        """
        Raises:
            ConfigurationError: Invalid cron expression for a custom schedule.
            ValueError: Missing text, or a first execution that is not in the future.
        """
        now = now or utcnow()
        if frequency is not ScheduleFrequency.CUSTOM:
            cron_expression = None
        elif next_execution_at is None:
            validate_schedule(frequency, cron_expression)
            next_execution_at = next_fire_time(cron_expression, now)

        message = ScheduledMessage(
            guild_id=guild_id,
            channel_id=channel_id,
            title=title,
            content=content,
            frequency=frequency,
            next_execution_at=next_execution_at,
            cron_expression=cron_expression,
            created_by=created_by,
        )
        _check(message, now)
        await self._repository.upsert(message)
        logger.info("[SCHEDULED MESSAGES] Created %s '%s' in guild %s (%s)", message.id, title, guild_id, frequency.value)
        return message

    async def update(self, message_id: str, *, now: Optional[datetime] = None, **changes: Any) -> ScheduledMessage:
        """Apply ``changes`` to a stored message. Nothing is written if validation fails."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        current = await self._repository.get(message_id)
        if current is None:
            raise KeyError(f"Scheduled message {message_id} not found")

        now = now or utcnow()
        candidate = dataclasses.replace(current, **changes, updated_at=now)
        if candidate.frequency is not ScheduleFrequency.CUSTOM:
            candidate.cron_expression = None
        explicit_time = "next_execution_at" in changes
        schedule_changed = "frequency" in changes or "cron_expression" in changes
        if candidate.frequency is ScheduleFrequency.CUSTOM and schedule_changed and not explicit_time:
            validate_schedule(candidate.frequency, candidate.cron_expression)
            candidate.next_execution_at = next_fire_time(candidate.cron_expression, now)
        if candidate.is_enabled and not current.is_enabled and not explicit_time:
            stale = candidate.next_execution_at is None or candidate.next_execution_at <= now
            if stale:
                candidate.next_execution_at = calculate_next_execution(candidate.frequency, candidate.cron_expression, now)
            if candidate.next_execution_at is None:
                raise ValueError("A one-time message that already ran needs a new next_execution_at to be re-enabled")

        # Only a newly supplied time has to lie in the future; an overdue stored one just fires next tick.
        _check(candidate, now, require_future=explicit_time)
        await self._repository.upsert(candidate)
        return candidate

    async def set_enabled(self, message_id: str, enabled: bool) -> ScheduledMessage:
        return await self.update(message_id, is_enabled=enabled)

    async def delete(self, message_id: str) -> bool:
        current = await self._repository.get(message_id)
        return current is not None and await self._repository.delete(current)

    async def for_guild(self, guild_id: str) -> List[ScheduledMessage]:
        return await self._repository.find_where(Where.eq("guild_id", guild_id), order_by="next_execution_at ASC")


class ScheduledMessageJob:
    """Scheduled unit: post every enabled message whose ``next_execution_at`` has passed."""

    def __init__(self, repository: Repository[ScheduledMessage], sender: MessageSender, batch_size: int = 50) -> None:
        self._repository = repository
        self._sender = sender
        self.batch_size = batch_size

    async def __call__(self, stop_event: asyncio.Event) -> int:
        now = utcnow()
        where = Where.eq("is_enabled", True) & Where.at_or_before("next_execution_at", now)
        due = await self._repository.find_where(where, order_by="next_execution_at ASC", limit=self.batch_size)

        sent = 0
        for message in due:
            if stop_event.is_set():
                break
            if await self._execute(message, now):
                sent += 1
        return sent

    async def _execute(self, message: ScheduledMessage, now: datetime) -> bool:
        try:
            await self._sender.send_to_channel(
                message.channel_id,
                "",
                embed=build_embed(message.title, message.content),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Stays due; retried on the next tick.
            message.last_error = f"{type(exc).__name__}: {exc}"
            message.updated_at = now
            await self._repository.upsert(message)
            logger.warning("[SCHEDULED MESSAGES] Failed to post %s to channel %s: %s", message.id, message.channel_id, exc)
            return False

        message.last_executed_at = now
        message.last_error = None
        message.updated_at = now
        try:
            message.next_execution_at = self._advance(message, now)
        except ConfigurationError as exc:
            message.next_execution_at = None
            message.last_error = str(exc)
            logger.error("[SCHEDULED MESSAGES] Disabling %s, schedule is no longer valid: %s", message.id, exc)
        if message.next_execution_at is None:
            message.is_enabled = False
        await self._repository.upsert(message)
        logger.debug("[SCHEDULED MESSAGES] Posted %s; next execution %s", message.id, message.next_execution_at)
        return True

    @staticmethod
    def _advance(message: ScheduledMessage, now: datetime) -> Optional[datetime]:
        """Next execution after ``now``, keeping the original phase of the schedule."""
        base = message.next_execution_at or now
        upcoming = calculate_next_execution(message.frequency, message.cron_expression, base)
        while upcoming is not None and upcoming <= now:
            upcoming = calculate_next_execution(message.frequency, message.cron_expression, upcoming)
        return upcoming
