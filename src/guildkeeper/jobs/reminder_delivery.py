"""
Reminder creation and delivery.

:class:`ReminderService` validates reminders when users create them;
:class:`ReminderDeliveryJob` is the scheduled unit that sends the due ones.
A reminder is selected only while its status is ``pending`` and its
``trigger_at`` has passed, so a delivered reminder is never sent twice.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from guildkeeper.bot.sender import MessageSender, build_embed
from guildkeeper.configuration.app_configuration import ReminderSettings
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.schedule_datatypes import Reminder, ReminderStatus, utcnow
from guildkeeper.errors import PersistenceError
from guildkeeper.util.logger import get_logger

logger = get_logger("reminder_delivery")

MAX_REMINDER_LENGTH = 2000


class ReminderService:
    def __init__(self, repository: Repository[Reminder]) -> None:
        self._repository = repository

    async def create(
        self,
        user_id: str,
        message: str,
        trigger_at: datetime,
        *,
        guild_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reminder:
        """
        Store a new pending reminder.

        Raises:
            ValueError: Empty or over-long message, naive or past trigger time.
        """
        message = (message or "").strip()
        if not message:
            raise ValueError("Reminder message cannot be empty")
        if len(message) > MAX_REMINDER_LENGTH:
            raise ValueError(f"Reminder message cannot exceed {MAX_REMINDER_LENGTH} characters")
        if trigger_at.tzinfo is None:
            raise ValueError("trigger_at must be timezone-aware")
        if trigger_at <= (now or utcnow()):
            raise ValueError("Reminder time must be in the future")

        reminder = Reminder(user_id=user_id, message=message, trigger_at=trigger_at, guild_id=guild_id, channel_id=channel_id)
        await self._repository.upsert(reminder)
        logger.debug("[REMINDERS] Created reminder %s for user %s at %s", reminder.id, user_id, trigger_at.isoformat())
        return reminder

    async def cancel(self, reminder_id: str, user_id: str) -> bool:
        reminder = await self._repository.get(reminder_id)
        if reminder is None or reminder.user_id != user_id or reminder.status is not ReminderStatus.PENDING:
            return False
        reminder.status = ReminderStatus.CANCELLED
        await self._repository.upsert(reminder)
        return True

    async def pending_for_user(self, user_id: str) -> List[Reminder]:
        where = Where.eq("user_id", user_id) & Where.eq("status", ReminderStatus.PENDING)
        return await self._repository.find_where(where, order_by="trigger_at ASC")


class ReminderDeliveryJob:
    """
    Scheduled unit: deliver every due reminder, at most ``max_concurrent_deliveries`` at a time.

    Failed deliveries are retried ``retry_delay_minutes`` later until
    ``max_delivery_attempts`` is reached, then marked ``failed``.
    """

    def __init__(self, repository: Repository[Reminder], sender: MessageSender, settings: ReminderSettings = ReminderSettings()) -> None:
        self._repository = repository
        self._sender = sender
        self.settings = settings

    async def __call__(self, stop_event: asyncio.Event) -> int:
        now = utcnow()
        where = Where.eq("status", ReminderStatus.PENDING) & Where.at_or_before("trigger_at", now)
        due = await self._repository.find_where(where, order_by="trigger_at ASC", limit=self.settings.batch_size)
        if not due:
            return 0

        logger.debug("[REMINDERS] %d reminders due", len(due))
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_deliveries)
        results = await asyncio.gather(
            *(self._deliver(semaphore, reminder, stop_event) for reminder in due),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if isinstance(error, asyncio.CancelledError):
                raise error
        delivered = sum(1 for r in results if r is True)
        if errors:
            raise PersistenceError(f"{len(errors)} reminder state update(s) failed: {errors[0]}")
        if delivered:
            logger.info("[REMINDERS] Delivered %d of %d due reminders", delivered, len(due))
        return delivered

    async def _deliver(self, semaphore: asyncio.Semaphore, reminder: Reminder, stop_event: asyncio.Event) -> bool:
        async with semaphore:
            if stop_event.is_set():
                return False
            try:
                await self._sender.send_direct_message(
                    reminder.user_id,
                    "",
                    embed=build_embed("Reminder", reminder.message),
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._record_failure(reminder, exc)
                return False

            now = utcnow()
            reminder.status = ReminderStatus.DELIVERED
            reminder.delivered_at = now
            reminder.last_executed_at = now
            reminder.delivery_attempts += 1
            reminder.last_error = None
            await self._repository.upsert(reminder)
            return True

    async def _record_failure(self, reminder: Reminder, exc: Exception) -> None:
        now = utcnow()
        reminder.delivery_attempts += 1
        reminder.last_error = f"{type(exc).__name__}: {exc}"
        reminder.last_executed_at = now
        if reminder.delivery_attempts >= self.settings.max_delivery_attempts:
            reminder.status = ReminderStatus.FAILED
            logger.error(
                "[REMINDERS] Reminder %s for user %s failed permanently after %d attempts: %s",
                reminder.id, reminder.user_id, reminder.delivery_attempts, exc,
            )
        else:
            reminder.trigger_at = now + timedelta(minutes=self.settings.retry_delay_minutes)
            logger.warning(
                "[REMINDERS] Reminder %s for user %s failed (attempt %d/%d), retrying at %s: %s",
                reminder.id, reminder.user_id, reminder.delivery_attempts,
                self.settings.max_delivery_attempts, reminder.trigger_at.isoformat(), exc,
            )
        await self._repository.upsert(reminder)
