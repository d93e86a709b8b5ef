"""
Notification fan-out: resolve recipients, suppress duplicates, persist, push.

For each recipient the service

1. returns ``DISABLED`` when the notification type is switched off,
2. reserves the dedup key (recipient, type, related entity) and returns
   ``SUPPRESSED`` when a matching notification exists inside the window,
3. persists the row (bounded retries), releasing the reservation on failure,
4. pushes ``notification_received`` and ``notification_count_changed`` to the
   recipient's live sessions with a timeout.

A push failure never undoes the persisted row: the notification is visible
the next time the recipient loads the dashboard. Nothing here raises for a
downstream failure; callers read the returned outcome instead.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from guildkeeper.configuration.app_configuration import NotificationSettings
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.notification_datatypes import (
    AlertSeverity,
    FanoutResult,
    Notification,
    NotificationOutcome,
    NotificationType,
    RelatedEntity,
)
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.health.health_registry import HealthRegistry
from guildkeeper.notifications.dedup_index import DeduplicationIndex
from guildkeeper.notifications.push_hub import PushHub
from guildkeeper.notifications.subscriber_registry import AllAdmins, Audience, GuildAdmins, SubscriberRegistry
from guildkeeper.util.logger import get_logger

logger = get_logger("notification_service")

EVENT_RECEIVED = "notification_received"
EVENT_COUNT_CHANGED = "notification_count_changed"

PERSIST_BACKOFF_SECONDS = 0.1

DedupKey = Tuple[str, str, str, str]


class NotificationService:
    """Creates notifications for users and audiences. See the module docstring for the pipeline."""

    HEALTH_NAME = "notification_fanout"

    def __init__(
        self,
        repository: Repository[Notification],
        registry: SubscriberRegistry,
        push: PushHub,
        health: HealthRegistry,
        settings: NotificationSettings = NotificationSettings(),
        dedup_index: Optional[DeduplicationIndex] = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._push = push
        self._health = health
        self.settings = settings
        self.dedup_index = dedup_index or DeduplicationIndex(timedelta(minutes=settings.dedup_window_minutes))
        health.register(self.HEALTH_NAME)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_for_user(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        *,
        severity: Optional[AlertSeverity] = None,
        link_url: Optional[str] = None,
        guild_id: Optional[str] = None,
        related_entity: Optional[RelatedEntity] = None,
        now: Optional[datetime] = None,
    ) -> NotificationOutcome:
        """Create one notification for one user. Never raises for downstream failures."""
        if not self.settings.is_type_enabled(type):
            logger.debug("[NOTIFICATIONS] %s notifications disabled, skipping user %s", type.value, user_id)
            return NotificationOutcome.DISABLED

        now = now or utcnow()
        key: Optional[DedupKey] = None
        if related_entity is not None and self.settings.is_dedup_enabled(type):
            key = (user_id, type.value, related_entity.type, related_entity.id)
            if not self.dedup_index.try_reserve(key, now):
                logger.debug("[NOTIFICATIONS] Suppressed duplicate %s for user %s about %s", type.value, user_id, related_entity)
                return NotificationOutcome.SUPPRESSED
            if await self._recently_persisted(user_id, type, related_entity, now):
                logger.debug("[NOTIFICATIONS] Suppressed %s for user %s, already stored about %s", type.value, user_id, related_entity)
                return NotificationOutcome.SUPPRESSED

        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            severity=severity,
            link_url=link_url,
            guild_id=guild_id,
            related_entity_type=related_entity.type if related_entity else None,
            related_entity_id=related_entity.id if related_entity else None,
            created_at=now,
        )

        if not await self._persist(notification):
            if key is not None:
                self.dedup_index.release(key)
            return NotificationOutcome.FAILED

        await self._push_created(notification)
        return NotificationOutcome.CREATED

    async def create_for_audience(
        self,
        audience: Audience,
        type: NotificationType,
        title: str,
        message: str,
        **kwargs: Any,
    ) -> FanoutResult:
        """Create the same notification for every recipient ``audience`` resolves to."""
        started = time.perf_counter()
        self._health.record_start(self.HEALTH_NAME)
        try:
            recipients = await audience.resolve(self._registry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._health.record_failure(self.HEALTH_NAME, exc, time.perf_counter() - started)
            logger.error("[NOTIFICATIONS] Could not resolve recipients for %s: %s", audience, exc)
            return FanoutResult()

        outcomes = await asyncio.gather(
            *(self.create_for_user(user_id, type, title, message, **kwargs) for user_id in recipients)
        )
        result = FanoutResult(outcomes=dict(zip(recipients, outcomes)))

        duration = time.perf_counter() - started
        failed = result.count(NotificationOutcome.FAILED)
        if failed:
            self._health.record_failure(self.HEALTH_NAME, f"{failed} of {len(recipients)} notifications not persisted", duration)
        else:
            self._health.record_success(self.HEALTH_NAME, duration)

        logger.debug(
            "[NOTIFICATIONS] %s '%s' to %s: created=%d suppressed=%d failed=%d",
            type.value, title, audience,
            result.count(NotificationOutcome.CREATED),
            result.count(NotificationOutcome.SUPPRESSED),
            failed,
        )
        return result

    async def create_for_all_admins(self, type: NotificationType, title: str, message: str, **kwargs: Any) -> FanoutResult:
        return await self.create_for_audience(AllAdmins(), type, title, message, **kwargs)

    async def create_for_guild_admins(
        self, guild_id: str, type: NotificationType, title: str, message: str, **kwargs: Any
    ) -> FanoutResult:
        kwargs.setdefault("guild_id", guild_id)
        return await self.create_for_audience(GuildAdmins(guild_id), type, title, message, **kwargs)

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        notification = await self._owned(notification_id, user_id)
        if notification is None:
            return False
        if notification.read_at is None:
            notification.read_at = utcnow()
            await self._repository.upsert(notification)
            await self._push_count(user_id)
        return True

    async def mark_all_as_read(self, user_id: str) -> int:
        unread = await self._repository.find_where(self._unread_where(user_id))
        if not unread:
            return 0
        now = utcnow()
        for notification in unread:
            notification.read_at = now
        await self._repository.insert_many(unread)
        await self._push_count(user_id)
        return len(unread)

    async def dismiss(self, notification_id: str, user_id: str) -> bool:
        notification = await self._owned(notification_id, user_id)
        if notification is None:
            return False
        now = utcnow()
        notification.dismissed_at = notification.dismissed_at or now
        notification.read_at = notification.read_at or now
        await self._repository.upsert(notification)
        await self._push_count(user_id)
        return True

    async def unread_count(self, user_id: str) -> int:
        return await self._repository.count_where(self._unread_where(user_id))

    async def recent_for_user(self, user_id: str, limit: int = 20, include_dismissed: bool = False) -> List[Notification]:
        where = Where.eq("user_id", user_id)
        if not include_dismissed:
            where = where & Where.eq("dismissed_at", None)
        return await self._repository.find_where(where, order_by="created_at DESC", limit=limit)

    def purge_dedup_index(self, now: Optional[datetime] = None) -> int:
        return self.dedup_index.purge_expired(now or utcnow())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _unread_where(user_id: str) -> Where:
        return Where.eq("user_id", user_id) & Where.eq("read_at", None) & Where.eq("dismissed_at", None)

    async def _owned(self, notification_id: str, user_id: str) -> Optional[Notification]:
        notification = await self._repository.get(notification_id)
        if notification is None:
            return None
        if notification.user_id != user_id:
            logger.warning("[NOTIFICATIONS] User %s tried to modify notification %s owned by someone else", user_id, notification_id)
            return None
        return notification

    async def _recently_persisted(self, user_id: str, type: NotificationType, related: RelatedEntity, now: datetime) -> bool:
        where = (
            Where.eq("user_id", user_id)
            & Where.eq("type", type)
            & Where.eq("related_entity_type", related.type)
            & Where.eq("related_entity_id", related.id)
            & Where.at_or_after("created_at", now - self.dedup_index.window)
        )
        try:
            return await self._repository.count_where(where) > 0
        except Exception as exc:
            logger.warning("[NOTIFICATIONS] Dedup lookup failed for user %s, relying on the in-memory index: %s", user_id, exc)
            return False

    async def _persist(self, notification: Notification) -> bool:
        attempts = self.settings.persistence_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._repository.upsert(notification)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt == attempts:
                    logger.error(
                        "[NOTIFICATIONS] Failed to persist %s for user %s after %d attempts: %s",
                        notification.type.value, notification.user_id, attempts, exc,
                    )
                    return False
                logger.warning("[NOTIFICATIONS] Persist attempt %d/%d failed: %s", attempt, attempts, exc)
                await asyncio.sleep(PERSIST_BACKOFF_SECONDS * attempt)
        return False

    async def _push_created(self, notification: Notification) -> None:
        try:
            await asyncio.wait_for(self._push_pair(notification), timeout=self.settings.push_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("[NOTIFICATIONS] Push to user %s timed out, notification %s stays stored", notification.user_id, notification.id)
        except Exception as exc:
            logger.warning("[NOTIFICATIONS] Push to user %s failed, notification %s stays stored: %s", notification.user_id, notification.id, exc)

    async def _push_pair(self, notification: Notification) -> None:
        await self._push.push_to_user(notification.user_id, EVENT_RECEIVED, notification.to_payload())
        count = await self.unread_count(notification.user_id)
        await self._push.push_to_user(notification.user_id, EVENT_COUNT_CHANGED, {"unread_count": count})

    async def _push_count(self, user_id: str) -> None:
        try:
            count = await self.unread_count(user_id)
            await asyncio.wait_for(
                self._push.push_to_user(user_id, EVENT_COUNT_CHANGED, {"unread_count": count}),
                timeout=self.settings.push_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("[NOTIFICATIONS] Count push to user %s timed out", user_id)
        except Exception as exc:
            logger.warning("[NOTIFICATIONS] Count push to user %s failed: %s", user_id, exc)
