"""Turns gateway and guild lifecycle events into admin notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from guildkeeper.datatypes.notification_datatypes import AlertSeverity, NotificationType, RelatedEntity
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.notifications.notification_service import NotificationService
from guildkeeper.util.logger import get_logger

logger = get_logger("connection_notifier")

GATEWAY = RelatedEntity("connection", "gateway")


class ConnectionStateNotifier:
    """
    Tracks whether the bot is connected and notifies global admins on changes.

    Repeated disconnects inside the dedup window collapse into one alert, so a
    flapping connection does not flood the dashboard.
    """

    def __init__(self, service: NotificationService) -> None:
        self._service = service
        self.connected = False
        self.disconnected_at: Optional[datetime] = None
        self.last_connected_at: Optional[datetime] = None

    async def on_connected(self) -> None:
        was_disconnected = self.disconnected_at is not None
        outage = (utcnow() - self.disconnected_at).total_seconds() if was_disconnected else None
        self.connected = True
        self.disconnected_at = None
        self.last_connected_at = utcnow()
        if not was_disconnected:
            logger.info("[CONNECTION STATE] Connected")
            return
        logger.info("[CONNECTION STATE] Reconnected after %.0fs", outage)
        await self._service.create_for_all_admins(
            NotificationType.STATUS,
            "Bot reconnected",
            f"Connection to Discord restored after {outage:.0f} seconds.",
            severity=AlertSeverity.INFO,
            related_entity=GATEWAY,
        )

    async def on_disconnected(self, reason: Optional[str] = None) -> None:
        if not self.connected:
            return
        self.connected = False
        self.disconnected_at = utcnow()
        logger.warning("[CONNECTION STATE] Disconnected: %s", reason or "unknown reason")
        await self._service.create_for_all_admins(
            NotificationType.ALERT,
            "Bot disconnected",
            f"Lost connection to Discord ({reason or 'unknown reason'}).",
            severity=AlertSeverity.WARNING,
            related_entity=GATEWAY,
        )

    async def on_guild_joined(self, guild_id: str, guild_name: str) -> None:
        await self._service.create_for_all_admins(
            NotificationType.EVENT,
            "Joined a server",
            f"The bot was added to {guild_name}.",
            guild_id=guild_id,
            related_entity=RelatedEntity("guild_joined", guild_id),
        )

    async def on_guild_removed(self, guild_id: str, guild_name: str) -> None:
        await self._service.create_for_all_admins(
            NotificationType.EVENT,
            "Removed from a server",
            f"The bot was removed from {guild_name}.",
            guild_id=guild_id,
            related_entity=RelatedEntity("guild_removed", guild_id),
        )

    async def on_command_error(self, command_name: str, error: BaseException, guild_id: Optional[str] = None) -> None:
        await self._service.create_for_all_admins(
            NotificationType.ERROR,
            f"Command /{command_name} failed",
            f"{type(error).__name__}: {error}",
            severity=AlertSeverity.WARNING,
            guild_id=guild_id,
            related_entity=RelatedEntity("command", command_name),
        )
