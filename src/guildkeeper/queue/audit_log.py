"""
Fire-and-forget log writers for the Discord event handlers.

:class:`AuditLogger` feeds ``audit_logs``; :class:`MessageLogger` feeds
``message_logs`` and the raw ``activity_events`` the analytics rollups read.
Both sit on an :class:`IngestionQueue`, so a slow database never stalls
message handling.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from guildkeeper.configuration.app_configuration import IngestionQueueSettings
from guildkeeper.database.repository import Repository
from guildkeeper.datatypes.log_datatypes import ActivityEvent, AuditEvent, MessageLogEntry
from guildkeeper.health.health_registry import HealthRegistry
from guildkeeper.queue.ingestion_queue import IngestionQueue
from guildkeeper.util.logger import get_logger

logger = get_logger("audit_log")


def _build_queue(name: str, writer, health: HealthRegistry, settings: IngestionQueueSettings) -> IngestionQueue:
    return IngestionQueue(
        name,
        writer,
        health,
        capacity=settings.capacity,
        max_retries=settings.max_retries,
        retry_backoff=settings.retry_backoff_seconds,
    )


class AuditLogger:
    """Queues :class:`AuditEvent` rows for background persistence."""

    QUEUE_NAME = "audit_log_queue"

    def __init__(
        self,
        repository: Repository[AuditEvent],
        health: HealthRegistry,
        settings: IngestionQueueSettings = IngestionQueueSettings(),
    ) -> None:
        self._repository = repository
        self.queue = _build_queue(self.QUEUE_NAME, self._write, health, settings)

    async def _write(self, event: AuditEvent) -> None:
        await self._repository.upsert(event)

    def log(
        self,
        category: str,
        action: str,
        actor_id: Optional[str] = None,
        *,
        actor_type: str = "system",
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        guild_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """Queue one audit entry. Never blocks, never raises."""
        event = AuditEvent(
            category=category,
            action=action,
            actor_id=actor_id,
            actor_type=actor_type,
            target_type=target_type,
            target_id=target_id,
            guild_id=guild_id,
            details=dict(details or {}),
            correlation_id=correlation_id,
        )
        return self.queue.enqueue(event)


class MessageLogger:
    """Queues message-log rows and analytics activity events."""

    QUEUE_NAME = "message_log_queue"

    def __init__(
        self,
        message_logs: Repository[MessageLogEntry],
        activity_events: Repository[ActivityEvent],
        health: HealthRegistry,
        settings: IngestionQueueSettings = IngestionQueueSettings(),
    ) -> None:
        self._repositories: Dict[type, Repository] = {
            MessageLogEntry: message_logs,
            ActivityEvent: activity_events,
        }
        self.queue = _build_queue(self.QUEUE_NAME, self._write, health, settings)

    async def _write(self, payload: Any) -> None:
        await self._repositories[type(payload)].upsert(payload)

    def log_message(
        self,
        guild_id: str,
        channel_id: str,
        user_id: str,
        message_id: str,
        content_length: int = 0,
    ) -> bool:
        """Record a guild message: one message-log row plus a ``message`` activity event."""
        entry = MessageLogEntry(
            guild_id=guild_id,
            channel_id=channel_id,
            user_id=user_id,
            message_id=message_id,
            content_length=content_length,
        )
        logged = self.queue.enqueue(entry)
        self.record_activity(guild_id, "message", user_id, channel_id)
        return logged

    def record_activity(
        self, guild_id: str, event_type: str, user_id: Optional[str] = None, channel_id: Optional[str] = None
    ) -> bool:
        return self.queue.enqueue(
            ActivityEvent(guild_id=guild_id, event_type=event_type, user_id=user_id, channel_id=channel_id)
        )
