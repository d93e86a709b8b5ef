"""
Database coordinator.

Owns the :class:`ConnectionManager` and one :class:`Repository` per table so
the rest of the application receives a single object at wiring time:

    db = Database(Path("data/app.db"))
    await db.initialize()
    await db.reminders.find_where(...)
    await db.shutdown()
"""

from __future__ import annotations

from pathlib import Path

from guildkeeper.database.db_connection import ConnectionManager
from guildkeeper.database.db_schema import SchemaManager
from guildkeeper.database.repository import Repository
from guildkeeper.datatypes.detection_datatypes import DetectionSettings
from guildkeeper.datatypes.log_datatypes import (
    ActivityEvent,
    AuditEvent,
    ChannelHourlyMetric,
    DailyMetric,
    HourlyMetric,
    MemberHourlyMetric,
    MessageLogEntry,
)
from guildkeeper.datatypes.moderation_datatypes import AdminAccess, FlaggedEvent
from guildkeeper.datatypes.notification_datatypes import Notification
from guildkeeper.datatypes.schedule_datatypes import Reminder, ScheduledMessage
from guildkeeper.util.logger import get_logger

logger = get_logger("database")

DB_PATH = Path("./data/app.db").resolve()


class Database:
    """
    Lifecycle:
        1. ``await initialize()`` at startup (opens the connection, creates schema)
        2. use the repositories
        3. ``await shutdown()`` at exit
    """

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = db_path
        self.connection = ConnectionManager()
        self._initialized = False

        self.reminders = Repository(self.connection, "reminders", Reminder)
        self.scheduled_messages = Repository(self.connection, "scheduled_messages", ScheduledMessage)
        self.notifications = Repository(self.connection, "notifications", Notification)
        self.audit_logs = Repository(self.connection, "audit_logs", AuditEvent)
        self.message_logs = Repository(self.connection, "message_logs", MessageLogEntry)
        self.activity_events = Repository(self.connection, "activity_events", ActivityEvent)
        self.analytics_hourly = Repository(self.connection, "analytics_hourly", HourlyMetric)
        self.analytics_daily = Repository(self.connection, "analytics_daily", DailyMetric)
        self.analytics_channel_hourly = Repository(self.connection, "analytics_channel_hourly", ChannelHourlyMetric)
        self.analytics_member_hourly = Repository(self.connection, "analytics_member_hourly", MemberHourlyMetric)
        self.flagged_events = Repository(self.connection, "flagged_events", FlaggedEvent)
        self.admin_access = Repository(self.connection, "admin_access", AdminAccess)
        self.detection_settings = Repository(
            self.connection, "guild_detection_settings", DetectionSettings, key_field="guild_id"
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Open the connection and create the schema. Safe to call twice."""
        if self._initialized:
            logger.debug("[DATABASE] Already initialized, skipping")
            return

        await self.connection.open(self.db_path)
        await SchemaManager.initialize_schema(self.connection.connection)
        self._initialized = True
        logger.info("[DATABASE] Database initialized at %s", self.db_path)

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self.connection.close()
        self._initialized = False
        logger.info("[DATABASE] Database shutdown complete")
