"""
Database schema initialization and version tracking.

Column names mirror the dataclass field names in ``guildkeeper.datatypes`` so
:class:`~guildkeeper.database.repository.Repository` can map rows without a
per-table adapter. Timestamps are stored as UTC ISO-8601 text, which sorts
chronologically.
"""

import aiosqlite

from guildkeeper.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 2

# Statements applied when upgrading an existing database to the version in the key.
_MIGRATIONS = {
    2: ["ALTER TABLE activity_events ADD COLUMN channel_id TEXT"],
}

_TABLES = {
    "reminders": """
        CREATE TABLE IF NOT EXISTS reminders (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            message TEXT NOT NULL,
            trigger_at TEXT NOT NULL,
            guild_id TEXT,
            channel_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            delivery_attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL,
            delivered_at TEXT,
            last_executed_at TEXT
        )
    """,
    "scheduled_messages": """
        CREATE TABLE IF NOT EXISTS scheduled_messages (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            frequency TEXT NOT NULL,
            next_execution_at TEXT,
            cron_expression TEXT,
            is_enabled INTEGER NOT NULL DEFAULT 1,
            last_executed_at TEXT,
            last_error TEXT,
            created_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "notifications": """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            severity TEXT,
            link_url TEXT,
            guild_id TEXT,
            related_entity_type TEXT,
            related_entity_id TEXT,
            created_at TEXT NOT NULL,
            read_at TEXT,
            dismissed_at TEXT
        )
    """,
    "audit_logs": """
        CREATE TABLE IF NOT EXISTS audit_logs (
            id TEXT PRIMARY KEY,
            category TEXT NOT NULL,
            action TEXT NOT NULL,
            actor_id TEXT,
            actor_type TEXT NOT NULL,
            target_type TEXT,
            target_id TEXT,
            guild_id TEXT,
            details TEXT NOT NULL DEFAULT '{}',
            correlation_id TEXT,
            created_at TEXT NOT NULL
        )
    """,
    "message_logs": """
        CREATE TABLE IF NOT EXISTS message_logs (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            content_length INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """,
    "activity_events": """
        CREATE TABLE IF NOT EXISTS activity_events (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            user_id TEXT,
            channel_id TEXT,
            created_at TEXT NOT NULL
        )
    """,
    "analytics_hourly": """
        CREATE TABLE IF NOT EXISTS analytics_hourly (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            bucket_start TEXT NOT NULL,
            count INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "analytics_daily": """
        CREATE TABLE IF NOT EXISTS analytics_daily (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            bucket_start TEXT NOT NULL,
            count INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "analytics_channel_hourly": """
        CREATE TABLE IF NOT EXISTS analytics_channel_hourly (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            bucket_start TEXT NOT NULL,
            message_count INTEGER NOT NULL,
            unique_users INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
    """,
    "analytics_member_hourly": """
        CREATE TABLE IF NOT EXISTS analytics_member_hourly (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            bucket_start TEXT NOT NULL,
            message_count INTEGER NOT NULL,
            unique_channels INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
    """,
    "flagged_events": """
        CREATE TABLE IF NOT EXISTS flagged_events (
            id TEXT PRIMARY KEY,
            guild_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            rule_type TEXT NOT NULL,
            severity TEXT NOT NULL,
            description TEXT NOT NULL,
            channel_id TEXT,
            message_id TEXT,
            evidence TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL
        )
    """,
    "admin_access": """
        CREATE TABLE IF NOT EXISTS admin_access (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            role TEXT NOT NULL,
            guild_id TEXT,
            created_at TEXT NOT NULL
        )
    """,
    "guild_detection_settings": """
        CREATE TABLE IF NOT EXISTS guild_detection_settings (
            guild_id TEXT PRIMARY KEY,
            spam_enabled INTEGER NOT NULL DEFAULT 1,
            spam_max_messages INTEGER NOT NULL,
            spam_window_seconds REAL NOT NULL,
            caps_enabled INTEGER NOT NULL DEFAULT 0,
            caps_percent REAL NOT NULL,
            caps_min_length INTEGER NOT NULL,
            toxicity_enabled INTEGER NOT NULL DEFAULT 0,
            toxicity_threshold REAL NOT NULL,
            new_account_multiplier REAL NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "schema_version": """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        )
    """,
}

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_reminders_due ON reminders(status, trigger_at)",
    "CREATE INDEX IF NOT EXISTS idx_scheduled_messages_due ON scheduled_messages(is_enabled, next_execution_at)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_dedup ON notifications(user_id, type, related_entity_type, related_entity_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_created ON audit_logs(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_message_logs_created ON message_logs(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_activity_events_created ON activity_events(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_analytics_hourly_bucket ON analytics_hourly(bucket_start)",
    "CREATE INDEX IF NOT EXISTS idx_analytics_daily_bucket ON analytics_daily(bucket_start)",
    "CREATE INDEX IF NOT EXISTS idx_analytics_channel_hourly_bucket ON analytics_channel_hourly(bucket_start)",
    "CREATE INDEX IF NOT EXISTS idx_analytics_member_hourly_bucket ON analytics_member_hourly(bucket_start)",
    "CREATE INDEX IF NOT EXISTS idx_flagged_events_guild ON flagged_events(guild_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_admin_access_guild ON admin_access(guild_id, role)",
]


class SchemaManager:
    """Creates tables and indexes, and stamps the schema version."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        version = await SchemaManager.current_version(db)
        for ddl in _TABLES.values():
            await db.execute(ddl)
        for ddl in _INDEXES:
            await db.execute(ddl)
        if version is not None:
            await SchemaManager._migrate(db, version)
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized (version %d)", SCHEMA_VERSION)

    @staticmethod
    def table_names() -> list[str]:
        return list(_TABLES)

    @staticmethod
    async def current_version(db: aiosqlite.Connection) -> int | None:
        """Highest applied version, or None for a database without a schema."""
        async with db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
        ) as cursor:
            if await cursor.fetchone() is None:
                return None
        async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
        return row[0] or 0

    @staticmethod
    async def _migrate(db: aiosqlite.Connection, version: int) -> None:
        for target in range(version + 1, SCHEMA_VERSION + 1):
            for statement in _MIGRATIONS.get(target, []):
                await db.execute(statement)
            logger.info("[SCHEMA] Migrated database schema to version %d", target)
