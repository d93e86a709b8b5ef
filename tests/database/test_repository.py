"""
Tests for the generic table repository.

Covers entity round-tripping (enums, datetimes, JSON columns, booleans),
predicate composition, upsert semantics and batched deletes.
"""

from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from guildkeeper.database.database import Database
from guildkeeper.database.db_schema import SchemaManager
from guildkeeper.database.repository import Repository, Where, to_db
from guildkeeper.datatypes.discord_datatypes import GuildID
from guildkeeper.datatypes.log_datatypes import ActivityEvent, HourlyMetric
from guildkeeper.datatypes.moderation_datatypes import DetectorKind, FlaggedEvent, FlagSeverity
from guildkeeper.datatypes.schedule_datatypes import Reminder, ReminderStatus, utcnow
from guildkeeper.errors import PersistenceError


def test_to_db_conversions() -> None:
    naive = datetime(2024, 1, 1, 12, 0)
    assert to_db(naive) == "2024-01-01T12:00:00.000000+00:00"
    assert to_db(True) == 1
    assert to_db(ReminderStatus.PENDING) == "pending"
    assert to_db(GuildID(42)) == "42"
    assert to_db({"a": 1}) == '{"a": 1}'
    assert to_db(None) is None


@pytest.mark.asyncio
async def test_initialize_creates_every_table(db: Database) -> None:
    async with db.connection.read() as conn:
        cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        tables = {row["name"] for row in await cursor.fetchall()}
    assert set(SchemaManager.table_names()) <= tables
    assert db.initialized is True

    # second call is a no-op
    await db.initialize()


@pytest.mark.asyncio
async def test_round_trip_preserves_types(db: Database) -> None:
    flag = FlaggedEvent(
        guild_id="g",
        user_id="u",
        rule_type=DetectorKind.SPAM,
        severity=FlagSeverity.MEDIUM,
        description="flood",
        evidence={"message_count": 6, "new_account": False},
    )
    await db.flagged_events.upsert(flag)

    stored = await db.flagged_events.get(flag.id)
    assert stored == flag
    assert stored.rule_type is DetectorKind.SPAM
    assert stored.evidence == {"message_count": 6, "new_account": False}
    assert stored.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_upsert_overwrites_existing_row(db: Database) -> None:
    reminder = Reminder(user_id="u", message="first", trigger_at=utcnow())
    await db.reminders.upsert(reminder)
    reminder.message = "second"
    reminder.status = ReminderStatus.DELIVERED
    await db.reminders.upsert(reminder)

    rows = await db.reminders.find_where(Where.all())
    assert len(rows) == 1
    assert rows[0].message == "second"
    assert rows[0].status is ReminderStatus.DELIVERED


@pytest.mark.asyncio
async def test_predicates_order_and_limit(db: Database) -> None:
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    events = [
        ActivityEvent(guild_id="g1", event_type="message", created_at=base + timedelta(hours=i))
        for i in range(5)
    ] + [ActivityEvent(guild_id="g2", event_type="command", created_at=base)]
    assert await db.activity_events.insert_many(events) == 6

    window = Where.at_or_after("created_at", base + timedelta(hours=1)) & Where.before("created_at", base + timedelta(hours=4))
    found = await db.activity_events.find_where(Where.eq("guild_id", "g1") & window, order_by="created_at DESC")
    assert [e.created_at for e in found] == [base + timedelta(hours=h) for h in (3, 2, 1)]

    limited = await db.activity_events.find_where(Where.all(), order_by="created_at ASC", limit=2)
    assert len(limited) == 2

    either = Where.eq("event_type", "command") | Where.eq("guild_id", "missing")
    assert await db.activity_events.count_where(either) == 1
    assert await db.activity_events.count_where(Where.is_in("guild_id", ["g1", "g2"])) == 6
    assert await db.activity_events.count_where(Where.is_in("guild_id", [])) == 0


@pytest.mark.asyncio
async def test_order_by_rejects_unknown_columns(db: Database) -> None:
    with pytest.raises(ValueError):
        await db.activity_events.find_where(Where.all(), order_by="created_at; DROP TABLE activity_events")
    with pytest.raises(ValueError):
        await db.activity_events.find_where(Where.all(), order_by="nope ASC")


@pytest.mark.asyncio
async def test_delete_where_respects_limit(db: Database) -> None:
    await db.activity_events.insert_many(ActivityEvent(guild_id="g", event_type="message") for _ in range(5))

    assert await db.activity_events.delete_where(Where.eq("guild_id", "g"), limit=3) == 3
    assert await db.activity_events.delete_where(Where.eq("guild_id", "g"), limit=3) == 2
    assert await db.activity_events.delete_where(Where.eq("guild_id", "g"), limit=3) == 0
    with pytest.raises(ValueError):
        await db.activity_events.delete_where(Where.all(), limit=0)


@pytest.mark.asyncio
async def test_metric_ids_make_upserts_idempotent(db: Database) -> None:
    bucket = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    await db.analytics_hourly.upsert(HourlyMetric(guild_id="g", event_type="message", bucket_start=bucket, count=3))
    await db.analytics_hourly.upsert(HourlyMetric(guild_id="g", event_type="message", bucket_start=bucket, count=7))

    rows = await db.analytics_hourly.find_where(Where.all())
    assert [(r.id, r.count) for r in rows] == [("g:message:20240501T10", 7)]


@pytest.mark.asyncio
async def test_closed_database_raises_persistence_error(tmp_path) -> None:
    database = Database(tmp_path / "closed.db")
    await database.initialize()
    repository: Repository = database.reminders
    await database.shutdown()

    with pytest.raises(RuntimeError):
        await repository.get("missing")

    await database.initialize()
    await database.connection.connection.execute("DROP TABLE reminders")
    with pytest.raises(PersistenceError):
        await repository.get("missing")
    await database.shutdown()


@pytest.mark.asyncio
async def test_initialize_upgrades_version_one_database(tmp_path) -> None:
    path = tmp_path / "v1.db"
    async with aiosqlite.connect(path) as conn:
        await conn.execute(
            "CREATE TABLE activity_events (id TEXT PRIMARY KEY, guild_id TEXT NOT NULL, "
            "event_type TEXT NOT NULL, user_id TEXT, created_at TEXT NOT NULL)"
        )
        await conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT)")
        await conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        await conn.commit()

    database = Database(path)
    await database.initialize()
    try:
        event = ActivityEvent(guild_id="g", event_type="message", user_id="u", channel_id="c")
        await database.activity_events.upsert(event)
        assert (await database.activity_events.get(event.id)).channel_id == "c"
        async with database.connection.read() as conn:
            assert await SchemaManager.current_version(conn) == 2
    finally:
        await database.shutdown()
