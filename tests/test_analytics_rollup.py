import asyncio
from datetime import datetime, timezone

import pytest

from guildkeeper.configuration.app_configuration import AnalyticsSettings
from guildkeeper.database.repository import Where
from guildkeeper.datatypes.log_datatypes import ActivityEvent, ChannelHourlyMetric, HourlyMetric, MemberHourlyMetric
from guildkeeper.jobs.analytics_rollup import AnalyticsRollupJob, floor_day, floor_hour


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def job(db) -> AnalyticsRollupJob:
    return AnalyticsRollupJob(
        db.activity_events,
        db.analytics_hourly,
        db.analytics_daily,
        db.analytics_channel_hourly,
        db.analytics_member_hourly,
        AnalyticsSettings(hourly_lookback_hours=6, daily_lookback_days=2),
    )


def test_floor_helpers() -> None:
    moment = datetime(2024, 5, 2, 10, 47, 13, 999, tzinfo=timezone.utc)
    assert floor_hour(moment) == at(2, 10)
    assert floor_day(moment) == at(2, 0)


@pytest.mark.asyncio
async def test_hourly_rollup_counts_completed_hours(db, job) -> None:
    await db.activity_events.insert_many(
        [
            ActivityEvent(guild_id="g1", event_type="message", created_at=at(2, 9, 15)),
            ActivityEvent(guild_id="g1", event_type="message", created_at=at(2, 9, 59)),
            ActivityEvent(guild_id="g1", event_type="command", created_at=at(2, 9, 0)),
            ActivityEvent(guild_id="g2", event_type="message", created_at=at(2, 8, 5)),
            # current hour is still open
            ActivityEvent(guild_id="g1", event_type="message", created_at=at(2, 10, 5)),
            # older than the lookback
            ActivityEvent(guild_id="g1", event_type="message", created_at=at(2, 3, 0)),
        ]
    )

    assert await job.rollup_hourly(now=at(2, 10, 20)) == 3

    rows = {m.id: m.count for m in await db.analytics_hourly.find_where(Where.all())}
    assert rows == {
        "g1:message:20240502T09": 2,
        "g1:command:20240502T09": 1,
        "g2:message:20240502T08": 1,
    }

    # a second pass over the same window overwrites the same rows
    await job.rollup_hourly(now=at(2, 10, 40))
    assert await db.analytics_hourly.count_where(Where.all()) == 3


@pytest.mark.asyncio
async def test_hourly_rollup_breaks_messages_down_by_channel_and_member(db, job) -> None:
    def message(user, channel, minute):
        return ActivityEvent(guild_id="g1", event_type="message", user_id=user, channel_id=channel, created_at=at(2, 9, minute))

    await db.activity_events.insert_many(
        [
            message("u1", "general", 1),
            message("u1", "general", 2),
            message("u2", "general", 3),
            message("u1", "memes", 4),
            # commands and events without a channel only count toward the guild totals
            ActivityEvent(guild_id="g1", event_type="command", user_id="u3", channel_id="general", created_at=at(2, 9, 5)),
            ActivityEvent(guild_id="g1", event_type="message", user_id="u4", created_at=at(2, 9, 6)),
        ]
    )

    # 2 guild rows, 2 channel rows, 3 member rows
    assert await job.rollup_hourly(now=at(2, 10, 20)) == 7

    channels = {m.id: m for m in await db.analytics_channel_hourly.find_where(Where.all())}
    assert set(channels) == {"g1:channel:general:20240502T09", "g1:channel:memes:20240502T09"}
    general = channels["g1:channel:general:20240502T09"]
    assert isinstance(general, ChannelHourlyMetric)
    assert (general.message_count, general.unique_users) == (3, 2)
    assert channels["g1:channel:memes:20240502T09"].message_count == 1

    members = {m.id: (m.message_count, m.unique_channels) for m in await db.analytics_member_hourly.find_where(Where.all())}
    assert members == {
        "g1:member:u1:20240502T09": (3, 2),
        "g1:member:u2:20240502T09": (1, 1),
        "g1:member:u4:20240502T09": (1, 0),
    }

    # rerunning overwrites the same channel and member buckets
    await job.rollup_hourly(now=at(2, 10, 50))
    assert await db.analytics_channel_hourly.count_where(Where.all()) == 2
    assert await db.analytics_member_hourly.count_where(Where.all()) == 3


def test_channel_and_member_metric_ids_are_deterministic() -> None:
    assert ChannelHourlyMetric("g", "c", at(2, 9), 1).id == "g:channel:c:20240502T09"
    assert MemberHourlyMetric("g", "u", at(2, 9), 1).id == MemberHourlyMetric("g", "u", at(2, 9), 5).id


@pytest.mark.asyncio
async def test_daily_rollup_sums_hourly_rows(db, job) -> None:
    await db.analytics_hourly.insert_many(
        [
            HourlyMetric(guild_id="g1", event_type="message", bucket_start=at(2, 9), count=2),
            HourlyMetric(guild_id="g1", event_type="message", bucket_start=at(2, 17), count=5),
            HourlyMetric(guild_id="g1", event_type="command", bucket_start=at(2, 9), count=1),
            HourlyMetric(guild_id="g1", event_type="message", bucket_start=at(1, 23), count=4),
            # today is not complete yet
            HourlyMetric(guild_id="g1", event_type="message", bucket_start=at(3, 0), count=9),
        ]
    )

    assert await job.rollup_daily(now=at(3, 1)) == 3

    rows = {m.id: m.count for m in await db.analytics_daily.find_where(Where.all())}
    assert rows == {
        "g1:message:20240502T00": 7,
        "g1:command:20240502T00": 1,
        "g1:message:20240501T00": 4,
    }


@pytest.mark.asyncio
async def test_rollup_stops_when_shutdown_requested(db, job) -> None:
    await db.activity_events.insert_many([ActivityEvent(guild_id="g", event_type="message", created_at=at(2, 9))])
    stop_event = asyncio.Event()
    stop_event.set()

    assert await job.rollup_hourly(stop_event, now=at(2, 10)) == 0
    assert await db.analytics_hourly.count_where(Where.all()) == 0
