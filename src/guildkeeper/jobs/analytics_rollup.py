"""
Hourly and daily activity rollups.

Raw ``activity_events`` are counted per (guild, event type, hour) into
``analytics_hourly``; hourly rows are summed per day into ``analytics_daily``.
The same hourly pass breaks ``message`` events down per channel
(``analytics_channel_hourly``) and per member (``analytics_member_hourly``).
Metric ids are derived from the bucket, so re-running a rollup over the same
lookback overwrites the same rows instead of adding new ones.
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from guildkeeper.configuration.app_configuration import AnalyticsSettings
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.log_datatypes import (
    ActivityEvent,
    ChannelHourlyMetric,
    DailyMetric,
    HourlyMetric,
    MemberHourlyMetric,
)
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.util.logger import get_logger

logger = get_logger("analytics_rollup")


def floor_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def floor_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


class AnalyticsRollupJob:
    """Owns both rollups; each method is registered as its own scheduled unit."""

    def __init__(
        self,
        activity_events: Repository[ActivityEvent],
        hourly: Repository[HourlyMetric],
        daily: Repository[DailyMetric],
        channel_hourly: Repository[ChannelHourlyMetric],
        member_hourly: Repository[MemberHourlyMetric],
        settings: AnalyticsSettings = AnalyticsSettings(),
    ) -> None:
        self._events = activity_events
        self._hourly = hourly
        self._daily = daily
        self._channel_hourly = channel_hourly
        self._member_hourly = member_hourly
        self.settings = settings

    async def rollup_hourly(self, stop_event: Optional[asyncio.Event] = None, *, now: Optional[datetime] = None) -> int:
        """Recount the completed hours of the lookback. Returns the number of metric rows written."""
        end = floor_hour(now or utcnow())
        written = 0
        for offset in range(self.settings.hourly_lookback_hours, 0, -1):
            if stop_event is not None and stop_event.is_set():
                break
            bucket = end - timedelta(hours=offset)
            where = Where.at_or_after("created_at", bucket) & Where.before("created_at", bucket + timedelta(hours=1))
            events = await self._events.find_where(where)
            counts = Counter((event.guild_id, event.event_type) for event in events)
            written += await self._hourly.insert_many(
                HourlyMetric(guild_id=guild_id, event_type=event_type, bucket_start=bucket, count=count)
                for (guild_id, event_type), count in counts.items()
            )
            written += await self._rollup_messages(bucket, events)
        if written:
            logger.debug("[ANALYTICS] Hourly rollup wrote %d metric rows", written)
        return written

    async def _rollup_messages(self, bucket: datetime, events: List[ActivityEvent]) -> int:
        """Per-channel and per-member message counts for one hour. Events without the dimension are skipped."""
        channel_users: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        member_channels: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        channel_counts: Counter = Counter()
        member_counts: Counter = Counter()
        for event in events:
            if event.event_type != "message":
                continue
            if event.channel_id is not None:
                channel_counts[(event.guild_id, event.channel_id)] += 1
                if event.user_id is not None:
                    channel_users[(event.guild_id, event.channel_id)].add(event.user_id)
            if event.user_id is not None:
                member_counts[(event.guild_id, event.user_id)] += 1
                if event.channel_id is not None:
                    member_channels[(event.guild_id, event.user_id)].add(event.channel_id)

        written = await self._channel_hourly.insert_many(
            ChannelHourlyMetric(
                guild_id=guild_id,
                channel_id=channel_id,
                bucket_start=bucket,
                message_count=count,
                unique_users=len(channel_users[(guild_id, channel_id)]),
            )
            for (guild_id, channel_id), count in channel_counts.items()
        )
        written += await self._member_hourly.insert_many(
            MemberHourlyMetric(
                guild_id=guild_id,
                user_id=user_id,
                bucket_start=bucket,
                message_count=count,
                unique_channels=len(member_channels[(guild_id, user_id)]),
            )
            for (guild_id, user_id), count in member_counts.items()
        )
        return written

    async def rollup_daily(self, stop_event: Optional[asyncio.Event] = None, *, now: Optional[datetime] = None) -> int:
        """Sum hourly metrics of the completed days of the lookback into daily rows."""
        end = floor_day(now or utcnow())
        written = 0
        for offset in range(self.settings.daily_lookback_days, 0, -1):
            if stop_event is not None and stop_event.is_set():
                break
            day = end - timedelta(days=offset)
            where = Where.at_or_after("bucket_start", day) & Where.before("bucket_start", day + timedelta(days=1))
            totals: Counter = Counter()
            for metric in await self._hourly.find_where(where):
                totals[(metric.guild_id, metric.event_type)] += metric.count
            written += await self._daily.insert_many(
                DailyMetric(guild_id=guild_id, event_type=event_type, bucket_start=day, count=count)
                for (guild_id, event_type), count in totals.items()
            )
        if written:
            logger.debug("[ANALYTICS] Daily rollup wrote %d metric rows", written)
        return written
