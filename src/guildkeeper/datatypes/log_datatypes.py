"""Log-style entities: high volume, append only, trimmed by retention sweeps."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from guildkeeper.datatypes.schedule_datatypes import new_id, utcnow


@dataclass(slots=True)
class AuditEvent:
    """One entry of the audit trail, e.g. category ``moderation`` / action ``flagged``."""

    category: str
    action: str
    actor_id: Optional[str] = None
    actor_type: str = "system"
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    guild_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        """Single line with enough detail to re-enter the event by hand."""
        return (
            f"{self.category}.{self.action} id={self.id} at={self.created_at.isoformat()} "
            f"actor={self.actor_type}:{self.actor_id} target={self.target_type}:{self.target_id} "
            f"guild={self.guild_id} details={self.details}"
        )


@dataclass(slots=True)
class MessageLogEntry:
    guild_id: str
    channel_id: str
    user_id: str
    message_id: str
    content_length: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        return (
            f"message_log id={self.id} at={self.created_at.isoformat()} guild={self.guild_id} "
            f"channel={self.channel_id} user={self.user_id} message={self.message_id}"
        )


@dataclass(slots=True)
class ActivityEvent:
    """Raw analytics event (message, command, member join...) before rollup."""

    guild_id: str
    event_type: str
    user_id: Optional[str] = None
    channel_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        return f"activity id={self.id} at={self.created_at.isoformat()} guild={self.guild_id} type={self.event_type}"


@dataclass(slots=True)
class HourlyMetric:
    guild_id: str
    event_type: str
    bucket_start: datetime
    count: int
    id: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = metric_id(self.guild_id, self.event_type, self.bucket_start)


@dataclass(slots=True)
class DailyMetric:
    guild_id: str
    event_type: str
    bucket_start: datetime
    count: int
    id: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = metric_id(self.guild_id, self.event_type, self.bucket_start)


@dataclass(slots=True)
class ChannelHourlyMetric:
    """Messages posted in one channel during one hour."""

    guild_id: str
    channel_id: str
    bucket_start: datetime
    message_count: int
    unique_users: int = 0
    id: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = metric_id(self.guild_id, f"channel:{self.channel_id}", self.bucket_start)


@dataclass(slots=True)
class MemberHourlyMetric:
    """Messages one member posted during one hour."""

    guild_id: str
    user_id: str
    bucket_start: datetime
    message_count: int
    unique_channels: int = 0
    id: str = ""
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = metric_id(self.guild_id, f"member:{self.user_id}", self.bucket_start)


def metric_id(guild_id: str, event_type: str, bucket_start: datetime) -> str:
    """Deterministic key so re-running a rollup overwrites instead of duplicating."""
    return f"{guild_id}:{event_type}:{bucket_start.strftime('%Y%m%dT%H')}"
