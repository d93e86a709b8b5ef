"""Persisted entities that carry their own execution schedule."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ScheduleFrequency(str, Enum):
    """How a scheduled message repeats."""

    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class Reminder:
    """
    A one-shot reminder delivered to a user by direct message.

    ``trigger_at`` doubles as ``nextExecutionAt``: failed deliveries push it
    forward by the retry delay until ``delivery_attempts`` runs out.
    """

    user_id: str
    message: str
    trigger_at: datetime
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    status: ReminderStatus = ReminderStatus.PENDING
    delivery_attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None


@dataclass(slots=True)
class ScheduledMessage:
    """A message posted to a guild channel once or on a repeating schedule."""

    guild_id: str
    channel_id: str
    title: str
    content: str
    frequency: ScheduleFrequency
    next_execution_at: Optional[datetime]
    cron_expression: Optional[str] = None
    is_enabled: bool = True
    id: str = field(default_factory=new_id)
    last_executed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
