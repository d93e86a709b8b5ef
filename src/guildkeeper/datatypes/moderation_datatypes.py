"""Moderation-side entities written when automatic detection fires."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from guildkeeper.datatypes.schedule_datatypes import new_id, utcnow


class DetectorKind(str, Enum):
    SPAM = "spam"
    CAPS = "caps"
    TOXICITY = "toxicity"


class FlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FlagStatus(str, Enum):
    PENDING = "pending"
    ACTIONED = "actioned"
    DISMISSED = "dismissed"


@dataclass(slots=True)
class FlaggedEvent:
    guild_id: str
    user_id: str
    rule_type: DetectorKind
    severity: FlagSeverity
    description: str
    channel_id: Optional[str] = None
    message_id: Optional[str] = None
    evidence: Dict[str, Any] = field(default_factory=dict)
    status: FlagStatus = FlagStatus.PENDING
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


class AccessRole(str, Enum):
    """Dashboard roles. Global roles use ``guild_id=None``; guild roles name a guild."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    GUILD_OWNER = "guild_owner"
    GUILD_ADMIN = "guild_admin"
    GUILD_MODERATOR = "guild_moderator"


GLOBAL_ADMIN_ROLES = (AccessRole.SUPER_ADMIN, AccessRole.ADMIN)
GUILD_ADMIN_ROLES = (AccessRole.GUILD_OWNER, AccessRole.GUILD_ADMIN)


@dataclass(slots=True)
class AdminAccess:
    """One row of the subscriber registry: a dashboard user holding a role."""

    user_id: str
    role: AccessRole
    guild_id: Optional[str] = None
    id: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.user_id}:{self.guild_id or '*'}:{self.role.value}"
