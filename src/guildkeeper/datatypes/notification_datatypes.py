"""
Notification entities and the outcome types returned by the fan-out service.

The service never raises for downstream failures; callers branch on
:class:`NotificationOutcome` and :class:`FanoutResult` instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from guildkeeper.datatypes.schedule_datatypes import new_id, utcnow


class NotificationType(str, Enum):
    ALERT = "alert"
    STATUS = "status"
    EVENT = "event"
    ERROR = "error"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class RelatedEntity:
    """Reference to the domain object a notification is about, e.g. ``("guild", "1234")``."""

    type: str
    id: str

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(slots=True)
class Notification:
    user_id: str
    type: NotificationType
    title: str
    message: str
    severity: Optional[AlertSeverity] = None
    link_url: Optional[str] = None
    guild_id: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    read_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    @property
    def is_dismissed(self) -> bool:
        return self.dismissed_at is not None

    @property
    def related_entity(self) -> Optional[RelatedEntity]:
        if self.related_entity_type is None or self.related_entity_id is None:
            return None
        return RelatedEntity(self.related_entity_type, self.related_entity_id)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise for the push channel."""
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value if self.severity else None,
            "title": self.title,
            "message": self.message,
            "link_url": self.link_url,
            "guild_id": self.guild_id,
            "related_entity_type": self.related_entity_type,
            "related_entity_id": self.related_entity_id,
            "created_at": self.created_at.isoformat(),
            "is_read": self.is_read,
        }


class NotificationOutcome(str, Enum):
    """Result of trying to create one notification for one recipient."""

    CREATED = "created"
    SUPPRESSED = "suppressed"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(slots=True)
class FanoutResult:
    """Per-recipient outcomes of one ``create_for_audience`` call."""

    outcomes: Dict[str, NotificationOutcome] = field(default_factory=dict)

    @property
    def created(self) -> bool:
        """True when at least one notification row was written."""
        return any(o is NotificationOutcome.CREATED for o in self.outcomes.values())

    @property
    def fully_suppressed(self) -> bool:
        return bool(self.outcomes) and all(o is NotificationOutcome.SUPPRESSED for o in self.outcomes.values())

    def recipients(self, outcome: NotificationOutcome) -> List[str]:
        return [user_id for user_id, o in self.outcomes.items() if o is outcome]

    def count(self, outcome: NotificationOutcome) -> int:
        return len(self.recipients(outcome))
