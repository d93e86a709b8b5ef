"""
Threshold configuration for the abuse detectors.

Values are validated when they are accepted (constructed or edited), so a bad
threshold is rejected at the settings form instead of surfacing as a broken
detector at message time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from guildkeeper.datatypes.moderation_datatypes import DetectorKind
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    """
    Threshold for a single detector kind.

    Attributes:
        threshold: Message count (spam), uppercase percentage (caps), or
            classifier score (toxicity) at which the detector fires.
        window_seconds: Sliding window length; only meaningful for spam.
        min_length: Minimum number of letters before caps is evaluated.
    """

    threshold: float
    window_seconds: Optional[float] = None
    min_length: int = 0

    def __post_init__(self) -> None:
        if self.threshold <= 0:
            raise ConfigurationError(f"threshold must be positive, got {self.threshold}")
        if self.window_seconds is not None and self.window_seconds <= 0:
            raise ConfigurationError(f"window_seconds must be positive, got {self.window_seconds}")
        if self.min_length < 0:
            raise ConfigurationError(f"min_length cannot be negative, got {self.min_length}")


@dataclass(slots=True)
class DetectionSettings:
    """Per-guild detector settings, persisted in ``guild_detection_settings``."""

    guild_id: str
    spam_enabled: bool = True
    spam_max_messages: int = 5
    spam_window_seconds: float = 10.0
    caps_enabled: bool = False
    caps_percent: float = 70.0
    caps_min_length: int = 10
    toxicity_enabled: bool = False
    toxicity_threshold: float = 0.8
    new_account_multiplier: float = 0.7
    updated_at: datetime = field(default_factory=utcnow)

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` for any value a detector could not use."""
        if self.spam_max_messages <= 0:
            raise ConfigurationError(f"spam_max_messages must be positive, got {self.spam_max_messages}")
        if self.spam_window_seconds <= 0:
            raise ConfigurationError(f"spam_window_seconds must be positive, got {self.spam_window_seconds}")
        if not 0 < self.caps_percent <= 100:
            raise ConfigurationError(f"caps_percent must be in (0, 100], got {self.caps_percent}")
        if self.caps_min_length < 0:
            raise ConfigurationError(f"caps_min_length cannot be negative, got {self.caps_min_length}")
        if not 0 < self.toxicity_threshold <= 1:
            raise ConfigurationError(f"toxicity_threshold must be in (0, 1], got {self.toxicity_threshold}")
        if not 0 < self.new_account_multiplier <= 1:
            raise ConfigurationError(
                f"new_account_multiplier must be in (0, 1], got {self.new_account_multiplier}"
            )

    def is_enabled(self, kind: DetectorKind) -> bool:
        return {
            DetectorKind.SPAM: self.spam_enabled,
            DetectorKind.CAPS: self.caps_enabled,
            DetectorKind.TOXICITY: self.toxicity_enabled,
        }[kind]

    def config_for(self, kind: DetectorKind, *, new_account: bool = False) -> DetectorConfig:
        """Build the :class:`DetectorConfig` for one detector kind."""
        if kind is DetectorKind.SPAM:
            threshold = self.spam_max_messages
            if new_account:
                threshold = max(1, int(threshold * self.new_account_multiplier))
            return DetectorConfig(threshold=threshold, window_seconds=self.spam_window_seconds)
        if kind is DetectorKind.CAPS:
            return DetectorConfig(threshold=self.caps_percent, min_length=self.caps_min_length)
        return DetectorConfig(threshold=self.toxicity_threshold)
