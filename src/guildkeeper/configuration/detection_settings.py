"""
Per-guild detector settings with an in-memory cache and write-through persistence.

Responsibilities:
- Serve :class:`DetectionSettings` for a guild without touching the database
  on the message path (defaults from ``detection_defaults`` when a guild has
  never been configured)
- Validate edits before they are accepted, so a bad threshold never reaches a detector
- Evict a guild's activity windows as soon as its spam detector is switched off
"""

import asyncio
import dataclasses
from typing import Any, Dict, List

from guildkeeper.configuration.app_configuration import DetectionDefaults
from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.detection_datatypes import DetectionSettings
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.detection.threshold_detector import ThresholdDetector
from guildkeeper.errors import ConfigurationError
from guildkeeper.util.logger import get_logger

logger = get_logger("detection_settings_manager")

_EDITABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(DetectionSettings) if f.name not in ("guild_id", "updated_at")
)


class DetectionSettingsManager:
    """Cache of per-guild :class:`DetectionSettings` backed by ``guild_detection_settings``."""

    def __init__(
        self,
        repository: Repository[DetectionSettings],
        detector: ThresholdDetector,
        defaults: DetectionDefaults = DetectionDefaults(),
    ) -> None:
        self._repository = repository
        self._detector = detector
        self.defaults = defaults
        self.guilds: Dict[str, DetectionSettings] = {}
        self._persist_lock = asyncio.Lock()

    @property
    def new_account_days(self) -> int:
        return self.defaults.new_account_days

    async def load_from_disk(self) -> int:
        """Populate the cache from the database. Returns the number of guilds loaded."""
        rows = await self._repository.find_where(Where.all())
        self.guilds = {row.guild_id: row for row in rows}
        logger.info("[DETECTION SETTINGS] Loaded settings for %d guilds", len(rows))
        return len(rows)

    def _default_for(self, guild_id: str) -> DetectionSettings:
        d = self.defaults
        return DetectionSettings(
            guild_id=guild_id,
            spam_enabled=d.spam_enabled,
            spam_max_messages=d.spam_max_messages,
            spam_window_seconds=d.spam_window_seconds,
            caps_enabled=d.caps_enabled,
            caps_percent=d.caps_percent,
            caps_min_length=d.caps_min_length,
            toxicity_enabled=d.toxicity_enabled,
            toxicity_threshold=d.toxicity_threshold,
            new_account_multiplier=d.new_account_multiplier,
        )

    def get(self, guild_id: str) -> DetectionSettings:
        """Return the cached settings for a guild, creating defaults in memory if needed."""
        settings = self.guilds.get(guild_id)
        if settings is None:
            settings = self._default_for(guild_id)
            self.guilds[guild_id] = settings
        return settings

    def list_guild_ids(self) -> List[str]:
        return list(self.guilds.keys())

    async def update(self, guild_id: str, **changes: Any) -> DetectionSettings:
        """
        Validate and apply ``changes`` to a guild's settings, then persist them.

        Raises:
            ConfigurationError: Unknown field or invalid value. Nothing is changed.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown detection setting(s): {', '.join(sorted(unknown))}")

        current = self.get(guild_id)
        candidate = dataclasses.replace(current, **changes, updated_at=utcnow())
        candidate.validate()

        self.guilds[guild_id] = candidate
        if current.spam_enabled and not candidate.spam_enabled:
            evicted = self._detector.forget_guild(guild_id)
            logger.debug("[DETECTION SETTINGS] Spam disabled for guild %s, evicted %d windows", guild_id, evicted)

        async with self._persist_lock:
            await self._repository.upsert(candidate)
        logger.info("[DETECTION SETTINGS] Updated guild %s: %s", guild_id, ", ".join(sorted(changes)))
        return candidate

    async def remove_guild(self, guild_id: str) -> None:
        """Forget a guild entirely (the bot left it)."""
        settings = self.guilds.pop(guild_id, None)
        self._detector.forget_guild(guild_id)
        if settings is not None:
            async with self._persist_lock:
                await self._repository.delete(settings)
        logger.info("[DETECTION SETTINGS] Removed settings for guild %s", guild_id)
