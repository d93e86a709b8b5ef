"""
In-memory abuse detectors.

Three detector kinds share one entry point, :meth:`ThresholdDetector.observe`:

- ``SPAM``: sliding-window message count per (guild, user). Fires once when
  the count crosses the threshold; it can fire again only after the window has
  drained below the threshold. :meth:`ThresholdDetector.observe_message` also
  reports escalation (1.5x and 2x the threshold) and repeated identical content.
- ``CAPS``: uppercase percentage of a single message.
- ``TOXICITY``: a single classifier score.

Only SPAM keeps state. Its windows live in one dict guarded by one lock, so
concurrent message handlers (and the thread the Discord gateway may call us
from) cannot lose an increment or double-fire a trigger.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Tuple

from guildkeeper.datatypes.detection_datatypes import DetectorConfig
from guildkeeper.datatypes.moderation_datatypes import DetectorKind, FlagSeverity
from guildkeeper.errors import ConfigurationError
from guildkeeper.util.logger import get_logger

logger = get_logger("threshold_detector")

DUPLICATE_MESSAGE_THRESHOLD = 3


@dataclass(frozen=True, slots=True)
class SubjectKey:
    guild_id: str
    user_id: str


@dataclass(slots=True)
class ActivityWindow:
    """Timestamps (monotonic seconds) of recent activity for one subject, with a content hash per entry."""

    window_seconds: float
    timestamps: Deque[float] = field(default_factory=deque)
    hashes: Deque[Optional[str]] = field(default_factory=deque)
    last_seen: float = 0.0

    def purge(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()
            self.hashes.popleft()

    def duplicates_of(self, content_hash: Optional[str]) -> int:
        if content_hash is None:
            return 0
        return sum(1 for h in self.hashes if h == content_hash)


@dataclass(frozen=True, slots=True)
class SpamObservation:
    """
    Outcome of one spam observation.

    ``flood_severity`` is set only on the observation that first reaches a
    severity tier; ``duplicate_triggered`` only on the one that first reaches
    :data:`DUPLICATE_MESSAGE_THRESHOLD` identical messages while no flood tier
    is reached.
    """

    count: int
    threshold_crossed: bool = False
    flood_severity: Optional[FlagSeverity] = None
    duplicate_count: int = 0
    duplicate_triggered: bool = False
    content_hash: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self.flood_severity is not None or self.duplicate_triggered


def normalize_content(content: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(content.lower().split())


def content_hash(content: Optional[str]) -> Optional[str]:
    normalized = normalize_content(content or "")
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def flood_tier(count: int, threshold: float) -> Optional[FlagSeverity]:
    """Severity for ``count`` in-window messages: 2x threshold critical, 1.5x high, 1x medium."""
    if count >= threshold * 2:
        return FlagSeverity.CRITICAL
    if count >= threshold * 1.5:
        return FlagSeverity.HIGH
    if count >= threshold:
        return FlagSeverity.MEDIUM
    return None


_TIER_RANK = {None: 0, FlagSeverity.MEDIUM: 1, FlagSeverity.HIGH: 2, FlagSeverity.CRITICAL: 3}


class ThresholdDetector:
    """Evaluates messages against per-guild thresholds; keeps SPAM windows in memory."""

    def __init__(self) -> None:
        self._windows: Dict[Tuple[SubjectKey, DetectorKind], ActivityWindow] = {}
        self._lock = threading.Lock()

    @property
    def window_count(self) -> int:
        with self._lock:
            return len(self._windows)

    def observe(
        self,
        subject: SubjectKey,
        kind: DetectorKind,
        config: DetectorConfig,
        *,
        text: Optional[str] = None,
        score: Optional[float] = None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Record one observation and report whether it triggers the detector.

        Args:
            subject: Guild and user the observation belongs to.
            kind: Which detector to run.
            config: Threshold to compare against.
            text: Message content (CAPS).
            score: Classifier score in [0, 1] (TOXICITY).
            now: Monotonic timestamp; defaults to :func:`time.monotonic`.

        Returns:
            True exactly when this observation crosses the threshold.
        """
        if kind is DetectorKind.SPAM:
            return self._observe_spam(subject, config, time.monotonic() if now is None else now).threshold_crossed
        if kind is DetectorKind.CAPS:
            return self.caps_exceeded(text or "", config)
        if kind is DetectorKind.TOXICITY:
            return score is not None and score >= config.threshold
        raise ValueError(f"Unknown detector kind: {kind!r}")

    def observe_message(
        self,
        subject: SubjectKey,
        config: DetectorConfig,
        content: Optional[str] = None,
        *,
        now: Optional[float] = None,
    ) -> SpamObservation:
        """Record one message in the SPAM window and report flood escalation and repeated content."""
        return self._observe_spam(subject, config, time.monotonic() if now is None else now, content)

    def _observe_spam(
        self, subject: SubjectKey, config: DetectorConfig, now: float, content: Optional[str] = None
    ) -> SpamObservation:
        if config.window_seconds is None:
            raise ConfigurationError("Spam detection requires window_seconds")

        digest = content_hash(content)
        key = (subject, DetectorKind.SPAM)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = ActivityWindow(window_seconds=config.window_seconds)
                self._windows[key] = window
            # Settings may have changed since the window was created.
            window.window_seconds = config.window_seconds
            window.purge(now)
            before = len(window.timestamps)
            previous_duplicates = window.duplicates_of(digest)
            window.timestamps.append(now)
            window.hashes.append(digest)
            window.last_seen = now
            after = before + 1

        tier_before = flood_tier(before, config.threshold)
        tier_after = flood_tier(after, config.threshold)
        flood_severity = tier_after if _TIER_RANK[tier_after] > _TIER_RANK[tier_before] else None
        duplicates = previous_duplicates + 1 if digest is not None else 0
        observation = SpamObservation(
            count=after,
            threshold_crossed=before < config.threshold <= after,
            flood_severity=flood_severity,
            duplicate_count=duplicates,
            duplicate_triggered=tier_after is None and duplicates == DUPLICATE_MESSAGE_THRESHOLD,
            content_hash=digest,
        )
        if flood_severity is not None:
            logger.debug(
                "[THRESHOLD DETECTOR] Spam tier %s reached for user %s in guild %s (%d in %.0fs)",
                flood_severity.value, subject.user_id, subject.guild_id, after, config.window_seconds,
            )
        elif observation.duplicate_triggered:
            logger.debug(
                "[THRESHOLD DETECTOR] %d identical messages from user %s in guild %s",
                duplicates, subject.user_id, subject.guild_id,
            )
        return observation

    @staticmethod
    def caps_exceeded(text: str, config: DetectorConfig) -> bool:
        letters = [ch for ch in text if ch.isalpha()]
        if not letters or len(letters) < config.min_length:
            return False
        upper = sum(1 for ch in letters if ch.isupper())
        return upper * 100.0 / len(letters) >= config.threshold

    def count(self, subject: SubjectKey, kind: DetectorKind = DetectorKind.SPAM, now: Optional[float] = None) -> int:
        """In-window observation count for ``subject`` (0 when no window exists)."""
        with self._lock:
            window = self._windows.get((subject, kind))
            if window is None:
                return 0
            window.purge(time.monotonic() if now is None else now)
            return len(window.timestamps)

    def sweep_idle(self, grace_seconds: float, now: Optional[float] = None) -> int:
        """Drop windows with no activity for ``window_seconds + grace_seconds``. Returns the number removed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            idle = [
                key for key, window in self._windows.items()
                if window.last_seen + window.window_seconds + grace_seconds <= now
            ]
            for key in idle:
                del self._windows[key]
        if idle:
            logger.debug("[THRESHOLD DETECTOR] Reclaimed %d idle windows", len(idle))
        return len(idle)

    def forget_guild(self, guild_id: str) -> int:
        """Evict every window of a guild (detector disabled, bot removed)."""
        with self._lock:
            keys = [key for key in self._windows if key[0].guild_id == guild_id]
            for key in keys:
                del self._windows[key]
        return len(keys)
