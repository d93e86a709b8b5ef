"""
Runs the threshold detectors on each guild message and reports what fires.

A trigger produces three side effects: a persisted :class:`FlaggedEvent` for
moderator review, an audit entry, and an alert to that guild's admins. None of
them can fail the message handler; errors are logged and the remaining side
effects still run.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from guildkeeper.configuration.detection_settings import DetectionSettingsManager
from guildkeeper.database.repository import Repository
from guildkeeper.datatypes.moderation_datatypes import DetectorKind, FlaggedEvent, FlagSeverity
from guildkeeper.datatypes.notification_datatypes import AlertSeverity, NotificationType, RelatedEntity
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.detection.threshold_detector import SubjectKey, ThresholdDetector
from guildkeeper.notifications.notification_service import NotificationService
from guildkeeper.queue.audit_log import AuditLogger
from guildkeeper.util.logger import get_logger

logger = get_logger("auto_moderation")

_SEVERITY = {
    DetectorKind.SPAM: FlagSeverity.MEDIUM,
    DetectorKind.CAPS: FlagSeverity.LOW,
    DetectorKind.TOXICITY: FlagSeverity.HIGH,
}
CRITICAL_TOXICITY_SCORE = 0.95


class AutoModerationService:
    """Glue between incoming messages, the detectors and the reporting side effects."""

    def __init__(
        self,
        detector: ThresholdDetector,
        settings: DetectionSettingsManager,
        flagged_events: Repository[FlaggedEvent],
        audit: AuditLogger,
        notifications: NotificationService,
    ) -> None:
        self.detector = detector
        self.settings = settings
        self._flagged_events = flagged_events
        self._audit = audit
        self._notifications = notifications

    async def handle_message(
        self,
        guild_id: str,
        channel_id: str,
        user_id: str,
        message_id: str,
        content: str,
        *,
        account_created_at: Optional[datetime] = None,
        toxicity_score: Optional[float] = None,
        now: Optional[float] = None,
    ) -> List[FlaggedEvent]:
        """Evaluate one message. Returns the flags raised (usually none)."""
        settings = self.settings.get(guild_id)
        subject = SubjectKey(guild_id, user_id)
        new_account = (
            account_created_at is not None
            and utcnow() - account_created_at < timedelta(days=self.settings.new_account_days)
        )

        raised: List[FlaggedEvent] = []
        for kind in DetectorKind:
            if not settings.is_enabled(kind):
                continue
            if kind is DetectorKind.TOXICITY and toxicity_score is None:
                continue
            config = settings.config_for(kind, new_account=new_account)
            evidence = {"message_id": message_id, "channel_id": channel_id, "threshold": config.threshold}
            severity = _SEVERITY[kind]
            if kind is DetectorKind.SPAM:
                observation = self.detector.observe_message(subject, config, content, now=now)
                if not observation.triggered:
                    continue
                evidence["message_count"] = observation.count
                evidence["window_seconds"] = config.window_seconds
                evidence["new_account"] = new_account
                if observation.flood_severity is not None:
                    severity = observation.flood_severity
                else:
                    evidence["duplicate_count"] = observation.duplicate_count
                    evidence["content_hash"] = observation.content_hash
            else:
                if not self.detector.observe(subject, kind, config, text=content, score=toxicity_score, now=now):
                    continue
                if kind is DetectorKind.TOXICITY:
                    evidence["score"] = toxicity_score
                    if toxicity_score >= CRITICAL_TOXICITY_SCORE:
                        severity = FlagSeverity.CRITICAL

            flag = FlaggedEvent(
                guild_id=guild_id,
                user_id=user_id,
                rule_type=kind,
                severity=severity,
                description=self._describe(kind, config.threshold, evidence),
                channel_id=channel_id,
                message_id=message_id,
                evidence=evidence,
            )
            await self._report(flag)
            raised.append(flag)
        return raised

    @staticmethod
    def _describe(kind: DetectorKind, threshold: float, evidence: dict) -> str:
        if kind is DetectorKind.SPAM and "duplicate_count" in evidence:
            return (
                f"Duplicate message spam: {evidence['duplicate_count']} identical messages in "
                f"{evidence['window_seconds']:g} seconds"
            )
        if kind is DetectorKind.SPAM:
            return (
                f"Message flood: {evidence['message_count']} messages in "
                f"{evidence['window_seconds']:g} seconds (threshold: {threshold:g})"
            )
        if kind is DetectorKind.CAPS:
            return f"Excessive capitals (threshold: {threshold:g}%)"
        return f"Toxic content (score {evidence['score']:.2f}, threshold: {threshold:g})"

    async def _report(self, flag: FlaggedEvent) -> None:
        logger.info(
            "[AUTO MODERATION] %s flag for user %s in guild %s (%s)",
            flag.rule_type.value, flag.user_id, flag.guild_id, flag.severity.value,
        )
        try:
            await self._flagged_events.upsert(flag)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[AUTO MODERATION] Failed to store flag %s: %s", flag.id, exc)

        self._audit.log(
            "moderation",
            "flagged",
            actor_type="auto_moderation",
            target_type="user",
            target_id=flag.user_id,
            guild_id=flag.guild_id,
            details={"flag_id": flag.id, "rule": flag.rule_type.value, "severity": flag.severity.value},
        )

        await self._notifications.create_for_guild_admins(
            flag.guild_id,
            NotificationType.ALERT,
            f"{flag.rule_type.value.capitalize()} detected",
            flag.description,
            severity=AlertSeverity.CRITICAL if flag.severity is FlagSeverity.CRITICAL else AlertSeverity.WARNING,
            related_entity=RelatedEntity(f"{flag.rule_type.value}_flag", f"{flag.guild_id}:{flag.user_id}"),
        )
