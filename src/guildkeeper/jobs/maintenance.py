"""Small housekeeping units for in-memory state."""

from __future__ import annotations

import asyncio

from guildkeeper.detection.threshold_detector import ThresholdDetector
from guildkeeper.notifications.notification_service import NotificationService


class DetectorSweepJob:
    """Reclaims activity windows of users who have gone quiet."""

    def __init__(self, detector: ThresholdDetector, grace_seconds: float) -> None:
        self._detector = detector
        self.grace_seconds = grace_seconds

    async def __call__(self, stop_event: asyncio.Event) -> int:
        return self._detector.sweep_idle(self.grace_seconds)


class DedupIndexPurgeJob:
    """Drops expired notification dedup reservations."""

    def __init__(self, service: NotificationService) -> None:
        self._service = service

    async def __call__(self, stop_event: asyncio.Event) -> int:
        return self._service.purge_dedup_index()
