import asyncio
import time
from unittest.mock import MagicMock

import pytest

from guildkeeper.datatypes.detection_datatypes import DetectorConfig
from guildkeeper.datatypes.moderation_datatypes import DetectorKind
from guildkeeper.detection.threshold_detector import SubjectKey, ThresholdDetector
from guildkeeper.jobs.maintenance import DedupIndexPurgeJob, DetectorSweepJob


@pytest.mark.asyncio
async def test_detector_sweep_reclaims_only_quiet_windows() -> None:
    detector = ThresholdDetector()
    config = DetectorConfig(threshold=5, window_seconds=10)
    detector.observe(SubjectKey("g", "quiet"), DetectorKind.SPAM, config, now=time.monotonic() - 10_000)
    detector.observe(SubjectKey("g", "chatty"), DetectorKind.SPAM, config)

    assert await DetectorSweepJob(detector, grace_seconds=60)(asyncio.Event()) == 1
    assert detector.window_count == 1
    assert detector.count(SubjectKey("g", "chatty")) == 1


@pytest.mark.asyncio
async def test_dedup_purge_delegates_to_service() -> None:
    service = MagicMock()
    service.purge_dedup_index.return_value = 4

    assert await DedupIndexPurgeJob(service)(asyncio.Event()) == 4
    service.purge_dedup_index.assert_called_once_with()
