import pytest

from guildkeeper.configuration.app_configuration import DetectionDefaults
from guildkeeper.configuration.detection_settings import DetectionSettingsManager
from guildkeeper.datatypes.detection_datatypes import DetectionSettings
from guildkeeper.datatypes.moderation_datatypes import DetectorKind
from guildkeeper.detection.threshold_detector import SubjectKey, ThresholdDetector
from guildkeeper.errors import ConfigurationError


@pytest.fixture
def detector() -> ThresholdDetector:
    return ThresholdDetector()


@pytest.fixture
def manager(db, detector) -> DetectionSettingsManager:
    return DetectionSettingsManager(db.detection_settings, detector, DetectionDefaults(spam_max_messages=4))


def test_unknown_guild_gets_defaults(manager) -> None:
    settings = manager.get("guild-1")
    assert settings.spam_max_messages == 4
    assert settings.spam_enabled is True
    assert manager.list_guild_ids() == ["guild-1"]


@pytest.mark.asyncio
async def test_update_persists_and_reloads(db, detector, manager) -> None:
    await manager.update("guild-1", caps_enabled=True, caps_percent=80)

    fresh = DetectionSettingsManager(db.detection_settings, detector)
    assert await fresh.load_from_disk() == 1
    stored = fresh.get("guild-1")
    assert stored.caps_enabled is True
    assert stored.caps_percent == pytest.approx(80)
    assert stored.spam_max_messages == 4


@pytest.mark.asyncio
async def test_invalid_update_rejected_without_change(db, manager) -> None:
    with pytest.raises(ConfigurationError):
        await manager.update("guild-1", spam_max_messages=0)
    with pytest.raises(ConfigurationError):
        await manager.update("guild-1", toxicity_threshold=1.5)
    with pytest.raises(ConfigurationError):
        await manager.update("guild-1", guild_id="guild-2")

    assert manager.get("guild-1").spam_max_messages == 4
    assert await db.detection_settings.get("guild-1") is None


@pytest.mark.asyncio
async def test_disabling_spam_evicts_windows(detector, manager) -> None:
    config = manager.get("guild-1").config_for(DetectorKind.SPAM)
    detector.observe(SubjectKey("guild-1", "u"), DetectorKind.SPAM, config)
    detector.observe(SubjectKey("guild-2", "u"), DetectorKind.SPAM, config)

    await manager.update("guild-1", spam_enabled=False)

    assert detector.window_count == 1


@pytest.mark.asyncio
async def test_remove_guild_deletes_row(db, detector, manager) -> None:
    await manager.update("guild-1", caps_enabled=True)
    await manager.remove_guild("guild-1")

    assert await db.detection_settings.get("guild-1") is None
    assert "guild-1" not in manager.list_guild_ids()


def test_new_account_multiplier_lowers_spam_threshold() -> None:
    settings = DetectionSettings(guild_id="g", spam_max_messages=5, new_account_multiplier=0.7)
    assert settings.config_for(DetectorKind.SPAM).threshold == 5
    assert settings.config_for(DetectorKind.SPAM, new_account=True).threshold == 3

    tiny = DetectionSettings(guild_id="g", spam_max_messages=1)
    assert tiny.config_for(DetectorKind.SPAM, new_account=True).threshold == 1
