import threading

import pytest

from guildkeeper.datatypes.detection_datatypes import DetectorConfig
from guildkeeper.datatypes.moderation_datatypes import DetectorKind, FlagSeverity
from guildkeeper.detection.threshold_detector import SubjectKey, ThresholdDetector, content_hash, flood_tier
from guildkeeper.errors import ConfigurationError

SPAM = DetectorConfig(threshold=5, window_seconds=10)
USER = SubjectKey("guild-1", "user-1")


def test_spam_fires_once_when_crossing_threshold() -> None:
    detector = ThresholdDetector()

    fired = [detector.observe(USER, DetectorKind.SPAM, SPAM, now=100.0 + i) for i in range(8)]

    assert fired == [False, False, False, False, True, False, False, False]


def test_spam_fires_again_after_window_drains() -> None:
    detector = ThresholdDetector()
    for i in range(5):
        detector.observe(USER, DetectorKind.SPAM, SPAM, now=float(i))

    # everything from the first burst has aged out
    second_burst = [detector.observe(USER, DetectorKind.SPAM, SPAM, now=50.0 + i) for i in range(5)]
    assert second_burst == [False, False, False, False, True]


def test_spam_windows_are_per_subject() -> None:
    detector = ThresholdDetector()
    other = SubjectKey("guild-1", "user-2")
    for i in range(4):
        detector.observe(USER, DetectorKind.SPAM, SPAM, now=float(i))

    assert detector.observe(other, DetectorKind.SPAM, SPAM, now=4.0) is False
    assert detector.observe(USER, DetectorKind.SPAM, SPAM, now=4.0) is True
    assert detector.count(USER, now=4.0) == 5
    assert detector.count(other, now=4.0) == 1


def test_flood_tiers_fire_once_each() -> None:
    detector = ThresholdDetector()
    wide = DetectorConfig(threshold=5, window_seconds=60)

    tiers = [detector.observe_message(USER, wide, now=float(i)).flood_severity for i in range(12)]

    assert tiers == [
        None, None, None, None, FlagSeverity.MEDIUM,
        None, None, FlagSeverity.HIGH,
        None, FlagSeverity.CRITICAL,
        None, None,
    ]


def test_flood_tier_boundaries() -> None:
    assert flood_tier(4, 5) is None
    assert flood_tier(5, 5) is FlagSeverity.MEDIUM
    assert flood_tier(7, 5) is FlagSeverity.MEDIUM
    assert flood_tier(8, 5) is FlagSeverity.HIGH
    assert flood_tier(10, 5) is FlagSeverity.CRITICAL


def test_observe_message_keeps_crossing_flag() -> None:
    detector = ThresholdDetector()

    crossed = [detector.observe_message(USER, SPAM, "hi", now=float(i)).threshold_crossed for i in range(10)]

    assert crossed.count(True) == 1
    assert crossed[4] is True


def test_duplicates_trigger_once_below_flood() -> None:
    detector = ThresholdDetector()
    relaxed = DetectorConfig(threshold=20, window_seconds=10)

    results = [
        detector.observe_message(USER, relaxed, text, now=float(i))
        for i, text in enumerate(["Free nitro here", "hello", "free  NITRO here ", "FREE nitro HERE", "free nitro here"])
    ]

    assert [r.duplicate_count for r in results] == [1, 1, 2, 3, 4]
    assert [r.duplicate_triggered for r in results] == [False, False, False, True, False]
    assert results[3].content_hash == content_hash("free nitro here")
    assert results[3].flood_severity is None


def test_duplicates_not_reported_when_flood_fires() -> None:
    detector = ThresholdDetector()
    tight = DetectorConfig(threshold=3, window_seconds=10)

    results = [detector.observe_message(USER, tight, "same", now=float(i)) for i in range(3)]

    assert results[2].flood_severity is FlagSeverity.MEDIUM
    assert results[2].duplicate_triggered is False


def test_duplicates_age_out_with_window() -> None:
    detector = ThresholdDetector()
    relaxed = DetectorConfig(threshold=20, window_seconds=10)
    for i in range(2):
        detector.observe_message(USER, relaxed, "again", now=float(i))

    late = detector.observe_message(USER, relaxed, "again", now=30.0)

    assert late.duplicate_count == 1
    assert late.duplicate_triggered is False


def test_empty_content_is_never_a_duplicate() -> None:
    assert content_hash("   ") is None
    detector = ThresholdDetector()
    relaxed = DetectorConfig(threshold=20, window_seconds=10)

    results = [detector.observe_message(USER, relaxed, "", now=float(i)) for i in range(4)]

    assert not any(r.duplicate_triggered for r in results)


def test_spam_requires_window() -> None:
    detector = ThresholdDetector()
    with pytest.raises(ConfigurationError):
        detector.observe(USER, DetectorKind.SPAM, DetectorConfig(threshold=3))


def test_concurrent_observations_fire_exactly_once() -> None:
    detector = ThresholdDetector()
    config = DetectorConfig(threshold=50, window_seconds=3600)
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(25):
            fired = detector.observe(USER, DetectorKind.SPAM, config)
            with lock:
                results.append(fired)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 200
    assert results.count(True) == 1
    assert detector.count(USER) == 200


@pytest.mark.parametrize(
    "text, expected",
    [
        ("THIS IS ALL CAPS SHOUTING", True),
        ("This is a normal sentence", False),
        ("HI", False),  # below min_length
        ("1234567890!!!", False),  # no letters
    ],
)
def test_caps_detection(text, expected) -> None:
    detector = ThresholdDetector()
    config = DetectorConfig(threshold=70, min_length=5)
    assert detector.observe(USER, DetectorKind.CAPS, config, text=text) is expected


def test_toxicity_uses_score() -> None:
    detector = ThresholdDetector()
    config = DetectorConfig(threshold=0.8)
    assert detector.observe(USER, DetectorKind.TOXICITY, config, score=0.85) is True
    assert detector.observe(USER, DetectorKind.TOXICITY, config, score=0.5) is False
    assert detector.observe(USER, DetectorKind.TOXICITY, config, score=None) is False
    # stateless kinds never allocate windows
    assert detector.window_count == 0


def test_sweep_idle_reclaims_quiet_windows() -> None:
    detector = ThresholdDetector()
    quiet = SubjectKey("guild-1", "quiet")
    detector.observe(quiet, DetectorKind.SPAM, SPAM, now=0.0)
    detector.observe(USER, DetectorKind.SPAM, SPAM, now=95.0)

    removed = detector.sweep_idle(grace_seconds=60, now=100.0)

    assert removed == 1
    assert detector.window_count == 1
    assert detector.count(quiet, now=100.0) == 0


def test_forget_guild_evicts_only_that_guild() -> None:
    detector = ThresholdDetector()
    detector.observe(SubjectKey("guild-1", "a"), DetectorKind.SPAM, SPAM, now=0.0)
    detector.observe(SubjectKey("guild-1", "b"), DetectorKind.SPAM, SPAM, now=0.0)
    detector.observe(SubjectKey("guild-2", "a"), DetectorKind.SPAM, SPAM, now=0.0)

    assert detector.forget_guild("guild-1") == 2
    assert detector.window_count == 1
