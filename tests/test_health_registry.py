import pytest

from guildkeeper.health.health_registry import HealthRegistry


def test_register_creates_healthy_record() -> None:
    registry = HealthRegistry()
    registry.register("reminder_delivery")

    record = registry.get("reminder_delivery")
    assert record is not None
    assert record.healthy is True
    assert record.total_runs == 0
    assert registry.is_healthy() is True


def test_unhealthy_after_threshold_and_recovers_on_success() -> None:
    registry = HealthRegistry(failure_threshold=3)

    registry.record_failure("sweep", RuntimeError("db locked"), 0.1)
    registry.record_failure("sweep", RuntimeError("db locked"), 0.1)
    assert registry.get("sweep").healthy is True

    registry.record_failure("sweep", RuntimeError("db locked"), 0.1)
    record = registry.get("sweep")
    assert record.healthy is False
    assert record.consecutive_failures == 3
    assert record.last_error == "RuntimeError: db locked"
    assert registry.is_healthy() is False

    registry.record_success("sweep", 0.05)
    record = registry.get("sweep")
    assert record.healthy is True
    assert record.consecutive_failures == 0
    assert record.total_runs == 4
    assert record.total_failures == 3
    # last error is kept for diagnostics
    assert record.last_error == "RuntimeError: db locked"


def test_record_start_marks_running_until_finished() -> None:
    registry = HealthRegistry()
    registry.record_start("rollup")
    assert registry.get("rollup").is_running is True

    registry.record_success("rollup", 1.5)
    record = registry.get("rollup")
    assert record.is_running is False
    assert record.last_duration == pytest.approx(1.5)
    assert record.last_execution_at is not None


def test_counters_and_snapshots_are_independent() -> None:
    registry = HealthRegistry()
    assert registry.increment("audit_log_queue", "dropped_items") == 1
    assert registry.increment("audit_log_queue", "dropped_items", 4) == 5

    snapshot = registry.get("audit_log_queue")
    snapshot.counters["dropped_items"] = 0
    assert registry.get("audit_log_queue").counters["dropped_items"] == 5


def test_get_all_sorted_by_name() -> None:
    registry = HealthRegistry()
    for name in ("zeta", "alpha", "mid"):
        registry.register(name)
    assert [r.name for r in registry.get_all()] == ["alpha", "mid", "zeta"]
    assert registry.get("missing") is None


def test_invalid_threshold_rejected() -> None:
    with pytest.raises(ValueError):
        HealthRegistry(failure_threshold=0)
