import asyncio
from datetime import timedelta

import pytest

from guildkeeper.configuration.app_configuration import DEFAULT_JOBS, AppConfig
from guildkeeper.database.database import Database
from guildkeeper.database.repository import Where
from guildkeeper.datatypes.schedule_datatypes import Reminder, utcnow
from guildkeeper.runtime import BackgroundRuntime, build_job_table
from guildkeeper.scheduler.task_runner import CronCadence, IntervalCadence, TaskOutcome

JOB_ORDER = [
    "reminder_delivery",
    "scheduled_messages",
    "audit_log_retention",
    "message_log_retention",
    "activity_event_retention",
    "analytics_retention",
    "notification_retention",
    "analytics_hourly_rollup",
    "analytics_daily_rollup",
    "detector_sweep",
    "dedup_index_purge",
]


def quiet_config(**jobs) -> AppConfig:
    """Every unit disabled unless overridden; no jitter so first ticks are immediate."""
    table = {name: {"interval_seconds": 3600, "enabled": False} for name in DEFAULT_JOBS}
    table.update(jobs)
    return AppConfig.from_mapping(
        {
            "scheduler": {"max_jitter_ratio": 0, "shutdown_grace_seconds": 1, "jobs": table},
            "ingestion_queue": {"drain_timeout_seconds": 2},
        }
    )


@pytest.mark.asyncio
async def test_job_table_is_fixed_and_ordered(db, sender) -> None:
    config = AppConfig.from_mapping({"scheduler": {"jobs": {"detector_sweep": {"interval_seconds": 120, "enabled": False}}}})
    runtime = BackgroundRuntime.create(config, sender, db)

    table = build_job_table(config, runtime)

    assert [job.name for job in table] == JOB_ORDER
    by_name = {job.name: job for job in table}
    assert isinstance(by_name["reminder_delivery"].cadence, IntervalCadence)
    assert isinstance(by_name["audit_log_retention"].cadence, CronCadence)
    assert by_name["detector_sweep"].cadence.seconds == 120
    assert by_name["detector_sweep"].enabled is False
    assert by_name["analytics_hourly_rollup"].initial_delay == 60
    assert [d.name for d in runtime.runner.descriptors()] == JOB_ORDER


@pytest.mark.asyncio
async def test_create_requires_initialized_database(tmp_path, sender) -> None:
    with pytest.raises(RuntimeError):
        BackgroundRuntime.create(AppConfig.from_mapping({}), sender, Database(tmp_path / "cold.db"))


@pytest.mark.asyncio
async def test_start_runs_units_and_stop_drains_queues(db, sender) -> None:
    reminder = Reminder(user_id="user-1", message="Stretch", trigger_at=utcnow() - timedelta(minutes=1))
    await db.reminders.upsert(reminder)
    runtime = BackgroundRuntime.create(quiet_config(reminder_delivery={"interval_seconds": 3600}), sender, db)

    await runtime.start()
    try:
        for _ in range(50):
            if sender.direct_messages:
                break
            await asyncio.sleep(0.02)
        runtime.message_logger.log_message("g", "c", "u", "m", content_length=12)
    finally:
        await runtime.stop()

    assert [user for user, _, _ in sender.direct_messages] == ["user-1"]
    assert runtime.runner.get("reminder_delivery").last_outcome is TaskOutcome.SUCCESS
    assert runtime.runner.get("scheduled_messages").last_outcome in (None, TaskOutcome.SKIPPED)
    assert await db.message_logs.count_where(Where.all()) == 1
    assert await db.activity_events.count_where(Where.eq("event_type", "message")) == 1


@pytest.mark.asyncio
async def test_run_now_and_diagnostics(db, sender) -> None:
    runtime = BackgroundRuntime.create(quiet_config(), sender, db)

    assert await runtime.runner.run_now("analytics_hourly_rollup") == 0
    with pytest.raises(KeyError):
        await runtime.runner.run_now("no_such_job")

    runtime.audit_logger.log("settings", "updated", "admin-1", guild_id="g")
    snapshot = runtime.diagnostics()

    assert set(snapshot) == {"healthy", "units", "tasks", "queues", "detector_windows"}
    assert snapshot["healthy"] is True
    assert snapshot["queues"]["audit_log_queue"] == {"depth": 1, "dropped": 0, "lost": 0, "written": 0}
    assert snapshot["queues"]["message_log_queue"]["depth"] == 0
    assert snapshot["detector_windows"] == 0
    units = {record.name: record for record in snapshot["units"]}
    assert units["analytics_hourly_rollup"].total_runs == 1
