"""
Wiring of the background layer.

:class:`BackgroundRuntime` builds every component from an :class:`AppConfig`,
a :class:`MessageSender` and an initialized :class:`Database`, registers the
scheduled units listed by :func:`build_job_table`, and owns start/stop order:

    start: detection settings -> ingestion queues -> task runner
    stop:  task runner -> ingestion queues (drained)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from guildkeeper.bot.sender import MessageSender
from guildkeeper.configuration.app_configuration import AppConfig, JobSettings
from guildkeeper.configuration.detection_settings import DetectionSettingsManager
from guildkeeper.database.database import Database
from guildkeeper.detection.auto_moderation import AutoModerationService
from guildkeeper.detection.threshold_detector import ThresholdDetector
from guildkeeper.health.health_registry import HealthRegistry
from guildkeeper.jobs.analytics_rollup import AnalyticsRollupJob
from guildkeeper.jobs.maintenance import DedupIndexPurgeJob, DetectorSweepJob
from guildkeeper.jobs.reminder_delivery import ReminderDeliveryJob, ReminderService
from guildkeeper.jobs.retention import NotificationRetentionSweep, RetentionSweep, RetentionSweepGroup
from guildkeeper.jobs.scheduled_messages import ScheduledMessageJob, ScheduledMessageService
from guildkeeper.notifications.connection_notifier import ConnectionStateNotifier
from guildkeeper.notifications.notification_service import NotificationService
from guildkeeper.notifications.push_hub import PushHub
from guildkeeper.notifications.subscriber_registry import SubscriberRegistry
from guildkeeper.queue.audit_log import AuditLogger, MessageLogger
from guildkeeper.scheduler.task_runner import Cadence, CronCadence, IntervalCadence, Runnable, ScheduledTaskRunner
from guildkeeper.util.logger import get_logger

logger = get_logger("runtime")


@dataclass(frozen=True)
class JobDefinition:
    name: str
    cadence: Cadence
    runnable: Runnable
    enabled: bool = True
    initial_delay: float = 0.0


def cadence_from(settings: JobSettings) -> Cadence:
    if settings.cron is not None:
        return CronCadence(settings.cron)
    return IntervalCadence(settings.interval_seconds)


def build_job_table(config: AppConfig, runtime: "BackgroundRuntime") -> List[JobDefinition]:
    """The fixed, ordered list of scheduled units for this process."""
    db = runtime.db
    retention = config.retention
    sweep = dict(batch_size=retention.batch_size, max_iterations=retention.max_iterations)
    rollup = AnalyticsRollupJob(
        db.activity_events,
        db.analytics_hourly,
        db.analytics_daily,
        db.analytics_channel_hourly,
        db.analytics_member_hourly,
        config.analytics,
    )

    runnables: List[tuple] = [
        ("reminder_delivery", ReminderDeliveryJob(db.reminders, runtime.sender, config.reminders)),
        ("scheduled_messages", ScheduledMessageJob(db.scheduled_messages, runtime.sender)),
        ("audit_log_retention", RetentionSweep("audit_logs", db.audit_logs, retention.audit_log_days, **sweep)),
        ("message_log_retention", RetentionSweep("message_logs", db.message_logs, retention.message_log_days, **sweep)),
        ("activity_event_retention", RetentionSweep("activity_events", db.activity_events, retention.activity_event_days, **sweep)),
        ("analytics_retention", RetentionSweepGroup([
            RetentionSweep("analytics_hourly", db.analytics_hourly, retention.analytics_hourly_days, column="bucket_start", **sweep),
            RetentionSweep("analytics_daily", db.analytics_daily, retention.analytics_daily_days, column="bucket_start", **sweep),
            RetentionSweep("analytics_channel_hourly", db.analytics_channel_hourly, retention.analytics_hourly_days, column="bucket_start", **sweep),
            RetentionSweep("analytics_member_hourly", db.analytics_member_hourly, retention.analytics_hourly_days, column="bucket_start", **sweep),
        ])),
        ("notification_retention", NotificationRetentionSweep(db.notifications, retention.notifications, **sweep)),
        ("analytics_hourly_rollup", rollup.rollup_hourly),
        ("analytics_daily_rollup", rollup.rollup_daily),
        ("detector_sweep", DetectorSweepJob(runtime.detector, config.detection_defaults.idle_window_grace_seconds)),
        ("dedup_index_purge", DedupIndexPurgeJob(runtime.notifications)),
    ]

    scheduler = config.scheduler
    table = []
    for name, runnable in runnables:
        job = scheduler.job(name)
        table.append(JobDefinition(name, cadence_from(job), runnable, job.enabled, job.initial_delay_seconds))
    return table


class BackgroundRuntime:
    """Everything that runs behind the Discord event handlers."""

    def __init__(self, config: AppConfig, sender: MessageSender, db: Database) -> None:
        self.config = config
        self.sender = sender
        self.db = db

        self.health = HealthRegistry(config.health.failure_threshold)
        queue_settings = config.ingestion_queue
        self.audit_logger = AuditLogger(db.audit_logs, self.health, queue_settings)
        self.message_logger = MessageLogger(db.message_logs, db.activity_events, self.health, queue_settings)

        self.detector = ThresholdDetector()
        self.detection_settings = DetectionSettingsManager(db.detection_settings, self.detector, config.detection_defaults)

        self.push_hub = PushHub()
        self.subscribers = SubscriberRegistry(db.admin_access)
        self.notifications = NotificationService(
            db.notifications, self.subscribers, self.push_hub, self.health, config.notifications
        )
        self.connection_notifier = ConnectionStateNotifier(self.notifications)
        self.auto_moderation = AutoModerationService(
            self.detector, self.detection_settings, db.flagged_events, self.audit_logger, self.notifications
        )

        self.reminders = ReminderService(db.reminders)
        self.scheduled_messages = ScheduledMessageService(db.scheduled_messages)

        scheduler = config.scheduler
        self.runner = ScheduledTaskRunner(
            self.health,
            max_jitter_ratio=scheduler.max_jitter_ratio,
            shutdown_grace=scheduler.shutdown_grace_seconds,
        )
        for job in build_job_table(config, self):
            self.runner.register(job.name, job.cadence, job.runnable, enabled=job.enabled, initial_delay=job.initial_delay)

    @classmethod
    def create(cls, config: AppConfig, sender: MessageSender, db: Database) -> "BackgroundRuntime":
        if not db.initialized:
            raise RuntimeError("Database must be initialized before the background runtime is created")
        return cls(config, sender, db)

    @property
    def queues(self):
        return (self.audit_logger.queue, self.message_logger.queue)

    async def start(self) -> None:
        await self.detection_settings.load_from_disk()
        for queue in self.queues:
            queue.start()
        self.runner.start()
        logger.info("[RUNTIME] Background runtime started")

    async def stop(self) -> None:
        await self.runner.stop()
        drain = self.config.ingestion_queue.drain_timeout_seconds
        for queue in self.queues:
            await queue.stop(drain)
        logger.info("[RUNTIME] Background runtime stopped")

    def diagnostics(self) -> Dict[str, Any]:
        """Snapshot for dashboards: unit health, queue counters and detector state."""
        return {
            "healthy": self.health.is_healthy(),
            "units": self.health.get_all(),
            "tasks": self.runner.descriptors(),
            "queues": {
                queue.name: {
                    "depth": queue.depth,
                    "dropped": queue.dropped_count,
                    "lost": queue.lost_count,
                    "written": queue.written_count,
                }
                for queue in self.queues
            },
            "detector_windows": self.detector.window_count,
        }
