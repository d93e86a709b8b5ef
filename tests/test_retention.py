import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from guildkeeper.configuration.app_configuration import NotificationRetentionSettings
from guildkeeper.database.repository import Where
from guildkeeper.datatypes.log_datatypes import AuditEvent
from guildkeeper.datatypes.notification_datatypes import Notification, NotificationType
from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.errors import ConfigurationError
from guildkeeper.jobs.retention import NotificationRetentionSweep, RetentionSweep


def _audit(days_old: float) -> AuditEvent:
    return AuditEvent(category="guild", action="joined", created_at=utcnow() - timedelta(days=days_old))


@pytest.mark.asyncio
async def test_sweep_deletes_in_batches_until_short_batch(db) -> None:
    await db.audit_logs.insert_many([_audit(45) for _ in range(5)] + [_audit(5) for _ in range(3)])

    repository = db.audit_logs
    calls = []
    original = repository.delete_where

    async def tracking_delete(where, limit):
        deleted = await original(where, limit)
        calls.append(deleted)
        return deleted

    repository.delete_where = tracking_delete
    sweep = RetentionSweep("audit_logs", repository, 30, batch_size=2, batch_delay=0)

    total = await sweep(asyncio.Event())

    assert total == 5
    assert calls == [2, 2, 1]
    remaining = await db.audit_logs.find_where(Where.all())
    assert len(remaining) == 3


@pytest.mark.asyncio
async def test_sweep_zero_age_keeps_everything() -> None:
    repository = AsyncMock()
    sweep = RetentionSweep("forever", repository, 0)
    assert await sweep(asyncio.Event()) == 0
    repository.delete_where.assert_not_called()


@pytest.mark.asyncio
async def test_sweep_stops_at_max_iterations() -> None:
    repository = AsyncMock()
    repository.delete_where.return_value = 10
    sweep = RetentionSweep("busy", repository, 30, batch_size=10, max_iterations=3, batch_delay=0)

    assert await sweep(asyncio.Event()) == 30
    assert repository.delete_where.await_count == 3


@pytest.mark.asyncio
async def test_sweep_honours_stop_event_between_batches() -> None:
    stop_event = asyncio.Event()
    repository = AsyncMock()

    async def delete_and_stop(where, limit):
        stop_event.set()
        return limit

    repository.delete_where.side_effect = delete_and_stop
    sweep = RetentionSweep("stopping", repository, 30, batch_size=10, batch_delay=0)

    assert await sweep(stop_event) == 10
    assert repository.delete_where.await_count == 1


def test_sweep_rejects_bad_settings() -> None:
    with pytest.raises(ConfigurationError):
        RetentionSweep("x", AsyncMock(), 30, batch_size=0)
    with pytest.raises(ConfigurationError):
        RetentionSweep("x", AsyncMock(), -1)


@pytest.mark.asyncio
async def test_notification_retention_phases(db) -> None:
    now = utcnow()

    def notification(kind=NotificationType.ALERT, *, created_days=0, read_days=None, dismissed_days=None):
        return Notification(
            user_id="admin",
            type=kind,
            title="t",
            message="m",
            created_at=now - timedelta(days=created_days),
            read_at=now - timedelta(days=read_days) if read_days is not None else None,
            dismissed_at=now - timedelta(days=dismissed_days) if dismissed_days is not None else None,
        )

    keep = [
        notification(created_days=100),                                     # old but unread, unread kept forever
        notification(created_days=40, read_days=10),                        # read recently
        notification(created_days=10, read_days=5, dismissed_days=3),       # dismissed recently
        notification(NotificationType.STATUS, created_days=1),              # status kept for 2 days
    ]
    drop = [
        notification(created_days=60, read_days=40),                        # read long ago
        notification(created_days=20, read_days=10, dismissed_days=8),      # dismissed long ago
        notification(NotificationType.STATUS, created_days=3),              # status older than 2 days
    ]
    await db.notifications.insert_many(keep + drop)

    settings = NotificationRetentionSettings(
        dismissed_days=7,
        read_days=30,
        unread_days=0,
        by_type_days={NotificationType.STATUS: 2},
    )
    sweep = NotificationRetentionSweep(db.notifications, settings, batch_size=10, batch_delay=0)

    assert [phase.name for phase in sweep.phases] == [
        "notifications[status]",
        "notifications[dismissed]",
        "notifications[read]",
        "notifications[unread]",
    ]
    assert await sweep(asyncio.Event()) == 3

    remaining = {n.id for n in await db.notifications.find_where(Where.all())}
    assert remaining == {n.id for n in keep}
