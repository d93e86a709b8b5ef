"""
Liveness and last-error tracking for background units.

Every scheduled job, the ingestion-queue consumers and the notification
fan-out report here. The registry only records; it never schedules or retries
anything. Dashboards read it through :meth:`HealthRegistry.get_all`.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from guildkeeper.util.logger import get_logger

logger = get_logger("health_registry")

DEFAULT_FAILURE_THRESHOLD = 3


@dataclass(slots=True)
class ServiceHealthRecord:
    name: str
    healthy: bool = True
    last_execution_at: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    total_runs: int = 0
    total_failures: int = 0
    is_running: bool = False
    last_started_at: Optional[datetime] = None
    counters: Dict[str, int] = field(default_factory=dict)

    def snapshot(self) -> "ServiceHealthRecord":
        return dataclasses.replace(self, counters=dict(self.counters))


class HealthRegistry:
    """
    Thread-safe map of unit name to :class:`ServiceHealthRecord`.

    A unit turns unhealthy once ``failure_threshold`` consecutive failures have
    been recorded and turns healthy again on its next success.
    """

    def __init__(self, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.failure_threshold = failure_threshold
        self._records: Dict[str, ServiceHealthRecord] = {}
        self._lock = threading.Lock()

    def register(self, name: str) -> None:
        with self._lock:
            if name not in self._records:
                self._records[name] = ServiceHealthRecord(name=name)

    def record_start(self, name: str) -> None:
        with self._lock:
            record = self._ensure(name)
            record.is_running = True
            record.last_started_at = datetime.now(timezone.utc)

    def record_success(self, name: str, duration: float) -> None:
        with self._lock:
            record = self._ensure(name)
            was_unhealthy = not record.healthy
            record.is_running = False
            record.last_execution_at = datetime.now(timezone.utc)
            record.last_duration = duration
            record.total_runs += 1
            record.consecutive_failures = 0
            record.healthy = True
        if was_unhealthy:
            logger.info("[HEALTH] %s recovered", name)

    def record_failure(self, name: str, error: BaseException | str, duration: Optional[float] = None) -> None:
        message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        with self._lock:
            record = self._ensure(name)
            record.is_running = False
            record.last_execution_at = datetime.now(timezone.utc)
            if duration is not None:
                record.last_duration = duration
            record.last_error = message
            record.total_runs += 1
            record.total_failures += 1
            record.consecutive_failures += 1
            turned_unhealthy = record.healthy and record.consecutive_failures >= self.failure_threshold
            if turned_unhealthy:
                record.healthy = False
            failures = record.consecutive_failures
        if turned_unhealthy:
            logger.error("[HEALTH] %s marked unhealthy after %d consecutive failures: %s", name, failures, message)

    def increment(self, name: str, counter: str, amount: int = 1) -> int:
        """Bump a named counter on a unit (e.g. ``dropped_items``) and return the new value."""
        with self._lock:
            record = self._ensure(name)
            record.counters[counter] = record.counters.get(counter, 0) + amount
            return record.counters[counter]

    def get(self, name: str) -> Optional[ServiceHealthRecord]:
        with self._lock:
            record = self._records.get(name)
            return record.snapshot() if record else None

    def get_all(self) -> List[ServiceHealthRecord]:
        with self._lock:
            return [self._records[name].snapshot() for name in sorted(self._records)]

    def is_healthy(self) -> bool:
        with self._lock:
            return all(record.healthy for record in self._records.values())

    def _ensure(self, name: str) -> ServiceHealthRecord:
        record = self._records.get(name)
        if record is None:
            record = ServiceHealthRecord(name=name)
            self._records[name] = record
        return record
