"""
Periodic execution of named background units.

Each registered unit gets its own asyncio task, so a slow reminder batch never
delays a retention sweep. A unit's failure is logged, recorded in the
:class:`~guildkeeper.health.health_registry.HealthRegistry` and forgotten; the
unit fires again at its next natural tick.

Runnables have the signature ``async (stop_event) -> int | None``. The event is
set when the runner is stopping; long-running units should check it between
batches and return early.
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from guildkeeper.errors import ConfigurationError
from guildkeeper.health.health_registry import HealthRegistry
from guildkeeper.scheduler.cron import next_fire_time
from guildkeeper.util.logger import get_logger

logger = get_logger("task_runner")

Runnable = Callable[[asyncio.Event], Awaitable[Any]]

DEFAULT_MAX_JITTER_RATIO = 0.1
DEFAULT_SHUTDOWN_GRACE = 10.0


# ---------------------------------------------------------------------------
# Cadences
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IntervalCadence:
    """Fire every ``seconds`` seconds."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ConfigurationError(f"Interval must be positive, got {self.seconds}")

    def period_seconds(self, now: datetime) -> float:
        return self.seconds

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


@dataclass(frozen=True)
class CronCadence:
    """Fire at the times matched by a cron expression (UTC)."""

    expression: str

    def __post_init__(self) -> None:
        # Raises ConfigurationError on a bad expression.
        next_fire_time(self.expression, datetime.now(timezone.utc))

    def next_fire(self, now: datetime) -> datetime:
        return next_fire_time(self.expression, now)

    def period_seconds(self, now: datetime) -> float:
        first = self.next_fire(now)
        return (self.next_fire(first) - first).total_seconds()

    def describe(self) -> str:
        return f"cron '{self.expression}'"


Cadence = Union[IntervalCadence, CronCadence]


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

class TaskOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ScheduledTaskDescriptor:
    """Registration and last-run state of one background unit."""

    name: str
    cadence: Cadence
    enabled: bool = True
    jitter_seconds: float = 0.0
    initial_delay: float = 0.0
    last_run_at: Optional[datetime] = None
    last_duration: Optional[float] = None
    last_outcome: Optional[TaskOutcome] = None
    last_result: Any = None
    run_count: int = 0


@dataclass(slots=True)
class _Unit:
    descriptor: ScheduledTaskDescriptor
    runnable: Runnable
    lock: asyncio.Lock
    task: Optional[asyncio.Task] = None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ScheduledTaskRunner:
    """
    Hosts the background units of the process.

    Args:
        health: Registry every execution is reported to.
        max_jitter_ratio: Upper bound of the random phase offset, as a fraction
            of the unit's period. Units sharing a cadence start at different
            offsets so they do not hit the database together.
        shutdown_grace: Seconds :meth:`stop` waits for in-flight units before
            cancelling them.
    """

    def __init__(
        self,
        health: HealthRegistry,
        *,
        max_jitter_ratio: float = DEFAULT_MAX_JITTER_RATIO,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not 0 <= max_jitter_ratio < 1:
            raise ConfigurationError(f"max_jitter_ratio must be in [0, 1), got {max_jitter_ratio}")
        if shutdown_grace < 0:
            raise ConfigurationError(f"shutdown_grace cannot be negative, got {shutdown_grace}")
        self.health = health
        self.max_jitter_ratio = max_jitter_ratio
        self.shutdown_grace = shutdown_grace
        self._rng = rng or random.Random()
        self._units: Dict[str, _Unit] = {}
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    # -------------------- registration --------------------

    def register(
        self,
        name: str,
        cadence: Cadence,
        runnable: Runnable,
        *,
        enabled: bool = True,
        initial_delay: float = 0.0,
    ) -> ScheduledTaskDescriptor:
        """
        Add a unit. Must be called before :meth:`start`.

        Raises:
            ValueError: If ``name`` is already registered or the runner is started.
        """
        if name in self._units:
            raise ValueError(f"Task {name!r} is already registered")
        if self._running:
            raise ValueError("Cannot register tasks while the runner is running")
        if initial_delay < 0:
            raise ConfigurationError(f"initial_delay cannot be negative, got {initial_delay}")

        period = cadence.period_seconds(datetime.now(timezone.utc))
        jitter = self._rng.uniform(0, self.max_jitter_ratio) * period if self.max_jitter_ratio else 0.0
        descriptor = ScheduledTaskDescriptor(
            name=name,
            cadence=cadence,
            enabled=enabled,
            jitter_seconds=jitter,
            initial_delay=initial_delay,
        )
        self._units[name] = _Unit(descriptor=descriptor, runnable=runnable, lock=asyncio.Lock())
        self.health.register(name)
        logger.debug("[TASK RUNNER] Registered %s (%s, jitter %.2fs)", name, cadence.describe(), jitter)
        return descriptor

    def enable(self, name: str) -> None:
        self._require(name).descriptor.enabled = True
        logger.info("[TASK RUNNER] Enabled %s", name)

    def disable(self, name: str) -> None:
        """Skip future executions of ``name``. An execution already in flight finishes."""
        self._require(name).descriptor.enabled = False
        logger.info("[TASK RUNNER] Disabled %s", name)

    def descriptors(self) -> List[ScheduledTaskDescriptor]:
        return [dataclasses.replace(unit.descriptor) for unit in self._units.values()]

    def get(self, name: str) -> Optional[ScheduledTaskDescriptor]:
        unit = self._units.get(name)
        return dataclasses.replace(unit.descriptor) if unit else None

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        """Spawn one task per registered unit."""
        if self._running:
            logger.warning("[TASK RUNNER] Already running")
            return
        self._stop_event = asyncio.Event()
        self._running = True
        for unit in self._units.values():
            unit.task = asyncio.create_task(self._run_unit(unit), name=f"guildkeeper-task-{unit.descriptor.name}")
        logger.info("[TASK RUNNER] Started %d background units", len(self._units))

    async def stop(self) -> None:
        """Signal cancellation, wait up to the grace period, then cancel stragglers."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        tasks = [unit.task for unit in self._units.values() if unit.task and not unit.task.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)
            for task in pending:
                logger.warning("[TASK RUNNER] %s did not stop within %.1fs, cancelling", task.get_name(), self.shutdown_grace)
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for unit in self._units.values():
            unit.task = None
        logger.info("[TASK RUNNER] Shutdown complete")

    async def run_now(self, name: str) -> Any:
        """
        Execute ``name`` once, outside its cadence. Waits if it is already executing.

        Outside of a start/stop cycle the job gets a fresh stop event, so a
        previous :meth:`stop` does not cut a manual run short.
        """
        unit = self._require(name)
        stop_event = self._stop_event if self._running else asyncio.Event()
        return await self._execute(unit, force=True, stop_event=stop_event)

    # -------------------- internals --------------------

    def _require(self, name: str) -> _Unit:
        unit = self._units.get(name)
        if unit is None:
            raise KeyError(f"Unknown task {name!r}")
        return unit

    async def _sleep_or_stop(self, delay: float) -> bool:
        """Sleep ``delay`` seconds. Returns True if the runner was stopped meanwhile."""
        if self._stop_event.is_set():
            return True
        if delay <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_unit(self, unit: _Unit) -> None:
        descriptor = unit.descriptor
        try:
            if isinstance(descriptor.cadence, IntervalCadence):
                await self._run_interval(unit)
            else:
                await self._run_cron(unit)
        except asyncio.CancelledError:
            logger.info("[TASK RUNNER] %s cancelled", descriptor.name)
            raise

    async def _run_interval(self, unit: _Unit) -> None:
        loop = asyncio.get_running_loop()
        interval = unit.descriptor.cadence.seconds
        deadline = loop.time() + unit.descriptor.initial_delay + unit.descriptor.jitter_seconds

        while True:
            if await self._sleep_or_stop(deadline - loop.time()):
                return
            await self._execute(unit)

            deadline += interval
            now = loop.time()
            if deadline <= now:
                missed = math.floor((now - deadline) / interval) + 1
                deadline += missed * interval
                logger.debug("[TASK RUNNER] %s overran, skipping %d tick(s)", unit.descriptor.name, missed)

    async def _run_cron(self, unit: _Unit) -> None:
        cadence: CronCadence = unit.descriptor.cadence
        if await self._sleep_or_stop(unit.descriptor.initial_delay):
            return

        while True:
            now = datetime.now(timezone.utc)
            delay = (cadence.next_fire(now) - now).total_seconds() + unit.descriptor.jitter_seconds
            if await self._sleep_or_stop(delay):
                return
            await self._execute(unit)

    async def _execute(self, unit: _Unit, *, force: bool = False, stop_event: Optional[asyncio.Event] = None) -> Any:
        descriptor = unit.descriptor
        if not descriptor.enabled and not force:
            descriptor.last_outcome = TaskOutcome.SKIPPED
            logger.debug("[TASK RUNNER] %s is disabled, skipping tick", descriptor.name)
            return None

        async with unit.lock:
            self.health.record_start(descriptor.name)
            descriptor.last_run_at = datetime.now(timezone.utc)
            started = time.perf_counter()
            try:
                result = await unit.runnable(self._stop_event if stop_event is None else stop_event)
            except asyncio.CancelledError:
                descriptor.last_duration = time.perf_counter() - started
                descriptor.last_outcome = TaskOutcome.CANCELLED
                self.health.record_failure(descriptor.name, "cancelled", descriptor.last_duration)
                raise
            except Exception as exc:
                duration = time.perf_counter() - started
                descriptor.last_duration = duration
                descriptor.last_outcome = TaskOutcome.FAILURE
                descriptor.run_count += 1
                self.health.record_failure(descriptor.name, exc, duration)
                logger.exception("[TASK RUNNER] %s failed after %.2fs: %s", descriptor.name, duration, exc)
                return None

            duration = time.perf_counter() - started
            descriptor.last_duration = duration
            descriptor.last_outcome = TaskOutcome.SUCCESS
            descriptor.last_result = result
            descriptor.run_count += 1
            self.health.record_success(descriptor.name, duration)
            if result:
                logger.debug("[TASK RUNNER] %s processed %s item(s) in %.2fs", descriptor.name, result, duration)
            return result
