"""
Bounded in-memory queue between hot paths and the database.

Event handlers call :meth:`IngestionQueue.enqueue` and return immediately; a
single consumer task writes items in the background. When the queue is full
the OLDEST item is dropped so producers never block. Every drop is counted
and surfaced through the health registry, so loss is visible, never silent.

Items are not durable: whatever is still queued when the drain timeout
expires at shutdown is lost (and counted).
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Optional

from guildkeeper.datatypes.schedule_datatypes import utcnow
from guildkeeper.errors import ConfigurationError
from guildkeeper.health.health_registry import HealthRegistry
from guildkeeper.util.logger import get_logger

logger = get_logger("ingestion_queue")

Writer = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class QueueItem:
    payload: Any
    enqueued_at: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        describe = getattr(self.payload, "describe", None)
        text = describe() if callable(describe) else repr(self.payload)
        return f"{text} (enqueued {self.enqueued_at.isoformat()})"


class IngestionQueue:
    """
    Drop-oldest bounded queue with one background consumer.

    Args:
        name: Health-registry unit name, e.g. ``audit_log_queue``.
        writer: Coroutine persisting one payload. Exceptions count as a failed attempt.
        health: Registry receiving ``dropped_items`` / ``lost_items`` counters.
        capacity: Maximum queued items before the oldest is dropped.
        max_retries: Extra attempts after a failed write before the item is lost.
        retry_backoff: Seconds to wait before retry ``n`` is ``retry_backoff * n``.
    """

    def __init__(
        self,
        name: str,
        writer: Writer,
        health: HealthRegistry,
        *,
        capacity: int = 10000,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        if capacity <= 0:
            raise ConfigurationError(f"capacity must be positive, got {capacity}")
        if max_retries < 0:
            raise ConfigurationError(f"max_retries cannot be negative, got {max_retries}")
        self.name = name
        self.capacity = capacity
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._writer = writer
        self._health = health
        self._items: Deque[QueueItem] = deque()
        self._lock = threading.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closing = False
        self._dropped = 0
        self._lost = 0
        self._written = 0
        health.register(name)

    # -------------------- counters --------------------

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def lost_count(self) -> int:
        return self._lost

    @property
    def written_count(self) -> int:
        return self._written

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------- producers --------------------

    def enqueue(self, payload: Any) -> bool:
        """
        Queue ``payload`` without blocking. Must be called from the event loop thread.

        Returns:
            False only when the queue has been stopped and the payload was discarded.
        """
        if self._closing:
            self._lost += 1
            self._health.increment(self.name, "lost_items")
            logger.warning("[INGESTION QUEUE] %s is stopped, discarding %s", self.name, QueueItem(payload).describe())
            return False

        item = QueueItem(payload)
        dropped: Optional[QueueItem] = None
        with self._lock:
            if len(self._items) >= self.capacity:
                dropped = self._items.popleft()
            self._items.append(item)

        if dropped is not None:
            self._dropped += 1
            self._health.increment(self.name, "dropped_items")
            logger.warning(
                "[INGESTION QUEUE] %s full (capacity %d), dropped oldest item: %s",
                self.name, self.capacity, dropped.describe(),
            )
        self._wake.set()
        return True

    def enqueue_threadsafe(self, payload: Any) -> None:
        """Queue ``payload`` from a thread other than the event loop's."""
        if self._loop is None:
            raise RuntimeError(f"{self.name} has not been started")
        self._loop.call_soon_threadsafe(self.enqueue, payload)

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        if self.is_running:
            logger.warning("[INGESTION QUEUE] %s already running", self.name)
            return
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._wake = asyncio.Event()
        if self._items:
            self._wake.set()
        self._task = self._loop.create_task(self._consume(), name=f"guildkeeper-queue-{self.name}")
        logger.info("[INGESTION QUEUE] %s consumer started (capacity %d)", self.name, self.capacity)

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop accepting items, drain for up to ``drain_timeout`` seconds, then cancel."""
        if self._task is None:
            return
        self._closing = True
        self._wake.set()

        done, pending = await asyncio.wait({self._task}, timeout=drain_timeout)
        if pending:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        remaining = self.depth
        if remaining:
            with self._lock:
                abandoned = list(self._items)
                self._items.clear()
            self._lost += remaining
            self._health.increment(self.name, "lost_items", remaining)
            logger.error("[INGESTION QUEUE] %s stopped with %d undrained items", self.name, remaining)
            for item in abandoned:
                logger.error("[INGESTION QUEUE] Lost on shutdown: %s", item.describe())

        self._task = None
        logger.info("[INGESTION QUEUE] %s stopped (written=%d dropped=%d lost=%d)", self.name, self._written, self._dropped, self._lost)

    # -------------------- consumer --------------------

    def _pop(self) -> Optional[QueueItem]:
        with self._lock:
            return self._items.popleft() if self._items else None

    async def _consume(self) -> None:
        try:
            while True:
                item = self._pop()
                if item is None:
                    if self._closing:
                        return
                    self._wake.clear()
                    await self._wake.wait()
                    continue
                await self._write(item)
        except asyncio.CancelledError:
            logger.info("[INGESTION QUEUE] %s consumer cancelled", self.name)
            raise

    async def _write(self, item: QueueItem) -> None:
        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                await self._writer(item.payload)
            except asyncio.CancelledError:
                # Put it back so stop() can account for it.
                with self._lock:
                    self._items.appendleft(item)
                raise
            except Exception as exc:
                attempt += 1
                if attempt > self.max_retries:
                    self._lost += 1
                    self._health.increment(self.name, "lost_items")
                    self._health.record_failure(self.name, exc, time.perf_counter() - started)
                    logger.error(
                        "[INGESTION QUEUE] %s gave up after %d attempts (%s), item lost: %s",
                        self.name, attempt, exc, item.describe(),
                    )
                    return
                logger.warning("[INGESTION QUEUE] %s write failed (attempt %d/%d): %s", self.name, attempt, self.max_retries + 1, exc)
                try:
                    await asyncio.sleep(self.retry_backoff * attempt)
                except asyncio.CancelledError:
                    with self._lock:
                        self._items.appendleft(item)
                    raise
                continue

            self._written += 1
            self._health.record_success(self.name, time.perf_counter() - started)
            return
