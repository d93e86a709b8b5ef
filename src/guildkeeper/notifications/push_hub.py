"""
In-process real-time channel to connected dashboard sessions.

Each session holds a :class:`LiveConnection` whose queue receives
``{"event": ..., "data": ...}`` messages. Sessions can join named groups
(``guild:<id>``, ``admins``) for broadcast. A slow session whose queue is full
loses its oldest message rather than blocking the sender.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from typing import Any, DefaultDict, Dict, Set

from guildkeeper.util.logger import get_logger

logger = get_logger("push_hub")

DEFAULT_MAX_PENDING = 100

_connection_ids = itertools.count(1)


class LiveConnection:
    """One connected session of one user."""

    def __init__(self, user_id: str, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.user_id = user_id
        self.connection_id = next(_connection_ids)
        self.groups: Set[str] = set()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, message: Dict[str, Any]) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            logger.debug("[PUSH HUB] Connection %d of user %s is lagging, dropped oldest message", self.connection_id, self.user_id)
        self._queue.put_nowait(message)

    async def receive(self) -> Dict[str, Any]:
        return await self._queue.get()

    def receive_nowait(self) -> Dict[str, Any]:
        return self._queue.get_nowait()


class PushHub:
    """Registry of live connections, keyed by user and by group."""

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._by_user: DefaultDict[str, Set[LiveConnection]] = defaultdict(set)
        self._by_group: DefaultDict[str, Set[LiveConnection]] = defaultdict(set)

    def connect(self, user_id: str) -> LiveConnection:
        connection = LiveConnection(user_id, self.max_pending)
        self._by_user[user_id].add(connection)
        logger.debug("[PUSH HUB] User %s connected (connection %d)", user_id, connection.connection_id)
        return connection

    def disconnect(self, connection: LiveConnection) -> None:
        connection.closed = True
        self._discard(self._by_user, connection.user_id, connection)
        for group in list(connection.groups):
            self._discard(self._by_group, group, connection)
        connection.groups.clear()
        logger.debug("[PUSH HUB] Connection %d of user %s closed", connection.connection_id, connection.user_id)

    def join_group(self, connection: LiveConnection, group: str) -> None:
        connection.groups.add(group)
        self._by_group[group].add(connection)

    def leave_group(self, connection: LiveConnection, group: str) -> None:
        connection.groups.discard(group)
        self._discard(self._by_group, group, connection)

    def connection_count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))

    async def push_to_user(self, user_id: str, event: str, payload: Dict[str, Any]) -> int:
        """Send to every session of ``user_id``. Returns the number of sessions reached."""
        return self._send(self._by_user.get(user_id, ()), event, payload)

    async def push_to_group(self, group: str, event: str, payload: Dict[str, Any]) -> int:
        return self._send(self._by_group.get(group, ()), event, payload)

    @staticmethod
    def _send(connections, event: str, payload: Dict[str, Any]) -> int:
        message = {"event": event, "data": payload}
        targets = list(connections)
        for connection in targets:
            connection.deliver(message)
        return len(targets)

    @staticmethod
    def _discard(index: DefaultDict[str, Set[LiveConnection]], key: str, connection: LiveConnection) -> None:
        members = index.get(key)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del index[key]
