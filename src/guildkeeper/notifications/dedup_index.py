"""Process-local reservation index that suppresses duplicate notifications."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Hashable

from guildkeeper.errors import ConfigurationError


class DeduplicationIndex:
    """
    Maps a dedup key to the moment its reservation expires.

    :meth:`try_reserve` checks and claims a key in one locked step, so two
    producers racing on the same (recipient, type, related entity) cannot both
    proceed to create a notification.
    """

    def __init__(self, window: timedelta) -> None:
        if window <= timedelta(0):
            raise ConfigurationError(f"Deduplication window must be positive, got {window}")
        self.window = window
        self._expires: Dict[Hashable, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires)

    def try_reserve(self, key: Hashable, now: datetime) -> bool:
        """Claim ``key`` for one window. False if an unexpired claim already exists."""
        with self._lock:
            expires = self._expires.get(key)
            if expires is not None and expires > now:
                return False
            self._expires[key] = now + self.window
            return True

    def release(self, key: Hashable) -> None:
        """Drop a claim whose notification was never persisted."""
        with self._lock:
            self._expires.pop(key, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, expires in self._expires.items() if expires <= now]
            for key in expired:
                del self._expires[key]
        return len(expired)
