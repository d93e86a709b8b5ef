"""
Pytest configuration and fixtures for Guildkeeper tests.
"""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from guildkeeper.database.database import Database  # noqa: E402
from guildkeeper.health.health_registry import HealthRegistry  # noqa: E402


class FakeSender:
    """Records outbound messages; ids listed in ``failing`` raise instead."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.channel_messages = []
        self.direct_messages = []

    async def send_to_channel(self, channel_id, content, *, embed=None):
        if channel_id in self.failing:
            raise RuntimeError(f"channel {channel_id} unavailable")
        self.channel_messages.append((channel_id, content, embed))

    async def send_direct_message(self, user_id, content, *, embed=None):
        if user_id in self.failing:
            raise RuntimeError(f"user {user_id} has DMs closed")
        self.direct_messages.append((user_id, content, embed))

    async def send_message(self, target_id, content, *, embed=None):
        await self.send_to_channel(target_id, content, embed=embed)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database
    await database.shutdown()


@pytest.fixture
def health():
    return HealthRegistry(failure_threshold=3)


@pytest.fixture
def sender():
    return FakeSender()
