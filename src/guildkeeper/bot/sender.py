"""
Outbound Discord messages for the background jobs.

Jobs depend on the :class:`MessageSender` protocol, not on ``discord.Bot``, so
they can be exercised with a fake sender. :class:`DiscordMessageSender` is the
production implementation; every failure surfaces as :class:`DeliveryError`
so callers handle one exception type.
"""

from __future__ import annotations

from typing import Optional, Protocol

import discord

from guildkeeper.datatypes.discord_datatypes import ChannelID, UserID
from guildkeeper.errors import DeliveryError
from guildkeeper.util.logger import get_logger

logger = get_logger("message_sender")


class MessageSender(Protocol):
    async def send_to_channel(self, channel_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None: ...

    async def send_direct_message(self, user_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None: ...

    async def send_message(self, target_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None: ...


def build_embed(title: str, description: str, color: discord.Color = discord.Color.blurple()) -> discord.Embed:
    """Small embed used for reminders and scheduled posts."""
    embed = discord.Embed(title=title[:256], description=description[:4096], color=color)
    embed.timestamp = discord.utils.utcnow()
    return embed


class DiscordMessageSender:
    """Sends through a connected ``discord.Bot``, preferring the client cache over API fetches."""

    def __init__(self, bot: discord.Bot) -> None:
        self.bot = bot

    async def _resolve_channel(self, channel_id: int) -> Optional[discord.abc.Messageable]:
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.bot.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden):
            return None

    async def _resolve_user(self, user_id: int) -> Optional[discord.User]:
        user = self.bot.get_user(user_id)
        if user is not None:
            return user
        try:
            return await self.bot.fetch_user(user_id)
        except discord.NotFound:
            return None

    async def send_to_channel(self, channel_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None:
        channel = await self._resolve_channel(ChannelID(channel_id).to_int())
        if channel is None or not hasattr(channel, "send"):
            raise DeliveryError(f"Channel {channel_id} is not reachable")
        await self._send(channel, content, embed, f"channel {channel_id}")

    async def send_direct_message(self, user_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None:
        user = await self._resolve_user(UserID(user_id).to_int())
        if user is None:
            raise DeliveryError(f"User {user_id} not found")
        await self._send(user, content, embed, f"user {user_id}")

    async def send_message(self, target_id: str, content: str, *, embed: Optional[discord.Embed] = None) -> None:
        """Send to a channel with this id, or else DM the user with this id."""
        channel = await self._resolve_channel(ChannelID(target_id).to_int())
        if channel is not None and hasattr(channel, "send"):
            await self._send(channel, content, embed, f"channel {target_id}")
            return
        await self.send_direct_message(target_id, content, embed=embed)

    @staticmethod
    async def _send(target: discord.abc.Messageable, content: str, embed: Optional[discord.Embed], label: str) -> None:
        try:
            await target.send(content=content or None, embed=embed)
        except discord.Forbidden as exc:
            raise DeliveryError(f"Missing permission to message {label}") from exc
        except discord.HTTPException as exc:
            raise DeliveryError(f"Discord rejected message to {label}: {exc}") from exc
        logger.debug("[MESSAGE SENDER] Delivered message to %s", label)
