"""Event listener Cog for Guildkeeper.

Forwards Discord gateway events to the background runtime: guild messages go
to the message logger and auto-moderation, connection and guild lifecycle
changes become admin notifications. Handlers do no database work inline;
everything slow is queued or awaited on non-critical paths only.
"""

import discord
from discord.ext import commands

from guildkeeper.datatypes.discord_datatypes import ChannelID, GuildID, UserID
from guildkeeper.runtime import BackgroundRuntime
from guildkeeper.util.logger import get_logger

logger = get_logger("events_cog")


class EventsCog(commands.Cog):
    """Cog containing message, lifecycle and command error handlers."""

    def __init__(self, discord_bot_instance: discord.Bot, runtime: BackgroundRuntime):
        self.bot = discord_bot_instance
        self.runtime = runtime
        logger.info("Events cog loaded")

    @commands.Cog.listener(name="on_ready")
    async def on_ready(self):
        if self.bot.user:
            logger.info(f"Bot connected as {self.bot.user} (ID: {self.bot.user.id})")
        await self.runtime.connection_notifier.on_connected()

    @commands.Cog.listener(name="on_resumed")
    async def on_resumed(self):
        await self.runtime.connection_notifier.on_connected()

    @commands.Cog.listener(name="on_disconnect")
    async def on_disconnect(self):
        await self.runtime.connection_notifier.on_disconnected("gateway connection closed")

    @commands.Cog.listener(name="on_message")
    async def on_message(self, message: discord.Message):
        if message.author.bot or message.guild is None:
            return

        guild_id = str(GuildID.from_guild(message.guild))
        user_id = str(UserID.from_user(message.author))
        channel_id = str(ChannelID.from_channel(message.channel))
        self.runtime.message_logger.log_message(
            guild_id,
            channel_id,
            user_id,
            str(message.id),
            len(message.content or ""),
        )
        try:
            await self.runtime.auto_moderation.handle_message(
                guild_id,
                channel_id,
                user_id,
                str(message.id),
                message.content or "",
                account_created_at=message.author.created_at,
            )
        except Exception as exc:
            logger.error(f"Auto-moderation failed for message {message.id}: {exc}", exc_info=True)

    @commands.Cog.listener(name="on_member_join")
    async def on_member_join(self, member: discord.Member):
        self.runtime.message_logger.record_activity(str(GuildID.from_guild(member.guild)), "member_join", str(UserID.from_user(member)))

    @commands.Cog.listener(name="on_member_remove")
    async def on_member_remove(self, member: discord.Member):
        self.runtime.message_logger.record_activity(str(GuildID.from_guild(member.guild)), "member_leave", str(UserID.from_user(member)))

    @commands.Cog.listener(name="on_guild_join")
    async def on_guild_join(self, guild: discord.Guild):
        guild_id = str(GuildID.from_guild(guild))
        self.runtime.audit_logger.log("guild", "joined", target_type="guild", target_id=guild_id, guild_id=guild_id)
        await self.runtime.connection_notifier.on_guild_joined(guild_id, guild.name)

    @commands.Cog.listener(name="on_guild_remove")
    async def on_guild_remove(self, guild: discord.Guild):
        guild_id = str(GuildID.from_guild(guild))
        self.runtime.audit_logger.log("guild", "removed", target_type="guild", target_id=guild_id, guild_id=guild_id)
        await self.runtime.detection_settings.remove_guild(guild_id)
        await self.runtime.connection_notifier.on_guild_removed(guild_id, guild.name)

    @commands.Cog.listener(name="on_application_command")
    async def on_application_command(self, application_context: discord.ApplicationContext):
        if application_context.guild is None:
            return
        self.runtime.message_logger.record_activity(
            str(application_context.guild.id),
            "command",
            str(application_context.author.id),
            str(application_context.channel_id) if application_context.channel_id else None,
        )

    @commands.Cog.listener(name="on_application_command_error")
    async def on_application_command_error(self, application_context: discord.ApplicationContext, error: Exception):
        """Log the error, tell the user, and notify admins."""
        if isinstance(error, commands.CommandNotFound):
            return

        command_name = getattr(application_context.command, "name", "<unknown>")
        logger.error(f"Error in command '{command_name}': {error}", exc_info=error)

        error_message = "Something went wrong while running this command."
        try:
            await application_context.respond(error_message, ephemeral=True)
        except discord.InteractionResponded:
            await application_context.followup.send(error_message, ephemeral=True)
        except discord.HTTPException as exc:
            logger.warning(f"Could not report command error to user: {exc}")

        guild_id = str(application_context.guild.id) if application_context.guild else None
        await self.runtime.connection_notifier.on_command_error(command_name, error, guild_id)


def setup(discord_bot_instance: discord.Bot, runtime: BackgroundRuntime):
    """Register the EventsCog with the bot."""
    discord_bot_instance.add_cog(EventsCog(discord_bot_instance, runtime))
