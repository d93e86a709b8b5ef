"""
Guildkeeper
===========

Discord bot process hosting the background layer: scheduled jobs, buffered
audit/message logging, threshold-based auto-moderation and admin
notifications.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. GUILDKEEPER_HOME environment variable, if set.
    2. If running in a frozen/compiled context, use the executable's directory.
    3. Otherwise, use the current working directory.
    """
    if env_home := os.getenv("GUILDKEEPER_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path.cwd()


BASE_DIR = resolve_base_dir()
os.environ.setdefault("GUILDKEEPER_HOME", str(BASE_DIR))

import asyncio
import discord
from dotenv import load_dotenv

from guildkeeper.bot import events_cog
from guildkeeper.bot.sender import DiscordMessageSender
from guildkeeper.configuration.app_configuration import AppConfig
from guildkeeper.database.database import Database
from guildkeeper.runtime import BackgroundRuntime
from guildkeeper.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load ``.env`` and return the Discord bot token.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.messages = True
    intents.members = True
    return intents


def create_bot() -> discord.Bot:
    return discord.Bot(intents=build_intents())


async def start_bot(bot: discord.Bot, token: str) -> None:
    logger.info("Attempting to connect to Discord…")
    try:
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Discord bot start cancelled; shutting down")
    finally:
        logger.info("Discord bot start routine finished.")


async def shutdown_runtime(bot: discord.Bot | None, runtime: BackgroundRuntime | None, db: Database) -> None:
    """Stop everything in reverse start order; each step runs even if an earlier one fails."""
    if bot is not None and not bot.is_closed():
        try:
            await bot.close()
        except Exception as exc:
            logger.exception("Error while closing the Discord client: %s", exc)

    if runtime is not None:
        try:
            await runtime.stop()
        except Exception as exc:
            logger.exception("Error during background runtime shutdown: %s", exc)

    try:
        await db.shutdown()
    except Exception as exc:
        logger.exception("Error during database shutdown: %s", exc)

    logger.info("Shutdown complete.")


async def async_main() -> int:
    token = load_environment()
    config = AppConfig()
    db = Database(config.database_path)

    try:
        logger.info("Initializing database...")
        await db.initialize()
    except Exception as exc:
        logger.critical("Failed to initialize database: %s", exc)
        return 1

    bot: discord.Bot | None = None
    runtime: BackgroundRuntime | None = None
    exit_code = 0
    try:
        bot = create_bot()
        runtime = BackgroundRuntime.create(config, DiscordMessageSender(bot), db)
        events_cog.setup(bot, runtime)
        await runtime.start()
        await start_bot(bot, token)
    except Exception as exc:
        logger.critical("Guildkeeper runtime error: %s", exc)
        exit_code = 1
    finally:
        await shutdown_runtime(bot, runtime, db)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    sys.excepthook = handle_exception
    logger.info("Starting Guildkeeper…")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except SystemExit as exit_exc:
        code = exit_exc.code
        return code if isinstance(code, int) else 1
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the bot: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
