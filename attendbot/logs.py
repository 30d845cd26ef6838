import asyncio
import logging
import logging.handlers
from pathlib import Path

import discord

from attendbot import settings

logger = logging.getLogger("attendbot")


def configure_logging(log_dir: str | None = None) -> None:
    level = getattr(logging, settings.LOG_LEVEL.strip().upper() or "INFO", logging.INFO)
    directory = Path(log_dir or settings.LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    rotating = logging.handlers.RotatingFileHandler(
        directory / "attendbot.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    rotating.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(console)
    root.addHandler(rotating)
    logger.info("logging_configured level=%s dir=%s", logging.getLevelName(level), directory)


def interaction_log_context(interaction: discord.Interaction) -> dict[str, object]:
    return {
        "guild_id": getattr(interaction.guild, "id", None),
        "channel_id": getattr(interaction.channel, "id", None),
        "user_id": getattr(interaction.user, "id", None),
        "command": getattr(getattr(interaction, "command", None), "qualified_name", None),
    }


def register_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> None:
    if getattr(loop, "_attendbot_exception_handler_installed", False):
        return
    previous = loop.get_exception_handler()

    def _handler(active_loop: asyncio.AbstractEventLoop, context: dict[str, object]) -> None:
        message = context.get("message", "Unhandled asyncio loop exception")
        exception = context.get("exception")
        if exception is not None:
            logger.error("loop_exception message=%s context=%r", message, context, exc_info=exception)
        else:
            logger.error("loop_exception message=%s context=%r", message, context)
        if previous is not None:
            previous(active_loop, context)
        else:
            active_loop.default_exception_handler(context)

    loop.set_exception_handler(_handler)
    setattr(loop, "_attendbot_exception_handler_installed", True)
    logger.info("loop_exception_handler_registered")
