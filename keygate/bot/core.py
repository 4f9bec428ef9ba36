"""
keygate.bot.core — Bot Instance & Cog Loader
=============================================

Defines :class:`KeyGateBot`, a ``commands.Bot`` subclass that:

1. Stores the shared config (``bot.cfg``), DB engine (``bot.engine``),
   notification relay (``bot.relay``) and message router
   (``bot.router``) so every Cog can reach them via ``self.bot.*``.
2. Loads every Cog listed in :data:`EXTENSIONS`.
3. Syncs the slash-command tree on startup (guild-scoped for dev, global
   for production — controlled by the ``DEV_GUILD_ID`` env var).

Text commands (``!grant …``) are not dispatched by discord.py's command
framework: every DM goes through the router, which decides whether the
author is an administrator.
"""

from __future__ import annotations

import logging
import os

import discord
from discord.ext import commands
from sqlalchemy import Engine

from keygate.config import KeyGateConfig
from keygate.services.admin_console import AdminConsole
from keygate.services.relay import DiscordRelay
from keygate.services.router import MessageRouter

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "keygate.bot.cogs.intake",
    "keygate.bot.cogs.admin",
    "keygate.bot.cogs.tasks",
]


class KeyGateBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`KeyGateConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    """

    def __init__(self, cfg: KeyGateConfig, engine: Engine) -> None:
        # DMs only.  MESSAGE_CONTENT is privileged but harmless to request;
        # DM content is delivered regardless.
        intents = discord.Intents.default()
        intents.dm_messages = True
        intents.message_content = True
        intents.presences = False

        super().__init__(
            command_prefix=cfg.bot_prefix,
            intents=intents,
            description=f"{cfg.service_name} — API key intake",
        )

        # Attach shared state so Cogs can read it via self.bot.*
        self.cfg = cfg
        self.engine = engine
        self.relay = DiscordRelay(self)
        self.router = MessageRouter(engine, cfg, self.relay)

    @property
    def admin_console(self) -> AdminConsole:
        return self.router.admin

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Called once before the bot connects to Discord.

        If any extension fails to load, we log the error but keep going —
        one broken Cog shouldn't take down the whole bot.
        """
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)

        dev_guild_id = os.getenv("DEV_GUILD_ID")
        if dev_guild_id:
            guild = discord.Object(id=int(dev_guild_id))
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d commands to dev guild %s", len(synced), dev_guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d commands globally", len(synced))

    async def on_message(self, message: discord.Message) -> None:
        """Cogs handle messages; prefix commands are not processed."""
        return

    async def close(self) -> None:
        logger.info("Bot shutting down…")
        await super().close()
