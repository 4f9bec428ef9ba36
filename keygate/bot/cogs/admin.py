"""
keygate.bot.cogs.admin — Admin Slash Commands
==============================================

Slash-command front end for the admin console:
- /keygate-grant — grant access for N days
- /keygate-extend — reset expiry to now + N days
- /keygate-deactivate — switch a grant off
- /keygate-grants — soonest-expiring grants
- /keygate-stats — aggregate counts
- /keygate-funnel — a user's current or latest funnel
- /keygate-stale — open funnels nobody touched lately

All commands require the invoking user to be on ``admin_user_ids``.
Replies are ephemeral.  Every command goes through
``AdminConsole.handle_command`` so DM text commands and slash commands
share one code path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from keygate.services.admin_console import MAX_STALE_HOURS
from keygate.services.relay import MAX_MESSAGE_LENGTH

if TYPE_CHECKING:
    from keygate.bot.core import KeyGateBot

logger = logging.getLogger(__name__)


def is_admin():
    """Decorator that checks the invoking user against the allow-list."""
    async def predicate(interaction: discord.Interaction) -> bool:
        bot: KeyGateBot = interaction.client  # type: ignore[assignment]
        return bot.cfg.is_admin(interaction.user.id)
    return app_commands.check(predicate)


class Admin(commands.Cog, name="Admin"):
    """Access administration for KeyGate."""

    def __init__(self, bot: KeyGateBot) -> None:
        self.bot = bot

    async def _run(
        self, interaction: discord.Interaction, command: str, args: list[str],
    ) -> None:
        response = await self.bot.admin_console.handle_command(
            interaction.user.id, command, args,
        )
        text = response.text
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[: MAX_MESSAGE_LENGTH - 1] + "…"
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.command(name="keygate-grant", description="Grant a user access.")
    @app_commands.describe(
        user="The user to grant access to",
        days="Length of the grant in days (default from config)",
        notes="Optional note stored on the grant",
    )
    @is_admin()
    async def grant(
        self,
        interaction: discord.Interaction,
        user: discord.User,
        days: int | None = None,
        notes: str | None = None,
    ) -> None:
        days = days if days is not None else self.bot.cfg.default_grant_days
        args = [str(user.id), str(days)]
        if notes:
            args.extend(notes.split())
        await self._run(interaction, "grant", args)

    @app_commands.command(name="keygate-extend", description="Set a user's expiry to now + days.")
    @app_commands.describe(user="The user to extend", days="Days from now")
    @is_admin()
    async def extend(
        self,
        interaction: discord.Interaction,
        user: discord.User,
        days: app_commands.Range[int, 1, 36500],
    ) -> None:
        await self._run(interaction, "extend", [str(user.id), str(days)])

    @app_commands.command(name="keygate-deactivate", description="Deactivate a user's access.")
    @app_commands.describe(user="The user to deactivate", reason="Reason for the audit log")
    @is_admin()
    async def deactivate(
        self,
        interaction: discord.Interaction,
        user: discord.User,
        reason: str | None = None,
    ) -> None:
        args = [str(user.id)]
        if reason:
            args.extend(reason.split())
        await self._run(interaction, "deactivate", args)

    @app_commands.command(name="keygate-grants", description="List grants, soonest-expiring first.")
    @app_commands.describe(page="Page number (default 1)")
    @is_admin()
    async def grants(
        self, interaction: discord.Interaction, page: int = 1,
    ) -> None:
        await self._run(interaction, "grants", [str(page)])

    @app_commands.command(name="keygate-stats", description="Show grant, funnel and key counts.")
    @is_admin()
    async def stats(self, interaction: discord.Interaction) -> None:
        await self._run(interaction, "stats", [])

    @app_commands.command(name="keygate-funnel", description="Show a user's funnel.")
    @app_commands.describe(user="The user to inspect")
    @is_admin()
    async def funnel(self, interaction: discord.Interaction, user: discord.User) -> None:
        await self._run(interaction, "funnel", [str(user.id)])

    @app_commands.command(name="keygate-stale", description="List stale open funnels.")
    @app_commands.describe(hours="Untouched for at least this many hours")
    @is_admin()
    async def stale(
        self,
        interaction: discord.Interaction,
        hours: app_commands.Range[int, 1, MAX_STALE_HOURS] | None = None,
    ) -> None:
        await self._run(interaction, "stale", [str(hours)] if hours else [])

    async def cog_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        if isinstance(error, app_commands.CheckFailure):
            message = "⛔ Administrators only."
        else:
            logger.exception("Admin command failed", exc_info=error)
            message = "⚠️ Command failed. Check the bot logs."
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)


async def setup(bot: KeyGateBot) -> None:
    await bot.add_cog(Admin(bot))
