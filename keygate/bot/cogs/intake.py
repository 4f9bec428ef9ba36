"""
keygate.bot.cogs.intake — DM Intake
====================================

Listens for direct messages and hands each one to the
:class:`~keygate.services.router.MessageRouter`.

Pipeline:
1. on_message fires → gate checks (bot author, guild channel)
2. router.on_user_message (DB work runs on background threads via run_db)
3. Send each reply back into the DM channel
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from keygate.services.router import UNAVAILABLE_TEXT

if TYPE_CHECKING:
    from keygate.bot.core import KeyGateBot

logger = logging.getLogger(__name__)


class Intake(commands.Cog, name="Intake"):
    """Routes every DM through the access gate and funnel."""

    def __init__(self, bot: KeyGateBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is not None:
            return

        try:
            replies = await self.bot.router.on_user_message(
                message.author.id,
                message.content,
                message_id=str(message.id),
                display_name=message.author.display_name,
            )
        except Exception:
            logger.exception(
                "Error processing DM %s from user %s",
                message.id,
                message.author.id,
                extra={"user_id": message.author.id},
            )
            replies = [UNAVAILABLE_TEXT]

        for reply in replies:
            try:
                await message.channel.send(reply)
            except discord.HTTPException as exc:
                logger.warning(
                    "Failed to reply to user %s: %s", message.author.id, exc,
                )
                break


async def setup(bot: KeyGateBot) -> None:
    await bot.add_cog(Intake(bot))
