"""
keygate.bot.cogs.tasks — Periodic Background Tasks
===================================================

The external timer for the reminder entry points.  Runs on a
``discord.ext.tasks`` loop every ``reminder_interval_minutes``:

- **Expiry reminders** — 3-day and 1-day warnings before a grant ends.
- **Stale funnels** — one nudge per funnel untouched for
  ``stale_funnel_hours``.

These tasks fire in the bot process (not a separate worker) to keep
the deployment simple.  DB work runs via ``run_db()``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from keygate.services.reminder_service import (
    remind_stale_funnels,
    send_expiry_reminders,
)

if TYPE_CHECKING:
    from keygate.bot.core import KeyGateBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled reminders."""

    def __init__(self, bot: KeyGateBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        self.reminder_loop.change_interval(minutes=self.bot.cfg.reminder_interval_minutes)
        self.reminder_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.reminder_loop.cancel()

    @tasks.loop(minutes=60)
    async def reminder_loop(self):
        """Send due expiry reminders and stale-funnel nudges."""
        cfg = self.bot.cfg
        try:
            expiring = await send_expiry_reminders(
                self.bot.engine, self.bot.relay, support_contact=cfg.support_contact,
            )
            stale = await remind_stale_funnels(
                self.bot.engine, self.bot.relay, timedelta(hours=cfg.stale_funnel_hours),
            )
            logger.info(
                "Reminder task complete: %d expiry, %d stale-funnel", expiring, stale,
            )
        except Exception:
            logger.exception("Reminder task failed", extra={"task": "reminders"})

    @reminder_loop.before_loop
    async def _wait_reminders(self):
        await self.bot.wait_until_ready()


async def setup(bot: KeyGateBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
