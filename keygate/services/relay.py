"""
keygate.services.relay — Notification Relay
============================================

"Deliver text T to user U", best-effort.

Two senders share one interface:

- :class:`DiscordRelay` — used inside the bot process; DMs through the
  connected ``discord.Client``.
- :class:`RestRelay` — used by the HTTP API, which has no gateway
  connection; DMs through Discord's REST API with the bot token.

A failed delivery (user never opened a DM, blocked the bot, Discord down)
is reported as ``RelayResult(delivered=False, reason=...)`` and never
raised: the grant or stored key that triggered the message must not be
rolled back because a courtesy note could not be sent.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import Protocol

import discord
import httpx

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"

# Discord rejects message content longer than this
MAX_MESSAGE_LENGTH = 2000


@dataclass(frozen=True, slots=True)
class RelayResult:
    delivered: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> RelayResult:
        return cls(delivered=True)

    @classmethod
    def failed(cls, reason: str) -> RelayResult:
        return cls(delivered=False, reason=reason)


class NotificationRelay(Protocol):
    async def send(self, user_id: int, text: str) -> RelayResult: ...


class ProcessingStatus(enum.StrEnum):
    """Canned statuses pushed by the upstream analytics job."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


STATUS_MESSAGES: dict[ProcessingStatus, str] = {
    ProcessingStatus.PROCESSING: (
        "\U0001f504 **Your data is being processed**\n\n"
        "We're analysing your advertising statistics. This takes a few minutes…"
    ),
    ProcessingStatus.COMPLETED: (
        "✅ **Analytics ready!**\n\n"
        "The analysis of your ad campaigns is ready."
    ),
    ProcessingStatus.ERROR: (
        "❌ **Processing failed**\n\n"
        "We couldn't process your API key. Please check the key and try again."
    ),
}


def status_message(status: ProcessingStatus, details: str | None = None) -> str:
    message = STATUS_MESSAGES[ProcessingStatus(status)]
    if details:
        message += f"\n\n{details}"
    return message


TOP_CAMPAIGNS_SHOWN = 5


@dataclass(frozen=True, slots=True)
class CampaignSummary:
    name: str
    roi: float


def results_message(
    campaigns_count: int,
    top_campaigns: list[CampaignSummary],
    recommendations: list[str],
    period: str | None = None,
) -> str:
    """Render an analytics summary: counts, best campaigns by ROI, advice."""
    lines = [
        "\U0001f4ca **Analytics results**",
        "",
        f"**Campaigns analysed:** {campaigns_count}",
    ]
    if period:
        lines.append(f"**Period:** {period}")
    ranked = sorted(top_campaigns, key=lambda c: c.roi, reverse=True)[:TOP_CAMPAIGNS_SHOWN]
    if ranked:
        lines += ["", "**Top campaigns:**"]
        lines += [f"{i}. {c.name} - ROI: {c.roi:g}%" for i, c in enumerate(ranked, 1)]
    if recommendations:
        lines += ["", "**Recommendations:**"]
        lines += [f"• {r}" for r in recommendations]
    lines += ["", "Open the analytics dashboard for detailed reports."]
    return _clip("\n".join(lines))


def _clip(text: str) -> str:
    if len(text) <= MAX_MESSAGE_LENGTH:
        return text
    return text[: MAX_MESSAGE_LENGTH - 1] + "…"


# ---------------------------------------------------------------------------
# Bot-backed sender
# ---------------------------------------------------------------------------
class DiscordRelay:
    """Sends DMs through a connected ``discord.Client``."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def send(self, user_id: int, text: str) -> RelayResult:
        try:
            user = self.client.get_user(user_id) or await self.client.fetch_user(user_id)
            await user.send(_clip(text))
        except discord.NotFound:
            return RelayResult.failed("unknown_user")
        except discord.Forbidden:
            return RelayResult.failed("dm_closed")
        except discord.HTTPException as exc:
            return RelayResult.failed(f"http_{exc.status}")
        return RelayResult.ok()


# ---------------------------------------------------------------------------
# REST-backed sender (API process)
# ---------------------------------------------------------------------------
class RestRelay:
    """Sends DMs via Discord's REST API: open DM channel, then post."""

    def __init__(
        self,
        token: str | None = None,
        *,
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token if token is not None else os.getenv("DISCORD_TOKEN", "")
        self.timeout = timeout
        self._transport = transport

    async def send(self, user_id: int, text: str) -> RelayResult:
        if not self.token:
            return RelayResult.failed("not_configured")

        headers = {"Authorization": f"Bot {self.token}"}
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=transport, headers=headers,
            ) as client:
                channel_resp = await client.post(
                    f"{DISCORD_API}/users/@me/channels",
                    json={"recipient_id": str(user_id)},
                )
                if channel_resp.status_code != 200:
                    return RelayResult.failed(f"http_{channel_resp.status_code}")

                channel_id = channel_resp.json()["id"]
                msg_resp = await client.post(
                    f"{DISCORD_API}/channels/{channel_id}/messages",
                    json={"content": _clip(text)},
                )
        except httpx.HTTPError as exc:
            return RelayResult.failed(type(exc).__name__)

        if msg_resp.status_code == 403:
            return RelayResult.failed("dm_closed")
        if msg_resp.status_code >= 300:
            return RelayResult.failed(f"http_{msg_resp.status_code}")
        return RelayResult.ok()


# ---------------------------------------------------------------------------
# Best-effort wrapper
# ---------------------------------------------------------------------------
async def notify(relay: NotificationRelay | None, user_id: int, text: str) -> RelayResult:
    """Send through *relay*, logging and swallowing any failure."""
    if relay is None:
        return RelayResult.failed("no_relay")
    try:
        result = await relay.send(user_id, text)
    except Exception:
        logger.exception("Relay raised while notifying user %s", user_id)
        return RelayResult.failed("error")
    if not result.delivered:
        logger.warning("Notification to user %s not delivered: %s", user_id, result.reason)
    return result
