"""
keygate.services.router — Inbound Message Dispatch
===================================================

One call per inbound DM.  The transport resolves the author and hands
over the raw text; the router returns the replies to send back.

Order of operations:
  1. Refresh the known-user directory.
  2. ``/myid`` is answered for everyone (users need it to ask for access).
  3. ``!commands`` go to the admin console, which refuses non-admins.
  4. Everyone else passes the access gate.  Denied users get the deny
     text and nothing else runs; an unreachable store gets a distinct
     "try again later" reply.
  5. Menu tokens navigate; anything else is an answer for the open funnel.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from keygate.config import KeyGateConfig
from keygate.constants import (
    MAIN_MENU,
    MENU_BACK,
    MENU_MAIN,
    MENU_STATUS,
    MENU_SUBMIT_KEY,
    MENU_SUPPORT,
    MY_ID_COMMANDS,
    START_COMMANDS,
    format_menu,
    resolve_menu_token,
)
from keygate.database.engine import run_db
from keygate.engine.access import AccessDecision
from keygate.services import access_service, user_service
from keygate.services.admin_console import AdminConsole
from keygate.services.funnel_engine import FunnelEngine, FunnelOutcome, OutcomeKind
from keygate.services.relay import NotificationRelay

logger = logging.getLogger(__name__)

UNAVAILABLE_TEXT = "⚠️ The service is temporarily unavailable. Please try again later."


class MessageRouter:
    """Transport-independent dispatcher for user and admin messages."""

    def __init__(
        self,
        engine: Engine,
        cfg: KeyGateConfig,
        relay: NotificationRelay | None = None,
    ) -> None:
        self.engine = engine
        self.cfg = cfg
        self.funnels = FunnelEngine(engine, relay)
        self.admin = AdminConsole(engine, cfg, relay)

    # -------------------------------------------------------------------
    # Canned replies
    # -------------------------------------------------------------------
    def main_menu(self) -> str:
        return "Choose an option:\n" + format_menu(MAIN_MENU)

    def welcome_text(self) -> str:
        return f"\U0001f44b Welcome to {self.cfg.service_name}!\n{self.main_menu()}"

    def deny_text(self, user_id: int, decision: AccessDecision) -> str:
        lead = {
            "expired": "⛔ Your access has expired.",
            "deactivated": "⛔ Your access has been deactivated.",
        }.get(decision.reason, "⛔ You don't have access yet.")
        text = f"{lead}\nYour user ID: {user_id}"
        if self.cfg.support_contact:
            text += f"\nSend it to {self.cfg.support_contact} to get access."
        return text

    def support_text(self) -> str:
        contact = self.cfg.support_contact or "an administrator"
        return f"\U0001f4de For help, contact {contact}.\n{self.main_menu()}"

    # -------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------
    async def on_user_message(
        self,
        user_id: int,
        text: str,
        message_id: str | None = None,
        display_name: str | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Handle one inbound message and return the replies."""
        try:
            return await self._dispatch(user_id, text, message_id, display_name, now)
        except SQLAlchemyError:
            logger.exception(
                "Store failure while handling message from %s", user_id,
                extra={"user_id": user_id},
            )
            return [UNAVAILABLE_TEXT]

    async def _dispatch(
        self,
        user_id: int,
        text: str,
        message_id: str | None,
        display_name: str | None,
        now: datetime | None,
    ) -> list[str]:
        stripped = (text or "").strip()

        await run_db(
            user_service.touch_user, self.engine, user_id, display_name or str(user_id), now,
        )

        if stripped.lower() in MY_ID_COMMANDS:
            return [f"Your user ID: {user_id}"]

        # Non-admins are refused by the console, never fed to the funnel.
        if stripped.startswith("!"):
            command, _, rest = stripped.partition(" ")
            response = await self.admin.handle_command(user_id, command, rest, now=now)
            return [response.text]

        decision = await run_db(
            access_service.check_access, self.engine, user_id,
            is_admin=self.cfg.is_admin, now=now,
        )
        if decision.unavailable:
            return [UNAVAILABLE_TEXT]
        if not decision.allowed:
            return [self.deny_text(user_id, decision)]

        return await self._handle_allowed(user_id, stripped, message_id, decision, now)

    async def _handle_allowed(
        self,
        user_id: int,
        text: str,
        message_id: str | None,
        decision: AccessDecision,
        now: datetime | None,
    ) -> list[str]:
        menu = resolve_menu_token(text)

        if text.lower() in START_COMMANDS or menu == MENU_MAIN:
            return [self.welcome_text()]
        if menu == MENU_SUBMIT_KEY:
            outcome = await self.funnels.begin(user_id, now)
            return [outcome.text]
        if menu == MENU_STATUS:
            status = await run_db(user_service.build_status, self.engine, user_id, decision)
            return [user_service.format_status(status), self.main_menu()]
        if menu == MENU_SUPPORT:
            return [self.support_text()]
        if menu == MENU_BACK:
            outcome = await self.funnels.go_back(user_id, now)
            if outcome.kind in (OutcomeKind.EXITED, OutcomeKind.NO_FUNNEL):
                return [outcome.text, self.main_menu()]
            return [outcome.text]
        if text.startswith("/"):
            return ["Unknown command.", self.main_menu()]

        outcome = await self.funnels.advance(user_id, text, message_id, now)
        return self._replies_for(outcome)

    def _replies_for(self, outcome: FunnelOutcome) -> list[str]:
        if outcome.kind is OutcomeKind.NO_FUNNEL:
            return [self.main_menu()]
        if outcome.completed:
            if outcome.notified:
                return [self.main_menu()]
            return [outcome.text, self.main_menu()]
        return [outcome.text]
