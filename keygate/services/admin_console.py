"""
keygate.services.admin_console — Admin Façade & Command Dispatch
=================================================================

Thin orchestration over the access, funnel and key stores for
administrators.  Used by the bot (``!grant …`` DM commands and
``/keygate-*`` slash commands) and by the admin HTTP routes.

Mutations delegate to :mod:`keygate.services.access_service` and then
tell the affected user through the relay.  The relay is best-effort, so a
closed DM never undoes a grant.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from keygate.config import KeyGateConfig
from keygate.constants import EXPIRING_SOON_DAYS, as_utc, utcnow
from keygate.database.engine import run_db
from keygate.database.models import AccessGrant, FunnelState
from keygate.engine.access import days_remaining
from keygate.services import access_service, funnel_store
from keygate.services.access_service import GrantOutcome
from keygate.services.key_store import count_by_platform, key_counts_for_users
from keygate.services.relay import NotificationRelay, notify
from keygate.services.user_service import display_names

logger = logging.getLogger(__name__)

PAGE_SIZE = 20
# Ten years; larger windows overflow datetime arithmetic.
MAX_STALE_HOURS = 24 * 365 * 10

_MENTION = re.compile(r"^<@!?(\d+)>$")


@dataclass
class AdminResponse:
    """Reply to an admin command: display text plus structured data."""

    ok: bool
    text: str
    data: dict[str, Any] | None = None


@dataclass
class GrantRow:
    user_id: int
    display_name: str | None
    granted_at: datetime
    expires_at: datetime
    is_active: bool
    days_remaining: int
    key_count: int
    notes: str | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "display_name": self.display_name,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_active": self.is_active,
            "days_remaining": self.days_remaining,
            "key_count": self.key_count,
            "notes": self.notes,
        }


@dataclass
class Stats:
    grants: dict[str, int] = field(default_factory=dict)
    funnels: dict[str, int] = field(default_factory=dict)
    keys_by_platform: dict[str, int] = field(default_factory=dict)
    admins: int = 0

    def to_dict(self) -> dict:
        return {
            "grants": self.grants,
            "funnels": self.funnels,
            "keys_by_platform": self.keys_by_platform,
            "keys_total": sum(self.keys_by_platform.values()),
            "admins": self.admins,
        }


# ---------------------------------------------------------------------------
# Sync queries (run via run_db)
# ---------------------------------------------------------------------------
def query_grants(
    engine: Engine, limit: int, offset: int, now: datetime,
) -> list[GrantRow]:
    """Grants ordered soonest-expiring first."""
    with Session(engine) as session:
        grants = session.scalars(
            select(AccessGrant)
            .order_by(AccessGrant.expires_at, AccessGrant.user_id)
            .limit(limit)
            .offset(offset)
        ).all()
        ids = [g.user_id for g in grants]
        names = display_names(session, ids)
        keys = key_counts_for_users(session, ids)
        return [
            GrantRow(
                user_id=g.user_id,
                display_name=names.get(g.user_id),
                granted_at=as_utc(g.granted_at),
                expires_at=as_utc(g.expires_at),
                is_active=g.is_active,
                days_remaining=days_remaining(g.expires_at, now),
                key_count=keys.get(g.user_id, 0),
                notes=g.notes,
            )
            for g in grants
        ]


def query_stats(engine: Engine, now: datetime, admin_count: int) -> Stats:
    soon = now + timedelta(days=EXPIRING_SOON_DAYS)

    def _count(session: Session, *criteria) -> int:
        stmt = select(func.count()).select_from(AccessGrant)
        if criteria:
            stmt = stmt.where(*criteria)
        return session.scalar(stmt) or 0

    with Session(engine) as session:
        active = (AccessGrant.is_active.is_(True), AccessGrant.expires_at > now)
        grants = {
            "total": _count(session),
            "active": _count(session, *active),
            "expiring_soon": _count(session, *active, AccessGrant.expires_at <= soon),
            "expired": _count(
                session, AccessGrant.is_active.is_(True), AccessGrant.expires_at <= now,
            ),
            "deactivated": _count(session, AccessGrant.is_active.is_(False)),
        }
        return Stats(
            grants=grants,
            funnels=funnel_store.step_histogram(session),
            keys_by_platform=count_by_platform(session),
            admins=admin_count,
        )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------
def _grant_line(row: GrantRow) -> str:
    name = row.display_name or "?"
    state = "active" if row.is_active else "off"
    return (
        f"{row.user_id} ({name}) · {state} · {row.days_remaining}d left "
        f"(until {row.expires_at:%Y-%m-%d}) · keys {row.key_count}"
    )


def _funnel_line(funnel: FunnelState) -> str:
    state = "completed" if funnel.is_completed else f"at {funnel.current_step}"
    return (
        f"#{funnel.id} user {funnel.user_id} · {state} · "
        f"updated {as_utc(funnel.updated_at):%Y-%m-%d %H:%M}"
    )


def _format_stats(stats: Stats) -> str:
    g = stats.grants
    lines = [
        "\U0001f4c8 **KeyGate stats**",
        f"Grants: {g['total']} total · {g['active']} active · "
        f"{g['expiring_soon']} expiring ≤{EXPIRING_SOON_DAYS}d · "
        f"{g['expired']} expired · {g['deactivated']} deactivated",
        "Funnels: " + ", ".join(f"{k}={v}" for k, v in stats.funnels.items()),
        f"Keys: {sum(stats.keys_by_platform.values())} total",
    ]
    for platform, count in sorted(stats.keys_by_platform.items()):
        lines.append(f"  • {platform}: {count}")
    lines.append(f"Administrators: {stats.admins}")
    return "\n".join(lines)


def parse_user_id(token: str) -> int | None:
    """Accept a raw snowflake or a ``<@123>`` mention."""
    token = token.strip()
    match = _MENTION.match(token)
    if match:
        token = match.group(1)
    if not token.isdigit():
        return None
    return int(token)


USAGE = "\n".join([
    "Admin commands:",
    "  !grant <user> [days] [notes]",
    "  !extend <user> <days>",
    "  !deactivate <user> [reason]",
    "  !grants [page]",
    "  !stats",
    "  !funnel <user>",
    "  !stale [hours]",
])


# ---------------------------------------------------------------------------
# Façade
# ---------------------------------------------------------------------------
class AdminConsole:
    """Admin operations, each usable directly or via :meth:`handle_command`."""

    def __init__(
        self,
        engine: Engine,
        cfg: KeyGateConfig,
        relay: NotificationRelay | None = None,
    ) -> None:
        self.engine = engine
        self.cfg = cfg
        self.relay = relay

    # -- mutations ------------------------------------------------------
    async def grant(
        self,
        admin_id: int,
        target_id: int,
        days: int | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> GrantOutcome:
        days = days if days is not None else self.cfg.default_grant_days
        outcome = await run_db(
            access_service.grant_access,
            self.engine, admin_id, target_id, days, notes,
            is_admin=self.cfg.is_admin, now=now,
        )
        if outcome.ok:
            await notify(
                self.relay, target_id,
                f"✅ Your access to {self.cfg.service_name} is active for {days} day(s), "
                f"until {as_utc(outcome.grant.expires_at):%Y-%m-%d}. Send 'menu' to start.",
            )
        return outcome

    async def extend(
        self,
        admin_id: int,
        target_id: int,
        days: int,
        now: datetime | None = None,
    ) -> GrantOutcome:
        outcome = await run_db(
            access_service.extend_access,
            self.engine, admin_id, target_id, days,
            is_admin=self.cfg.is_admin, now=now,
        )
        if outcome.ok:
            await notify(
                self.relay, target_id,
                f"\U0001f504 Your access was extended until "
                f"{as_utc(outcome.grant.expires_at):%Y-%m-%d}.",
            )
        return outcome

    async def deactivate(
        self,
        admin_id: int,
        target_id: int,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> GrantOutcome:
        outcome = await run_db(
            access_service.deactivate_access,
            self.engine, admin_id, target_id, reason, now=now,
        )
        if outcome.ok and outcome.changed:
            text = "⛔ Your access has been deactivated."
            if self.cfg.support_contact:
                text += f" Contact {self.cfg.support_contact} for details."
            await notify(self.relay, target_id, text)
        return outcome

    # -- reads ----------------------------------------------------------
    async def list_grants(
        self, limit: int = PAGE_SIZE, offset: int = 0, now: datetime | None = None,
    ) -> list[GrantRow]:
        return await run_db(query_grants, self.engine, limit, offset, now or utcnow())

    async def stats(self, now: datetime | None = None) -> Stats:
        return await run_db(
            query_stats, self.engine, now or utcnow(), len(self.cfg.admin_user_ids),
        )

    async def funnel(self, user_id: int) -> FunnelState | None:
        return await run_db(funnel_store.get_user_funnel, self.engine, user_id)

    async def stale(
        self, hours: int | None = None, now: datetime | None = None,
    ) -> list[FunnelState]:
        hours = hours if hours is not None else self.cfg.stale_funnel_hours
        return await run_db(
            funnel_store.list_stale, self.engine, timedelta(hours=hours), now,
        )

    # -- command dispatch ----------------------------------------------
    async def handle_command(
        self,
        admin_id: int,
        command: str,
        args: list[str] | str = "",
        now: datetime | None = None,
    ) -> AdminResponse:
        """Entry point for text commands.  Non-admins are rejected."""
        if not self.cfg.is_admin(admin_id):
            logger.warning("Admin command %r from non-admin %s", command, admin_id)
            return AdminResponse(ok=False, text="⛔ Administrators only.")

        if isinstance(args, str):
            args = args.split()
        name = command.strip().lstrip("!/").lower().removeprefix("keygate-")

        handler = {
            "grant": self._cmd_grant,
            "extend": self._cmd_extend,
            "deactivate": self._cmd_deactivate,
            "revoke": self._cmd_deactivate,
            "grants": self._cmd_grants,
            "stats": self._cmd_stats,
            "funnel": self._cmd_funnel,
            "stale": self._cmd_stale,
        }.get(name)
        if handler is None:
            return AdminResponse(ok=name == "help", text=USAGE)
        return await handler(admin_id, args, now)

    async def _cmd_grant(self, admin_id, args, now) -> AdminResponse:
        target = parse_user_id(args[0]) if args else None
        if target is None:
            return AdminResponse(ok=False, text="Usage: !grant <user> [days] [notes]")
        rest = args[1:]
        days = None
        if rest and rest[0].lstrip("-").isdigit():
            days = int(rest[0])
            rest = rest[1:]
        notes = " ".join(rest) or None
        outcome = await self.grant(admin_id, target, days, notes, now=now)
        return self._outcome_response("Granted", target, outcome)

    async def _cmd_extend(self, admin_id, args, now) -> AdminResponse:
        target = parse_user_id(args[0]) if args else None
        if target is None or len(args) < 2 or not args[1].lstrip("-").isdigit():
            return AdminResponse(ok=False, text="Usage: !extend <user> <days>")
        outcome = await self.extend(admin_id, target, int(args[1]), now=now)
        return self._outcome_response("Extended", target, outcome)

    async def _cmd_deactivate(self, admin_id, args, now) -> AdminResponse:
        target = parse_user_id(args[0]) if args else None
        if target is None:
            return AdminResponse(ok=False, text="Usage: !deactivate <user> [reason]")
        outcome = await self.deactivate(admin_id, target, " ".join(args[1:]) or None, now=now)
        if outcome.ok and not outcome.changed:
            return AdminResponse(ok=True, text=f"User {target} was already deactivated.")
        return self._outcome_response("Deactivated", target, outcome)

    async def _cmd_grants(self, admin_id, args, now) -> AdminResponse:
        page = int(args[0]) if args and args[0].isdigit() and int(args[0]) > 0 else 1
        rows = await self.list_grants(PAGE_SIZE, (page - 1) * PAGE_SIZE, now)
        if not rows:
            return AdminResponse(ok=True, text="No grants on this page.", data={"grants": []})
        text = f"Grants (page {page}):\n" + "\n".join(_grant_line(r) for r in rows)
        return AdminResponse(ok=True, text=text, data={"grants": [r.to_dict() for r in rows]})

    async def _cmd_stats(self, admin_id, args, now) -> AdminResponse:
        stats = await self.stats(now)
        return AdminResponse(ok=True, text=_format_stats(stats), data=stats.to_dict())

    async def _cmd_funnel(self, admin_id, args, now) -> AdminResponse:
        target = parse_user_id(args[0]) if args else None
        if target is None:
            return AdminResponse(ok=False, text="Usage: !funnel <user>")
        funnel = await self.funnel(target)
        if funnel is None:
            return AdminResponse(ok=True, text=f"User {target} has no funnel.")
        return AdminResponse(ok=True, text=_funnel_line(funnel))

    async def _cmd_stale(self, admin_id, args, now) -> AdminResponse:
        hours = None
        if args:
            if not args[0].isdigit() or not 1 <= int(args[0]) <= MAX_STALE_HOURS:
                return AdminResponse(
                    ok=False, text=f"Usage: !stale [hours]  (1-{MAX_STALE_HOURS})",
                )
            hours = int(args[0])
        funnels = await self.stale(hours, now)
        if not funnels:
            return AdminResponse(ok=True, text="No stale funnels.")
        return AdminResponse(
            ok=True,
            text="Stale funnels:\n" + "\n".join(_funnel_line(f) for f in funnels),
        )

    @staticmethod
    def _outcome_response(verb: str, target: int, outcome: GrantOutcome) -> AdminResponse:
        if not outcome.ok:
            return AdminResponse(ok=False, text=f"❌ {outcome.message}")
        grant = outcome.grant
        return AdminResponse(
            ok=True,
            text=(
                f"✅ {verb} user {target}: active={grant.is_active}, "
                f"expires {as_utc(grant.expires_at):%Y-%m-%d %H:%M} UTC"
            ),
            data={"user_id": str(target), "expires_at": as_utc(grant.expires_at).isoformat()},
        )
