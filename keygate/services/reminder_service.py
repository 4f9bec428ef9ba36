"""
keygate.services.reminder_service — Courtesy Reminders
=======================================================

Entry points called by an external timer (the bot's ``tasks`` cog):

- :func:`send_expiry_reminders` — warns subscribers whose grant runs out
  within 3 days, and again within 1 day.
- :func:`remind_stale_funnels` — nudges users who left a key submission
  half-way.

Each reminder is claimed in the ``notices`` table *before* it is sent, so
overlapping runs never double-send.  The reference is the grant's expiry
(or the funnel id): renewing a grant produces a fresh reference and fresh
reminders.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keygate.constants import MENU_SUBMIT_KEY, as_utc, utcnow
from keygate.database.engine import run_db
from keygate.database.models import AccessGrant, Notice, NoticeKind
from keygate.services import funnel_store
from keygate.services.relay import NotificationRelay, notify

logger = logging.getLogger(__name__)

EXPIRY_WINDOWS: tuple[tuple[NoticeKind, timedelta], ...] = (
    (NoticeKind.EXPIRE_1DAY, timedelta(days=1)),
    (NoticeKind.EXPIRE_3DAYS, timedelta(days=3)),
)


def claim_notice(
    engine: Engine,
    user_id: int,
    kind: NoticeKind,
    reference: str,
    now: datetime | None = None,
) -> bool:
    """Record that a reminder is being sent.  False if already claimed."""
    with Session(engine) as session:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(Notice(
                    user_id=user_id,
                    kind=kind.value,
                    reference=reference,
                    sent_at=now or utcnow(),
                ))
                session.flush()
        except IntegrityError:
            return False
        session.commit()
        return True


def expiring_grants(
    engine: Engine, now: datetime, within: timedelta,
) -> list[tuple[int, datetime]]:
    """Active grants with ``now < expires_at <= now + within``."""
    with Session(engine) as session:
        rows = session.execute(
            select(AccessGrant.user_id, AccessGrant.expires_at)
            .where(
                AccessGrant.is_active.is_(True),
                AccessGrant.expires_at > now,
                AccessGrant.expires_at <= now + within,
            )
            .order_by(AccessGrant.expires_at)
        ).all()
        return [(row.user_id, as_utc(row.expires_at)) for row in rows]


def _expiry_kind(expires_at: datetime, now: datetime) -> NoticeKind | None:
    for kind, window in EXPIRY_WINDOWS:
        if expires_at - now <= window:
            return kind
    return None


def _expiry_text(kind: NoticeKind, expires_at: datetime, support_contact: str) -> str:
    when = "tomorrow" if kind is NoticeKind.EXPIRE_1DAY else "in less than 3 days"
    text = f"⏳ Your access expires {when} ({expires_at:%Y-%m-%d %H:%M} UTC)."
    if support_contact:
        text += f" Contact {support_contact} to renew."
    return text


async def send_expiry_reminders(
    engine: Engine,
    relay: NotificationRelay | None,
    now: datetime | None = None,
    support_contact: str = "",
) -> int:
    """Send due expiry reminders.  Returns how many were claimed."""
    now = now or utcnow()
    _, widest = EXPIRY_WINDOWS[-1]
    grants = await run_db(expiring_grants, engine, now, widest)

    sent = 0
    for user_id, expires_at in grants:
        kind = _expiry_kind(expires_at, now)
        if kind is None:
            continue
        claimed = await run_db(
            claim_notice, engine, user_id, kind, expires_at.isoformat(), now,
        )
        if not claimed:
            continue
        await notify(relay, user_id, _expiry_text(kind, expires_at, support_contact))
        sent += 1

    if sent:
        logger.info("Expiry reminders sent: %d", sent)
    return sent


async def remind_stale_funnels(
    engine: Engine,
    relay: NotificationRelay | None,
    older_than: timedelta,
    now: datetime | None = None,
) -> int:
    """Nudge each stale open funnel once.  Returns how many were claimed."""
    now = now or utcnow()
    funnels = await run_db(funnel_store.list_stale, engine, older_than, now)

    sent = 0
    for funnel in funnels:
        claimed = await run_db(
            claim_notice, engine, funnel.user_id, NoticeKind.STALE_FUNNEL,
            str(funnel.id), now,
        )
        if not claimed:
            continue
        await notify(
            relay, funnel.user_id,
            f"\U0001f511 You have an unfinished key submission (step "
            f"'{funnel.current_step}'). Send \"{MENU_SUBMIT_KEY}\" to continue.",
        )
        sent += 1

    if sent:
        logger.info("Stale-funnel reminders sent: %d", sent)
    return sent
