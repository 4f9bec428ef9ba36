"""
keygate.services.user_service — Known Users & Status Summary
=============================================================

Keeps a small directory of chat users (id → display name) for admin
listings, and builds the "My status" summary shown to subscribers.
Nothing here feeds an access decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keygate.constants import UNLIMITED_DAYS, utcnow
from keygate.database.models import FunnelStep, KnownUser
from keygate.engine.access import AccessDecision
from keygate.services import funnel_store
from keygate.services.key_store import count_by_platform

logger = logging.getLogger(__name__)

_NAME_MAX = 100


def touch_user(
    engine: Engine,
    user_id: int,
    display_name: str,
    now: datetime | None = None,
) -> None:
    """Insert or refresh the directory row for *user_id*."""
    now = now or utcnow()
    name = (display_name or str(user_id))[:_NAME_MAX]
    with Session(engine) as session:
        user = session.get(KnownUser, user_id)
        if user is None:
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(KnownUser(
                        id=user_id, display_name=name,
                        first_seen_at=now, last_seen_at=now,
                    ))
                    session.flush()
            except IntegrityError:
                user = session.get(KnownUser, user_id)
        if user is not None:
            user.display_name = name
            user.last_seen_at = now
        session.commit()


def display_names(session: Session, user_ids: list[int]) -> dict[int, str]:
    if not user_ids:
        return {}
    rows = session.execute(
        select(KnownUser.id, KnownUser.display_name).where(KnownUser.id.in_(user_ids))
    ).all()
    return {row.id: row.display_name for row in rows}


# ---------------------------------------------------------------------------
# Status summary
# ---------------------------------------------------------------------------
@dataclass
class UserStatus:
    user_id: int
    decision: AccessDecision
    keys_by_platform: dict[str, int] = field(default_factory=dict)
    open_step: FunnelStep | None = None

    @property
    def total_keys(self) -> int:
        return sum(self.keys_by_platform.values())


def build_status(engine: Engine, user_id: int, decision: AccessDecision) -> UserStatus:
    with Session(engine) as session:
        by_platform = count_by_platform(session, user_id)
    funnel = funnel_store.get_open_funnel(engine, user_id)
    return UserStatus(
        user_id=user_id,
        decision=decision,
        keys_by_platform=by_platform,
        open_step=FunnelStep(funnel.current_step) if funnel is not None else None,
    )


def format_status(status: UserStatus) -> str:
    decision = status.decision
    lines = ["\U0001f4ca **Your status**"]
    if decision.days_remaining >= UNLIMITED_DAYS:
        lines.append("Access: unlimited (administrator)")
    elif decision.allowed and decision.expires_at is not None:
        lines.append(
            f"Access: active, {decision.days_remaining} day(s) left "
            f"(until {decision.expires_at:%Y-%m-%d})"
        )
    else:
        lines.append("Access: inactive")

    lines.append(f"Keys submitted: {status.total_keys}")
    for platform, count in sorted(status.keys_by_platform.items()):
        lines.append(f"  • {platform}: {count}")
    if status.open_step is not None:
        lines.append(f"Submission in progress: step '{status.open_step.value}'")
    return "\n".join(lines)
