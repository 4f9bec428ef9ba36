"""
keygate.services.access_service — Access Grants & Gate
=======================================================

Durable access grants and the fail-closed gate in front of the funnel.

Every admin write follows the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSONB
  5. Commit

Administrators never get a row here: they are resolved from config through
the ``is_admin`` predicate and bypass grants entirely.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from keygate.constants import as_utc, utcnow
from keygate.database.models import AccessGrant, AdminActionType, AdminLog
from keygate.engine.access import AccessDecision, decide, unavailable

logger = logging.getLogger(__name__)

# Upper bound keeps now + days inside datetime range
MAX_GRANT_DAYS = 36500


class RejectReason(enum.StrEnum):
    SELF_GRANT = "self_grant"
    ADMIN_TARGET = "admin_target"
    INVALID_DAYS = "invalid_days"
    NO_GRANT = "no_grant"


REJECT_MESSAGES: dict[RejectReason, str] = {
    RejectReason.SELF_GRANT: "Administrators cannot grant access to themselves.",
    RejectReason.ADMIN_TARGET: "Target is an administrator and never needs a grant.",
    RejectReason.INVALID_DAYS: f"Days must be between 1 and {MAX_GRANT_DAYS}.",
    RejectReason.NO_GRANT: "Target has no access grant.",
}


@dataclass(frozen=True, slots=True)
class GrantOutcome:
    """Result of an admin mutation on access_grants."""

    ok: bool
    grant: AccessGrant | None = None
    rejected: RejectReason | None = None
    # False when the call was a no-op (e.g. deactivating an inactive grant)
    changed: bool = True

    @property
    def message(self) -> str:
        if self.rejected is None:
            return ""
        return REJECT_MESSAGES[self.rejected]


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------
def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = as_utc(val).isoformat()
        elif isinstance(val, Decimal):
            val = str(val)
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: AdminActionType,
    target_user_id: int | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type.value,
        target_user_id=target_user_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
        timestamp=now or utcnow(),
    ))


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_grant(engine: Engine, user_id: int) -> AccessGrant | None:
    with Session(engine, expire_on_commit=False) as session:
        return session.scalar(
            select(AccessGrant).where(AccessGrant.user_id == user_id)
        )


def check_access(
    engine: Engine,
    user_id: int,
    *,
    is_admin: Callable[[int], bool],
    now: datetime | None = None,
) -> AccessDecision:
    """Decide whether *user_id* may use the funnel right now.

    Read-only.  If the store cannot be reached the decision fails closed
    with reason ``unavailable`` so callers can tell an outage apart from a
    missing subscription.
    """
    now = now or utcnow()
    if is_admin(user_id):
        return decide(None, is_admin=True, now=now)
    try:
        grant = get_grant(engine, user_id)
    except SQLAlchemyError:
        logger.exception(
            "Access check failed — store unavailable",
            extra={"user_id": user_id},
        )
        return unavailable()
    return decide(grant, is_admin=False, now=now)


# ---------------------------------------------------------------------------
# Admin mutations
# ---------------------------------------------------------------------------
def _reject_target(
    admin_id: int, target_id: int, is_admin: Callable[[int], bool]
) -> RejectReason | None:
    if target_id == admin_id:
        return RejectReason.SELF_GRANT
    if is_admin(target_id):
        return RejectReason.ADMIN_TARGET
    return None


def _select_grant(session: Session, user_id: int) -> AccessGrant | None:
    return session.scalar(
        select(AccessGrant)
        .where(AccessGrant.user_id == user_id)
        .with_for_update()
    )


def grant_access(
    engine: Engine,
    admin_id: int,
    target_id: int,
    days: int = 30,
    notes: str | None = None,
    *,
    is_admin: Callable[[int], bool],
    now: datetime | None = None,
    action: AdminActionType = AdminActionType.GRANT,
) -> GrantOutcome:
    """Upsert the grant for *target_id* so it expires at ``now + days``.

    Repeating the call does not stack days.  ``granted_at`` is reset only
    when the previous grant had already expired.  Self-grants and grants to
    any administrator are rejected without touching the table.
    """
    rejected = _reject_target(admin_id, target_id, is_admin)
    if rejected is not None:
        return GrantOutcome(ok=False, rejected=rejected)
    if days < 1 or days > MAX_GRANT_DAYS:
        return GrantOutcome(ok=False, rejected=RejectReason.INVALID_DAYS)

    now = now or utcnow()
    expires_at = now + timedelta(days=days)

    with Session(engine, expire_on_commit=False) as session:
        grant = _select_grant(session, target_id)
        before = _row_to_dict(grant)

        if grant is None:
            grant = AccessGrant(
                user_id=target_id,
                granted_at=now,
                expires_at=expires_at,
                is_active=True,
                granted_by=admin_id,
                notes=notes,
                updated_at=now,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(grant)
                    session.flush()
            except IntegrityError:
                # A concurrent grant created the row first; update it instead.
                grant = _select_grant(session, target_id)
                if grant is None:
                    raise
                before = _row_to_dict(grant)

        if before is not None:
            if as_utc(grant.expires_at) <= now:
                grant.granted_at = now
            grant.expires_at = expires_at
            grant.is_active = True
            grant.granted_by = admin_id
            if notes is not None:
                grant.notes = notes
            grant.updated_at = now
            session.flush()

        _log_admin_action(
            session,
            actor_id=admin_id,
            action_type=action,
            target_user_id=target_id,
            before=before,
            after=_row_to_dict(grant),
            reason=notes,
            now=now,
        )
        session.commit()
        session.expunge(grant)

    logger.info(
        "%s: admin %s → user %s for %d days (expires %s)",
        action.value, admin_id, target_id, days, expires_at.isoformat(),
    )
    return GrantOutcome(ok=True, grant=grant)


def extend_access(
    engine: Engine,
    admin_id: int,
    target_id: int,
    days: int,
    *,
    is_admin: Callable[[int], bool],
    now: datetime | None = None,
) -> GrantOutcome:
    """Extension uses grant semantics: expiry becomes ``now + days``."""
    return grant_access(
        engine, admin_id, target_id, days,
        is_admin=is_admin, now=now, action=AdminActionType.EXTEND,
    )


def deactivate_access(
    engine: Engine,
    admin_id: int,
    target_id: int,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> GrantOutcome:
    """Flip ``is_active`` off.  ``expires_at`` is left untouched."""
    now = now or utcnow()
    with Session(engine, expire_on_commit=False) as session:
        grant = _select_grant(session, target_id)
        if grant is None:
            return GrantOutcome(ok=False, rejected=RejectReason.NO_GRANT)
        if not grant.is_active:
            session.expunge(grant)
            return GrantOutcome(ok=True, grant=grant, changed=False)

        before = _row_to_dict(grant)
        grant.is_active = False
        grant.updated_at = now
        session.flush()
        _log_admin_action(
            session,
            actor_id=admin_id,
            action_type=AdminActionType.DEACTIVATE,
            target_user_id=target_id,
            before=before,
            after=_row_to_dict(grant),
            reason=reason,
            now=now,
        )
        session.commit()
        session.expunge(grant)

    logger.info("DEACTIVATE: admin %s → user %s (%s)", admin_id, target_id, reason or "-")
    return GrantOutcome(ok=True, grant=grant)
