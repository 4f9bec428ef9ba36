"""
keygate.engine.access — Access Decision
========================================

Pure decision function.  No Discord I/O, no DB I/O inside the engine:
the caller loads the grant and passes it in along with ``now`` and the
administrator flag.

    grant (or None) + is_admin + now → AccessDecision
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from keygate.constants import UNLIMITED_DAYS, as_utc

_ONE_DAY = timedelta(days=1)


class AccessReason(enum.StrEnum):
    """Why a decision came out the way it did."""
    ADMIN = "admin"
    GRANTED = "granted"
    NO_GRANT = "no_grant"
    EXPIRED = "expired"
    DEACTIVATED = "deactivated"
    # Store unreachable.  Not a denial: callers show a transient error.
    UNAVAILABLE = "unavailable"


class GrantLike(Protocol):
    is_active: bool
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Outcome of an access check."""

    allowed: bool
    days_remaining: int = 0
    expires_at: datetime | None = None
    reason: AccessReason = AccessReason.NO_GRANT

    @property
    def unavailable(self) -> bool:
        return self.reason is AccessReason.UNAVAILABLE


def days_remaining(expires_at: datetime, now: datetime) -> int:
    """Whole days left, rounded up.  Never negative."""
    left = as_utc(expires_at) - as_utc(now)
    if left <= timedelta(0):
        return 0
    return math.ceil(left / _ONE_DAY)


def decide(grant: GrantLike | None, *, is_admin: bool, now: datetime) -> AccessDecision:
    """Return the access decision for one user at instant *now*.

    Validity is ``is_active and expires_at > now``; the boundary instant
    itself is already expired.
    """
    if is_admin:
        return AccessDecision(
            allowed=True,
            days_remaining=UNLIMITED_DAYS,
            reason=AccessReason.ADMIN,
        )

    if grant is None:
        return AccessDecision(allowed=False, reason=AccessReason.NO_GRANT)

    expires_at = as_utc(grant.expires_at)
    remaining = days_remaining(expires_at, now)

    if not grant.is_active:
        reason = AccessReason.DEACTIVATED
    elif expires_at <= as_utc(now):
        reason = AccessReason.EXPIRED
    else:
        return AccessDecision(
            allowed=True,
            days_remaining=remaining,
            expires_at=expires_at,
            reason=AccessReason.GRANTED,
        )

    return AccessDecision(
        allowed=False,
        days_remaining=remaining,
        expires_at=expires_at,
        reason=reason,
    )


def unavailable() -> AccessDecision:
    """Fail-closed decision used when the grant could not be loaded."""
    return AccessDecision(allowed=False, reason=AccessReason.UNAVAILABLE)
