"""
keygate.services.funnel_store — Funnel Persistence
===================================================

Durable per-user funnel state.  Every step transition is a single
compare-and-set UPDATE::

    UPDATE funnel_states
       SET <field> = :value, current_step = :next, ...
     WHERE user_id = :user AND NOT is_completed AND current_step = :expected

so two deliveries of the same input can never advance a funnel twice.
The partial unique index on ``user_id WHERE NOT is_completed`` guarantees
at most one open funnel per user.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keygate.constants import utcnow
from keygate.database.models import FunnelState, FunnelStep
from keygate.engine.funnel import STEP_FIELDS, format_price
from keygate.services.key_store import KeySaveResult, save_in_session

logger = logging.getLogger(__name__)


class CasStatus(enum.StrEnum):
    APPLIED = "applied"
    STALE = "stale"        # open funnel exists but is on another step
    MISSING = "missing"    # no open funnel


@dataclass(frozen=True, slots=True)
class CasResult:
    status: CasStatus
    funnel: FunnelState | None = None


@dataclass(frozen=True, slots=True)
class Completion:
    """Funnel closed on the key step, with the key store's verdict."""

    funnel: FunnelState
    result: KeySaveResult


def key_metadata(funnel: FunnelState) -> dict:
    """Snapshot of the captured answers stored alongside a key."""
    return {
        "category": funnel.category,
        "geography": funnel.geography,
        "conversion_price": format_price(funnel.conversion_price),
    }


def _open_funnel_stmt(user_id: int):
    return select(FunnelState).where(
        FunnelState.user_id == user_id,
        FunnelState.is_completed.is_(False),
    )


def _load_open(session: Session, user_id: int) -> FunnelState | None:
    funnel = session.scalar(_open_funnel_stmt(user_id))
    if funnel is not None:
        session.expunge(funnel)
    return funnel


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_open_funnel(engine: Engine, user_id: int) -> FunnelState | None:
    with Session(engine) as session:
        return _load_open(session, user_id)


def get_user_funnel(engine: Engine, user_id: int) -> FunnelState | None:
    """The open funnel if any, else the most recently created one."""
    with Session(engine) as session:
        funnel = session.scalar(_open_funnel_stmt(user_id))
        if funnel is None:
            funnel = session.scalar(
                select(FunnelState)
                .where(FunnelState.user_id == user_id)
                .order_by(FunnelState.created_at.desc(), FunnelState.id.desc())
                .limit(1)
            )
        if funnel is not None:
            session.expunge(funnel)
        return funnel


def list_funnels(engine: Engine, limit: int = 50, offset: int = 0) -> list[FunnelState]:
    """Page of funnels, most recently touched first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(FunnelState)
            .order_by(FunnelState.updated_at.desc(), FunnelState.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        session.expunge_all()
        return list(rows)


def list_stale(
    engine: Engine,
    older_than: timedelta,
    now: datetime | None = None,
) -> list[FunnelState]:
    """Open funnels not touched within *older_than*.  Read-only."""
    cutoff = (now or utcnow()) - older_than
    with Session(engine) as session:
        rows = session.scalars(
            select(FunnelState)
            .where(
                FunnelState.is_completed.is_(False),
                FunnelState.updated_at < cutoff,
            )
            .order_by(FunnelState.updated_at)
        ).all()
        session.expunge_all()
        return list(rows)


def step_histogram(session: Session) -> dict[str, int]:
    """Open funnel counts per step, plus a ``completed`` total."""
    rows = session.execute(
        select(FunnelState.current_step, func.count().label("cnt"))
        .where(FunnelState.is_completed.is_(False))
        .group_by(FunnelState.current_step)
    ).all()
    histogram = {step.value: 0 for step in FunnelStep}
    for row in rows:
        histogram[row.current_step] = row.cnt
    histogram["completed"] = session.scalar(
        select(func.count()).select_from(FunnelState)
        .where(FunnelState.is_completed.is_(True))
    ) or 0
    return histogram


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def begin_funnel(
    engine: Engine,
    user_id: int,
    now: datetime | None = None,
) -> tuple[FunnelState, bool]:
    """Return ``(funnel, created)``.

    An open funnel is resumed unchanged.  Otherwise a new one starts at the
    category step; if a concurrent call wins the insert race, its row is
    returned instead.
    """
    now = now or utcnow()
    with Session(engine) as session:
        existing = _load_open(session, user_id)
        if existing is not None:
            return existing, False

        funnel = FunnelState(
            user_id=user_id,
            current_step=FunnelStep.CATEGORY.value,
            is_completed=False,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(funnel)
                session.flush()
        except IntegrityError:
            existing = _load_open(session, user_id)
            if existing is None:
                raise
            return existing, False
        session.commit()
        session.refresh(funnel)
        session.expunge(funnel)
        logger.info("Funnel %s started for user %s", funnel.id, user_id)
        return funnel, True


def _cas_update(
    session: Session,
    user_id: int,
    expected: FunnelStep,
    values: dict[str, Any],
) -> bool:
    result = session.execute(
        update(FunnelState)
        .where(
            FunnelState.user_id == user_id,
            FunnelState.is_completed.is_(False),
            FunnelState.current_step == expected.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _cas(
    engine: Engine,
    user_id: int,
    expected: FunnelStep,
    values: dict[str, Any],
) -> CasResult:
    with Session(engine) as session:
        applied = _cas_update(session, user_id, expected, values)
        session.commit()
        funnel = _load_open(session, user_id)
    if applied:
        return CasResult(CasStatus.APPLIED, funnel)
    if funnel is None:
        return CasResult(CasStatus.MISSING)
    return CasResult(CasStatus.STALE, funnel)


def advance_step(
    engine: Engine,
    user_id: int,
    expected: FunnelStep,
    value: Any,
    next_step: FunnelStep,
    *,
    input_id: str | None = None,
    now: datetime | None = None,
) -> CasResult:
    """Write *value* into the field of *expected* and move to *next_step*.

    Applies only if the open funnel is still on *expected*.
    """
    values = {
        STEP_FIELDS[expected]: value,
        "current_step": next_step.value,
        "last_input_id": input_id,
        "updated_at": now or utcnow(),
    }
    return _cas(engine, user_id, expected, values)


def retreat_step(
    engine: Engine,
    user_id: int,
    expected: FunnelStep,
    previous: FunnelStep,
    now: datetime | None = None,
) -> CasResult:
    """Move back one step.  Captured fields are kept for correction."""
    values = {
        "current_step": previous.value,
        "updated_at": now or utcnow(),
    }
    return _cas(engine, user_id, expected, values)


def discard_open_funnel(
    engine: Engine,
    user_id: int,
    expected: FunnelStep = FunnelStep.CATEGORY,
) -> bool:
    """Delete the open funnel if it is still on *expected*."""
    with Session(engine) as session:
        result = session.execute(
            delete(FunnelState)
            .where(
                FunnelState.user_id == user_id,
                FunnelState.is_completed.is_(False),
                FunnelState.current_step == expected.value,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1


def complete_with_key(
    engine: Engine,
    user_id: int,
    key_text: str,
    *,
    input_id: str | None = None,
    now: datetime | None = None,
) -> Completion | CasResult:
    """Close the funnel on the key step and store the key, in one transaction.

    Fresh and duplicate keys both close the funnel.  If the funnel is no
    longer on the key step, nothing is written and the current state is
    returned as a :class:`CasResult`.
    """
    now = now or utcnow()
    with Session(engine) as session:
        funnel = session.scalar(
            _open_funnel_stmt(user_id).where(
                FunnelState.current_step == FunnelStep.KEY.value
            )
        )
        if funnel is None:
            current = _load_open(session, user_id)
            status = CasStatus.STALE if current is not None else CasStatus.MISSING
            return CasResult(status, current)

        applied = _cas_update(session, user_id, FunnelStep.KEY, {
            "submitted_key": key_text,
            "is_completed": True,
            "last_input_id": input_id,
            "updated_at": now,
        })
        if not applied:
            session.rollback()
            current = _load_open(session, user_id)
            status = CasStatus.STALE if current is not None else CasStatus.MISSING
            return CasResult(status, current)

        result = save_in_session(
            session,
            user_id=user_id,
            key_text=key_text,
            platform=funnel.source_platform or "Other",
            metadata=key_metadata(funnel),
            now=now,
        )
        session.commit()
        session.refresh(funnel)
        session.expunge(funnel)

    logger.info(
        "Funnel %s completed for user %s (%s)",
        funnel.id, user_id, type(result).__name__.lower(),
    )
    return Completion(funnel=funnel, result=result)

