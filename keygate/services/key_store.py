"""
keygate.services.key_store — Submitted Key Storage
===================================================

Append-only store of submitted API keys.  The ``(user_id, key_text)``
unique constraint is the arbiter for duplicates: inserts run inside a
SAVEPOINT and an ``IntegrityError`` means the key was already stored, so
two overlapping submissions of the same key can never both succeed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from keygate.constants import as_utc, utcnow
from keygate.database.models import StoredKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Saved:
    """The key was stored for the first time."""

    at: datetime
    key_id: int


@dataclass(frozen=True, slots=True)
class Duplicate:
    """The same user already stored this exact key at *since*."""

    since: datetime


KeySaveResult = Saved | Duplicate


def save_in_session(
    session: Session,
    *,
    user_id: int,
    key_text: str,
    platform: str,
    metadata: dict,
    now: datetime,
) -> KeySaveResult:
    """Insert a key inside the caller's transaction.

    Used by funnel completion so the funnel close and the key insert
    commit together.
    """
    row = StoredKey(
        user_id=user_id,
        key_text=key_text,
        source_platform=platform,
        metadata_=json.dumps(metadata, sort_keys=True),
        created_at=now,
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(row)
            session.flush()
    except IntegrityError:
        # The SAVEPOINT was rolled back; the outer txn is still alive.
        since = session.scalar(
            select(StoredKey.created_at).where(
                StoredKey.user_id == user_id,
                StoredKey.key_text == key_text,
            )
        )
        if since is None:
            raise
        logger.info("Duplicate key submission from user %s", user_id)
        return Duplicate(since=as_utc(since))
    return Saved(at=now, key_id=row.id)


def try_save(
    engine: Engine,
    user_id: int,
    key_text: str,
    platform: str,
    metadata: dict,
    now: datetime | None = None,
) -> KeySaveResult:
    """Standalone insert: ``Saved`` on first sight, ``Duplicate`` after."""
    now = now or utcnow()
    with Session(engine) as session:
        result = save_in_session(
            session,
            user_id=user_id,
            key_text=key_text,
            platform=platform,
            metadata=metadata,
            now=now,
        )
        session.commit()
        return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def count_keys(engine: Engine, user_id: int) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(StoredKey).where(StoredKey.user_id == user_id)
        ) or 0


def count_by_platform(session: Session, user_id: int | None = None) -> dict[str, int]:
    """Key counts grouped by source platform, optionally for one user."""
    stmt = select(StoredKey.source_platform, func.count().label("cnt"))
    if user_id is not None:
        stmt = stmt.where(StoredKey.user_id == user_id)
    rows = session.execute(stmt.group_by(StoredKey.source_platform)).all()
    return {row.source_platform: row.cnt for row in rows}


def key_counts_for_users(session: Session, user_ids: list[int]) -> dict[int, int]:
    """Total stored keys per user for the given ids."""
    if not user_ids:
        return {}
    rows = session.execute(
        select(StoredKey.user_id, func.count().label("cnt"))
        .where(StoredKey.user_id.in_(user_ids))
        .group_by(StoredKey.user_id)
    ).all()
    return {row.user_id: row.cnt for row in rows}
