"""
tests/test_access_service.py — Grant lifecycle and gate tests
==============================================================
Tests for keygate.services.access_service against in-memory SQLite.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

from conftest import ADMIN_ID, NOW, OTHER_ADMIN_ID, USER_ID
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from keygate.constants import as_utc
from keygate.database.models import AccessGrant, AdminLog
from keygate.engine.access import AccessReason
from keygate.services.access_service import (
    RejectReason,
    check_access,
    deactivate_access,
    extend_access,
    get_grant,
    grant_access,
)


def _grant(engine, cfg, days=30, now=NOW, **kw):
    return grant_access(engine, ADMIN_ID, USER_ID, days, is_admin=cfg.is_admin, now=now, **kw)


def _log_rows(engine) -> list[AdminLog]:
    with Session(engine) as session:
        return list(session.scalars(select(AdminLog).order_by(AdminLog.id)))


def _grant_count(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(AccessGrant))


# ---------------------------------------------------------------------------
# Granting
# ---------------------------------------------------------------------------
class TestGrantAccess:
    def test_creates_grant(self, db_engine, cfg):
        outcome = _grant(db_engine, cfg, notes="trial")
        assert outcome.ok
        grant = get_grant(db_engine, USER_ID)
        assert grant.is_active
        assert as_utc(grant.expires_at) == NOW + timedelta(days=30)
        assert as_utc(grant.granted_at) == NOW
        assert grant.granted_by == ADMIN_ID
        assert grant.notes == "trial"

    def test_grant_is_idempotent(self, db_engine, cfg):
        _grant(db_engine, cfg)
        _grant(db_engine, cfg)
        assert _grant_count(db_engine) == 1
        grant = get_grant(db_engine, USER_ID)
        assert as_utc(grant.expires_at) == NOW + timedelta(days=30)

    def test_regrant_does_not_stack_days(self, db_engine, cfg):
        _grant(db_engine, cfg, days=30)
        later = NOW + timedelta(days=10)
        _grant(db_engine, cfg, days=30, now=later)
        grant = get_grant(db_engine, USER_ID)
        assert as_utc(grant.expires_at) == later + timedelta(days=30)
        # Still valid at the time of the regrant, so the start date is kept
        assert as_utc(grant.granted_at) == NOW

    def test_regrant_after_expiry_resets_granted_at(self, db_engine, cfg):
        _grant(db_engine, cfg, days=1)
        later = NOW + timedelta(days=5)
        _grant(db_engine, cfg, days=7, now=later)
        grant = get_grant(db_engine, USER_ID)
        assert as_utc(grant.granted_at) == later

    def test_regrant_reactivates(self, db_engine, cfg):
        _grant(db_engine, cfg)
        deactivate_access(db_engine, ADMIN_ID, USER_ID, now=NOW)
        _grant(db_engine, cfg)
        assert get_grant(db_engine, USER_ID).is_active

    def test_notes_kept_when_omitted(self, db_engine, cfg):
        _grant(db_engine, cfg, notes="vip")
        _grant(db_engine, cfg)
        assert get_grant(db_engine, USER_ID).notes == "vip"

    def test_self_grant_rejected(self, db_engine, cfg):
        outcome = grant_access(
            db_engine, ADMIN_ID, ADMIN_ID, 30, is_admin=cfg.is_admin, now=NOW,
        )
        assert not outcome.ok
        assert outcome.rejected is RejectReason.SELF_GRANT
        assert outcome.message
        assert _grant_count(db_engine) == 0
        assert _log_rows(db_engine) == []

    def test_admin_target_rejected(self, db_engine, cfg):
        outcome = grant_access(
            db_engine, ADMIN_ID, OTHER_ADMIN_ID, 30, is_admin=cfg.is_admin, now=NOW,
        )
        assert outcome.rejected is RejectReason.ADMIN_TARGET
        assert _grant_count(db_engine) == 0

    def test_invalid_days_rejected(self, db_engine, cfg):
        assert _grant(db_engine, cfg, days=0).rejected is RejectReason.INVALID_DAYS
        assert _grant(db_engine, cfg, days=-5).rejected is RejectReason.INVALID_DAYS
        assert _grant(db_engine, cfg, days=36501).rejected is RejectReason.INVALID_DAYS
        assert _grant_count(db_engine) == 0


class TestExtendAndDeactivate:
    def test_extend_logs_extend(self, db_engine, cfg):
        _grant(db_engine, cfg)
        outcome = extend_access(
            db_engine, ADMIN_ID, USER_ID, 60, is_admin=cfg.is_admin, now=NOW,
        )
        assert outcome.ok
        assert as_utc(get_grant(db_engine, USER_ID).expires_at) == NOW + timedelta(days=60)
        assert [row.action_type for row in _log_rows(db_engine)] == ["GRANT", "EXTEND"]

    def test_deactivate_keeps_expiry(self, db_engine, cfg):
        _grant(db_engine, cfg)
        outcome = deactivate_access(db_engine, ADMIN_ID, USER_ID, "abuse", now=NOW)
        assert outcome.ok and outcome.changed
        grant = get_grant(db_engine, USER_ID)
        assert not grant.is_active
        assert as_utc(grant.expires_at) == NOW + timedelta(days=30)

    def test_deactivate_twice_is_noop(self, db_engine, cfg):
        _grant(db_engine, cfg)
        deactivate_access(db_engine, ADMIN_ID, USER_ID, now=NOW)
        outcome = deactivate_access(db_engine, ADMIN_ID, USER_ID, now=NOW)
        assert outcome.ok
        assert not outcome.changed
        assert len(_log_rows(db_engine)) == 2

    def test_deactivate_missing(self, db_engine):
        outcome = deactivate_access(db_engine, ADMIN_ID, USER_ID, now=NOW)
        assert outcome.rejected is RejectReason.NO_GRANT


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------
class TestAdminLog:
    def test_snapshots(self, db_engine, cfg):
        _grant(db_engine, cfg, notes="first")
        deactivate_access(db_engine, ADMIN_ID, USER_ID, "chargeback", now=NOW)
        grant_row, deactivate_row = _log_rows(db_engine)

        assert grant_row.actor_id == ADMIN_ID
        assert grant_row.target_user_id == USER_ID
        assert grant_row.before_snapshot is None
        assert grant_row.after_snapshot["is_active"] is True

        assert deactivate_row.action_type == "DEACTIVATE"
        assert deactivate_row.reason == "chargeback"
        assert deactivate_row.before_snapshot["is_active"] is True
        assert deactivate_row.after_snapshot["is_active"] is False


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------
class TestCheckAccess:
    def test_admin_bypasses_store(self, db_engine, cfg):
        decision = check_access(db_engine, ADMIN_ID, is_admin=cfg.is_admin, now=NOW)
        assert decision.allowed
        assert decision.reason is AccessReason.ADMIN

    def test_no_grant(self, db_engine, cfg):
        decision = check_access(db_engine, USER_ID, is_admin=cfg.is_admin, now=NOW)
        assert not decision.allowed
        assert decision.reason is AccessReason.NO_GRANT

    def test_granted(self, db_engine, cfg):
        _grant(db_engine, cfg, days=30)
        decision = check_access(db_engine, USER_ID, is_admin=cfg.is_admin, now=NOW)
        assert decision.allowed
        assert decision.days_remaining == 30

    def test_expired_at_boundary(self, db_engine, cfg):
        _grant(db_engine, cfg, days=30)
        boundary = NOW + timedelta(days=30)
        decision = check_access(db_engine, USER_ID, is_admin=cfg.is_admin, now=boundary)
        assert not decision.allowed
        assert decision.reason is AccessReason.EXPIRED

    def test_store_failure_fails_closed(self, db_engine, cfg):
        with patch(
            "keygate.services.access_service.get_grant",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            decision = check_access(db_engine, USER_ID, is_admin=cfg.is_admin, now=NOW)
        assert not decision.allowed
        assert decision.unavailable
