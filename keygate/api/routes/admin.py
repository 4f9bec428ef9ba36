"""
keygate.api.routes.admin — Admin endpoints (JWT‑protected)
===========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from keygate.api.deps import get_console, get_current_admin
from keygate.api.routes.funnels import funnel_dict
from keygate.constants import as_utc
from keygate.services.access_service import GrantOutcome, RejectReason
from keygate.services.admin_console import MAX_STALE_HOURS, AdminConsole

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class GrantCreate(BaseModel):
    user_id: int = Field(gt=0)
    days: int | None = None
    notes: str | None = Field(default=None, max_length=500)


class DeactivateBody(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _grant_response(outcome: GrantOutcome) -> dict:
    if not outcome.ok:
        code = 404 if outcome.rejected is RejectReason.NO_GRANT else 400
        raise HTTPException(
            code, {"reason": outcome.rejected.value, "message": outcome.message},
        )
    grant = outcome.grant
    return {
        "user_id": str(grant.user_id),
        "granted_at": as_utc(grant.granted_at).isoformat(),
        "expires_at": as_utc(grant.expires_at).isoformat(),
        "is_active": grant.is_active,
        "granted_by": str(grant.granted_by),
        "notes": grant.notes,
        "changed": outcome.changed,
    }


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------
@router.get("/grants")
async def list_grants(
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    console: AdminConsole = Depends(get_console),
    _admin: dict = Depends(get_current_admin),
):
    """Grants ordered soonest-expiring first."""
    rows = await console.list_grants(limit, offset)
    return {"limit": limit, "offset": offset, "grants": [r.to_dict() for r in rows]}


@router.post("/grants")
async def create_grant(
    body: GrantCreate,
    console: AdminConsole = Depends(get_console),
    admin: dict = Depends(get_current_admin),
):
    """Grant (or re-grant) access.  Expiry becomes now + days."""
    outcome = await console.grant(admin["admin_id"], body.user_id, body.days, body.notes)
    return _grant_response(outcome)


@router.post("/grants/{user_id}/deactivate")
async def deactivate_grant(
    user_id: int,
    body: DeactivateBody | None = None,
    console: AdminConsole = Depends(get_console),
    admin: dict = Depends(get_current_admin),
):
    reason = body.reason if body is not None else None
    outcome = await console.deactivate(admin["admin_id"], user_id, reason)
    return _grant_response(outcome)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------
@router.get("/stats")
async def stats(
    console: AdminConsole = Depends(get_console),
    _admin: dict = Depends(get_current_admin),
):
    result = await console.stats()
    return result.to_dict()


@router.get("/funnels/stale")
async def stale_funnels(
    hours: int | None = Query(None, ge=1, le=MAX_STALE_HOURS),
    console: AdminConsole = Depends(get_console),
    _admin: dict = Depends(get_current_admin),
):
    """Open funnels untouched for at least *hours* (default from config)."""
    rows = await console.stale(hours)
    return {"funnels": [funnel_dict(f) for f in rows]}
