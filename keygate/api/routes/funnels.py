"""
keygate.api.routes.funnels — Read-only funnel queries (JWT‑protected)
======================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import Engine

from keygate.api.deps import get_current_admin, get_engine
from keygate.constants import as_utc, mask_key
from keygate.database.engine import run_db
from keygate.database.models import FunnelState
from keygate.engine.funnel import format_price
from keygate.services import funnel_store
from keygate.services.key_store import count_keys

router = APIRouter(prefix="/funnels", tags=["funnels"])


def funnel_dict(funnel: FunnelState) -> dict:
    """Serialize a funnel.  The submitted key is masked."""
    return {
        "id": funnel.id,
        "user_id": str(funnel.user_id),
        "category": funnel.category,
        "geography": funnel.geography,
        "source_platform": funnel.source_platform,
        "conversion_price": format_price(funnel.conversion_price),
        "submitted_key": mask_key(funnel.submitted_key),
        "current_step": funnel.current_step,
        "is_completed": funnel.is_completed,
        "created_at": as_utc(funnel.created_at).isoformat(),
        "updated_at": as_utc(funnel.updated_at).isoformat(),
    }


@router.get("")
async def list_funnels(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: Engine = Depends(get_engine),
    _admin: dict = Depends(get_current_admin),
):
    rows = await run_db(funnel_store.list_funnels, engine, limit, offset)
    return {
        "limit": limit,
        "offset": offset,
        "funnels": [funnel_dict(f) for f in rows],
    }


@router.get("/{user_id}")
async def get_user_funnel(
    user_id: int,
    engine: Engine = Depends(get_engine),
    _admin: dict = Depends(get_current_admin),
):
    """The user's open funnel, or their latest completed one."""
    funnel = await run_db(funnel_store.get_user_funnel, engine, user_id)
    if funnel is None:
        raise HTTPException(404, "No funnel for this user")
    key_count = await run_db(count_keys, engine, user_id)
    return {**funnel_dict(funnel), "key_count": key_count}
