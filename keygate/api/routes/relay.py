"""
keygate.api.routes.relay — Notification relay endpoints
========================================================

Used by upstream systems (the analytics pipeline) to push a message to a
user.  Delivery is best-effort: a failed DM is reported in the response
body, never as a server error.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from keygate.api.deps import get_relay
from keygate.services.relay import (
    MAX_MESSAGE_LENGTH,
    CampaignSummary,
    NotificationRelay,
    ProcessingStatus,
    RelayResult,
    notify,
    results_message,
    status_message,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/relay", tags=["relay"])


class RelayRequest(BaseModel):
    user_id: int = Field(gt=0)
    text: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)


class StatusRequest(BaseModel):
    user_id: int = Field(gt=0)
    status: ProcessingStatus
    details: str | None = Field(default=None, max_length=1000)


class CampaignIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    roi: float = Field(allow_inf_nan=False)


class ResultsRequest(BaseModel):
    user_id: int = Field(gt=0)
    campaigns_count: int = Field(ge=0)
    period: str | None = Field(default=None, max_length=100)
    top_campaigns: list[CampaignIn] = Field(default_factory=list, max_length=50)
    recommendations: list[str] = Field(default_factory=list, max_length=20)


def _result_dict(result: RelayResult) -> dict:
    return {"delivered": result.delivered, "reason": result.reason}


@router.post("")
async def relay_message(
    body: RelayRequest,
    relay: NotificationRelay = Depends(get_relay),
):
    """Deliver free text to a user."""
    result = await notify(relay, body.user_id, body.text)
    logger.info("Relay → %s delivered=%s", body.user_id, result.delivered)
    return _result_dict(result)


@router.post("/status")
async def relay_status(
    body: StatusRequest,
    relay: NotificationRelay = Depends(get_relay),
):
    """Deliver one of the canned processing-status messages."""
    result = await notify(relay, body.user_id, status_message(body.status, body.details))
    logger.info(
        "Relay status %s → %s delivered=%s",
        body.status.value, body.user_id, result.delivered,
    )
    return _result_dict(result)


@router.post("/results")
async def relay_results(
    body: ResultsRequest,
    relay: NotificationRelay = Depends(get_relay),
):
    """Deliver a finished analytics summary, best campaigns first."""
    text = results_message(
        body.campaigns_count,
        [CampaignSummary(c.name, c.roi) for c in body.top_campaigns],
        body.recommendations,
        body.period,
    )
    result = await notify(relay, body.user_id, text)
    logger.info("Relay results → %s delivered=%s", body.user_id, result.delivered)
    return _result_dict(result)
