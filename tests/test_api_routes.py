"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Relay, funnel queries and admin endpoints through the FastAPI TestClient,
with the engine, config and relay dependencies swapped for test doubles.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from conftest import ADMIN_ID, NOW, USER_ID, FakeRelay, make_admin_token
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from keygate.api.deps import get_config, get_engine, get_relay
from keygate.constants import as_utc
from keygate.database.models import FunnelStep
from keygate.services.access_service import get_grant, grant_access
from keygate.services.funnel_store import advance_step, begin_funnel, complete_with_key

KEY = "sk_live_" + "Qw3rTy9u" * 4


@pytest.fixture
def client(db_engine, cfg, relay):
    """TestClient with DB, config and relay overridden."""
    from keygate.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: cfg
    app.dependency_overrides[get_relay] = lambda: relay
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> dict:
    return _auth(make_admin_token())


def _completed_funnel(engine, user_id=USER_ID):
    begin_funnel(engine, user_id, now=NOW)
    advance_step(engine, user_id, FunnelStep.CATEGORY, "Gambling", FunnelStep.GEOGRAPHY, now=NOW)
    advance_step(engine, user_id, FunnelStep.GEOGRAPHY, "BR", FunnelStep.SOURCE, now=NOW)
    advance_step(engine, user_id, FunnelStep.SOURCE, "TikTok", FunnelStep.PRICE, now=NOW)
    advance_step(engine, user_id, FunnelStep.PRICE, Decimal("12.30"), FunnelStep.KEY, now=NOW)
    complete_with_key(engine, user_id, KEY, now=NOW)


# ===========================================================================
# Health
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Relay
# ===========================================================================
class TestRelayEndpoints:
    def test_relay_text(self, client, relay):
        resp = client.post("/api/relay", json={"user_id": USER_ID, "text": "report ready"})
        assert resp.status_code == 200
        assert resp.json() == {"delivered": True, "reason": None}
        assert relay.sent == [(USER_ID, "report ready")]

    def test_relay_failure_is_reported_not_raised(self, client):
        from keygate.api.main import app

        app.dependency_overrides[get_relay] = lambda: FakeRelay(deliver=False)
        resp = client.post("/api/relay", json={"user_id": USER_ID, "text": "hi"})
        assert resp.status_code == 200
        assert resp.json() == {"delivered": False, "reason": "dm_closed"}

    def test_relay_validates_body(self, client):
        assert client.post("/api/relay", json={"user_id": USER_ID, "text": ""}).status_code == 422
        assert client.post("/api/relay", json={"user_id": 0, "text": "x"}).status_code == 422
        too_long = "x" * 2001
        assert client.post(
            "/api/relay", json={"user_id": USER_ID, "text": too_long},
        ).status_code == 422

    def test_relay_status(self, client, relay):
        resp = client.post(
            "/api/relay/status",
            json={"user_id": USER_ID, "status": "completed", "details": "Open the dashboard."},
        )
        assert resp.status_code == 200
        (text,) = relay.texts_for(USER_ID)
        assert "Analytics ready" in text
        assert text.endswith("Open the dashboard.")

    def test_relay_status_unknown(self, client):
        resp = client.post("/api/relay/status", json={"user_id": USER_ID, "status": "done"})
        assert resp.status_code == 422

    def test_relay_results(self, client, relay):
        resp = client.post(
            "/api/relay/results",
            json={
                "user_id": USER_ID,
                "campaigns_count": 3,
                "top_campaigns": [{"name": "Low", "roi": 5}, {"name": "High", "roi": 90}],
                "recommendations": ["Scale High"],
            },
        )
        assert resp.status_code == 200
        assert resp.json() == {"delivered": True, "reason": None}
        (text,) = relay.texts_for(USER_ID)
        assert "1. High - ROI: 90%" in text
        assert "• Scale High" in text

    def test_relay_results_validates_body(self, client):
        body = {"user_id": USER_ID, "campaigns_count": -1}
        assert client.post("/api/relay/results", json=body).status_code == 422
        body = {"user_id": USER_ID, "campaigns_count": 1, "top_campaigns": [{"name": ""}]}
        assert client.post("/api/relay/results", json=body).status_code == 422


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    PROTECTED_GET = [
        "/api/funnels",
        f"/api/funnels/{USER_ID}",
        "/api/admin/grants",
        "/api/admin/stats",
        "/api/admin/funnels/stale",
        "/api/auth/me",
    ]

    @pytest.mark.parametrize("endpoint", PROTECTED_GET)
    def test_no_token_returns_401(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    @pytest.mark.parametrize("endpoint", PROTECTED_GET)
    def test_garbage_token_returns_401(self, client, endpoint):
        assert client.get(endpoint, headers=_auth("not-a-jwt")).status_code == 401

    @pytest.mark.parametrize("endpoint", PROTECTED_GET)
    def test_non_admin_returns_403(self, client, endpoint):
        headers = _auth(make_admin_token(sub=str(USER_ID)))
        assert client.get(endpoint, headers=headers).status_code == 403

    def test_me(self, client, admin_headers):
        resp = client.get("/api/auth/me", headers=admin_headers)
        assert resp.json() == {"id": str(ADMIN_ID), "is_admin": True}

    def test_post_grant_requires_admin(self, client):
        resp = client.post("/api/admin/grants", json={"user_id": USER_ID, "days": 30})
        assert resp.status_code == 401


# ===========================================================================
# Funnel queries
# ===========================================================================
class TestFunnelQueries:
    def test_user_funnel_masks_key(self, client, db_engine, admin_headers):
        _completed_funnel(db_engine)
        resp = client.get(f"/api/funnels/{USER_ID}", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_completed"] is True
        assert body["source_platform"] == "TikTok"
        assert body["conversion_price"] == "12.3"
        assert body["submitted_key"] == f"{KEY[:4]}…{KEY[-4:]}"
        assert body["key_count"] == 1

    def test_missing_funnel_404(self, client, admin_headers):
        assert client.get(f"/api/funnels/{USER_ID}", headers=admin_headers).status_code == 404

    def test_list(self, client, db_engine, admin_headers):
        _completed_funnel(db_engine)
        resp = client.get("/api/funnels?limit=10", headers=admin_headers)
        assert resp.status_code == 200
        assert [f["user_id"] for f in resp.json()["funnels"]] == [str(USER_ID)]

    def test_store_failure_is_503(self, client, admin_headers):
        with patch(
            "keygate.services.funnel_store.get_user_funnel",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            resp = client.get(f"/api/funnels/{USER_ID}", headers=admin_headers)
        assert resp.status_code == 503


# ===========================================================================
# Admin endpoints
# ===========================================================================
class TestAdminEndpoints:
    def test_create_grant(self, client, db_engine, relay, admin_headers):
        resp = client.post(
            "/api/admin/grants",
            json={"user_id": USER_ID, "days": 10, "notes": "api"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["granted_by"] == str(ADMIN_ID)
        assert body["notes"] == "api"
        assert get_grant(db_engine, USER_ID).is_active
        assert relay.texts_for(USER_ID)

    def test_self_grant_400(self, client, admin_headers):
        resp = client.post(
            "/api/admin/grants", json={"user_id": ADMIN_ID, "days": 10}, headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["reason"] == "self_grant"

    def test_invalid_days_400(self, client, admin_headers):
        resp = client.post(
            "/api/admin/grants", json={"user_id": USER_ID, "days": 0}, headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["reason"] == "invalid_days"

    def test_deactivate(self, client, db_engine, cfg, admin_headers):
        grant_access(db_engine, ADMIN_ID, USER_ID, 30, is_admin=cfg.is_admin, now=NOW)
        resp = client.post(
            f"/api/admin/grants/{USER_ID}/deactivate",
            json={"reason": "refund"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert as_utc(get_grant(db_engine, USER_ID).expires_at) == NOW + timedelta(days=30)

    def test_deactivate_unknown_404(self, client, admin_headers):
        resp = client.post(f"/api/admin/grants/{USER_ID}/deactivate", headers=admin_headers)
        assert resp.status_code == 404

    def test_list_grants(self, client, db_engine, cfg, admin_headers):
        grant_access(db_engine, ADMIN_ID, USER_ID, 30, is_admin=cfg.is_admin)
        resp = client.get("/api/admin/grants", headers=admin_headers)
        assert resp.status_code == 200
        (row,) = resp.json()["grants"]
        assert row["user_id"] == str(USER_ID)
        assert row["is_active"] is True

    def test_stats(self, client, db_engine, admin_headers):
        _completed_funnel(db_engine)
        resp = client.get("/api/admin/stats", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["keys_by_platform"] == {"TikTok": 1}
        assert body["funnels"]["completed"] == 1
        assert body["admins"] == 2

    def test_stale(self, client, db_engine, admin_headers):
        begin_funnel(db_engine, USER_ID)
        resp = client.get("/api/admin/funnels/stale?hours=1", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"funnels": []}

    def test_stale_hours_bounded(self, client, admin_headers):
        resp = client.get("/api/admin/funnels/stale?hours=99999999", headers=admin_headers)
        assert resp.status_code == 422


# ===========================================================================
# CORS
# ===========================================================================
class TestCors:
    def test_origins_parsed(self, monkeypatch):
        from keygate.api.main import _cors_origins

        monkeypatch.setenv("CORS_ALLOW_ORIGINS", " https://a.example/, https://b.example ,")
        assert _cors_origins() == ["https://a.example", "https://b.example"]
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "")
        assert _cors_origins() == []

    def test_no_origins_no_middleware(self):
        from keygate.api.main import configure_cors

        app = FastAPI()
        configure_cors(app, [])
        assert app.user_middleware == []

    def test_credentials_not_allowed(self):
        from keygate.api.main import configure_cors

        app = FastAPI()
        configure_cors(app, ["https://a.example"])
        app.get("/ping")(lambda: {"ok": True})
        resp = TestClient(app).get("/ping", headers={"Origin": "https://a.example"})
        assert resp.headers["access-control-allow-origin"] == "https://a.example"
        assert "access-control-allow-credentials" not in resp.headers
