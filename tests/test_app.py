import asyncio

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from admission.app.core.config import settings
from admission.app.main import create_app
from admission.app.middleware.rate_limit import RateLimitDependency
from admission.app.services.limiter import RateLimiter
from admission.app.services.tiers import TIER_CONFIGS
from admission.app.services.window_store import LocalWindowStore

ADMIN_TOKEN = "admin-secret"


@pytest.fixture
def limiter():
    return RateLimiter(LocalWindowStore(shards=4))


@pytest.fixture
def client(limiter, monkeypatch):
    monkeypatch.setattr(settings, "admin_token", ADMIN_TOKEN)
    return TestClient(create_app(limiter=limiter))


def _auth(token: str = ADMIN_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["rate_limit"]["type"] == "memory"
    # Health checks are never rate limited
    assert "X-RateLimit-Limit" not in resp.headers


def test_default_tier_applies_to_requests(client):
    resp = client.get("/does-not-exist")
    assert resp.status_code == 404
    assert resp.headers["X-RateLimit-Limit"] == str(TIER_CONFIGS["anonymous"].max_requests)


def test_lifespan_starts_sweeper(limiter):
    with TestClient(create_app(limiter=limiter)) as client:
        sweeper = client.app.state.sweeper
        assert sweeper.running is True
        assert sweeper.store is limiter.local_store
    assert sweeper.running is False


def test_admin_disabled_without_token(limiter, monkeypatch):
    monkeypatch.setattr(settings, "admin_token", "")
    client = TestClient(create_app(limiter=limiter))

    resp = client.get("/admin/rate-limits/203.0.113.9", headers=_auth("anything"))
    assert resp.status_code == 503


def test_admin_rejects_bad_token(client):
    assert client.get("/admin/rate-limits/u1").status_code == 401
    assert client.get("/admin/rate-limits/u1", headers=_auth("wrong")).status_code == 401
    assert client.delete("/admin/rate-limits/u1", headers=_auth("wrong")).status_code == 401


def test_admin_status_for_unknown_identifier(client):
    resp = client.get("/admin/rate-limits/203.0.113.9", headers=_auth())
    assert resp.status_code == 200
    assert resp.json() == {
        "identifier": "203.0.113.9",
        "scope": None,
        "tier": "anonymous",
        "active": False,
        "limit": 30,
        "remaining": 30,
        "reset": None,
    }


def test_admin_status_reflects_traffic(client, limiter):
    for _ in range(3):
        client.get("/does-not-exist", headers={"X-Forwarded-For": "203.0.113.9"})

    resp = client.get(
        "/admin/rate-limits/203.0.113.9",
        params={"tier": "anonymous"},
        headers={**_auth(), "X-Forwarded-For": "198.51.100.1"},
    )
    data = resp.json()
    assert data["active"] is True
    assert data["allowed"] is True
    assert data["remaining"] == 27
    assert data["reset"] > 0


def test_admin_status_unknown_tier(client):
    resp = client.get("/admin/rate-limits/u1", params={"tier": "platinum"}, headers=_auth())
    assert resp.status_code == 400


def test_admin_reset(client, limiter):
    for _ in range(5):
        client.get("/does-not-exist", headers={"X-Forwarded-For": "203.0.113.9"})

    resp = client.delete(
        "/admin/rate-limits/203.0.113.9",
        headers={**_auth(), "X-Forwarded-For": "198.51.100.1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"identifier": "203.0.113.9", "scope": None, "reset": True}
    assert asyncio.run(limiter.status("203.0.113.9", TIER_CONFIGS["anonymous"])) is None

    follow_up = client.get("/does-not-exist", headers={"X-Forwarded-For": "203.0.113.9"})
    assert follow_up.headers["X-RateLimit-Remaining"] == "29"


def test_denied_request_over_http(limiter, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_default_tier", "restricted")
    client = TestClient(create_app(limiter=limiter))
    limit = TIER_CONFIGS["restricted"].max_requests

    for _ in range(limit):
        assert client.get("/does-not-exist").status_code == 404

    resp = client.get("/does-not-exist")
    assert resp.status_code == 429
    assert resp.json()["error"] == TIER_CONFIGS["restricted"].denial_message
    assert int(resp.headers["Retry-After"]) >= 1


def test_admin_reset_of_scoped_route_limit(limiter, monkeypatch):
    monkeypatch.setattr(settings, "admin_token", ADMIN_TOKEN)
    app = create_app(limiter=limiter)

    @app.post("/login", dependencies=[Depends(RateLimitDependency("restricted"))])
    async def login():
        return {"ok": True}

    client = TestClient(app)
    limit = TIER_CONFIGS["restricted"].max_requests
    for _ in range(limit):
        client.post("/login")
    assert client.post("/login").status_code == 429

    status = client.get(
        "/admin/rate-limits/testclient",
        params={"tier": "restricted", "scope": "restricted"},
        headers=_auth(),
    ).json()
    assert status["active"] is True
    assert status["allowed"] is False

    # Unscoped reset leaves the route counter alone
    client.delete("/admin/rate-limits/testclient", headers=_auth())
    assert client.post("/login").status_code == 429

    resp = client.delete(
        "/admin/rate-limits/testclient", params={"scope": "restricted"}, headers=_auth()
    )
    assert resp.json() == {"identifier": "testclient", "scope": "restricted", "reset": True}
    assert client.post("/login").status_code == 200
