"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Public leaderboard/user/curve reads and JWT-guarded admin writes, served by
an in-memory engine (see the ``client`` fixture in conftest).
"""

from __future__ import annotations

import time

import discord
import jwt
import pytest
from conftest import GUILD, ROLE_L5, ROLE_L10, make_admin_token, run_async

from xpengine.api.deps import JWT_ALGORITHM, JWT_SECRET, get_discord_client
from xpengine.database.store import MemoryStore
from xpengine.engine.curve import xp_for_level
from xpengine.services.engine import XPEngine

USER = "222222222222222222"


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def seeded(xp_engine):
    async def _inner():
        for i in range(25):
            await xp_engine.xp.add(GUILD, f"8000000000000000{i:02d}", i)

    run_async(_inner())


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        """Health check answers without touching the engine."""
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Public reads
# ===========================================================================
class TestLeaderboard:
    def test_first_page(self, client, seeded):
        """First page carries ranks, totals, and pagination flags."""
        resp = client.get(f"/api/xp/leaderboard/{GUILD}?limit=10")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["entries"]) == 10
        assert data["entries"][0]["rank"] == 1
        assert data["entries"][0]["xp"] == 24
        assert data["pagination"]["total"] == 25
        assert data["pagination"]["total_pages"] == 3
        assert data["pagination"]["has_next"] is True
        assert data["pagination"]["has_prev"] is False
        assert data["cached"] is True

    def test_page_number(self, client, seeded):
        """``page`` is translated into an offset."""
        data = client.get(f"/api/xp/leaderboard/{GUILD}?page=3&limit=10").json()
        assert [e["rank"] for e in data["entries"]] == [21, 22, 23, 24, 25]
        assert data["pagination"]["current_page"] == 3
        assert data["pagination"]["has_next"] is False

    def test_limit_over_maximum(self, client):
        """Pages larger than the maximum are refused."""
        resp = client.get(f"/api/xp/leaderboard/{GUILD}?limit=101")
        assert resp.status_code == 400

    def test_empty_guild(self, client):
        """A guild with no records returns an empty page."""
        data = client.get(f"/api/xp/leaderboard/{GUILD}").json()
        assert data["entries"] == []
        assert data["pagination"]["total"] == 0

    @pytest.mark.parametrize("store_id", ["a/b", "x/y/z"])
    def test_bad_store_id(self, client, store_id):
        """A store id with a separator is a client error, not a server error."""
        resp = client.get(f"/api/xp/leaderboard/{GUILD}", params={"store_id": store_id})
        assert resp.status_code == 400
        assert "store_id" in resp.json()["detail"]


class TestUserEndpoint:
    def test_unknown_user(self, client):
        """404 for a user without a record."""
        assert client.get(f"/api/xp/users/{GUILD}/{USER}").status_code == 404

    def test_known_user(self, client, xp_engine):
        """Record, progress, and rank are returned together."""
        run_async(xp_engine.xp.add(GUILD, USER, 100))
        resp = client.get(f"/api/xp/users/{GUILD}/{USER}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["xp"] == 100
        assert data["level"] == 0
        assert data["rank"]["rank"] == 1
        assert data["progress"]["level"] == 0


class TestCurveEndpoint:
    def test_default_curve_preview(self, client):
        """Preview thresholds follow the default curve."""
        data = client.get(f"/api/xp/curve/{GUILD}?levels=3").json()
        assert [row["xp_total"] for row in data["levels"]] == [155, 375, 670]
        assert data["max_level"] is None


# ===========================================================================
# Admin auth guards
# ===========================================================================
class TestAdminAuthGuards:
    def test_missing_token(self, client):
        """No Authorization header yields 401."""
        assert client.get(f"/api/xp/config/{GUILD}").status_code == 401

    def test_invalid_token(self, client):
        """A malformed token yields 401."""
        resp = client.get(f"/api/xp/config/{GUILD}", headers=_auth("not-a-jwt"))
        assert resp.status_code == 401

    def test_expired_token(self, client):
        """An expired token is reported as such."""
        token = jwt.encode(
            {"sub": "99999", "is_admin": True, "exp": int(time.time()) - 60},
            JWT_SECRET,
            algorithm=JWT_ALGORITHM,
        )
        resp = client.get(f"/api/xp/config/{GUILD}", headers=_auth(token))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token expired"

    def test_non_admin_token(self, client):
        """A valid token without admin rights yields 403."""
        token = make_admin_token(sub="67890", username="RegularUser", is_admin=False)
        resp = client.get(f"/api/xp/config/{GUILD}", headers=_auth(token))
        assert resp.status_code == 403


# ===========================================================================
# Admin config
# ===========================================================================
class TestAdminConfig:
    def test_get_returns_defaults(self, client, admin_token):
        """An unconfigured guild reads back defaults."""
        resp = client.get(f"/api/xp/config/{GUILD}", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["config"]["rewards_mode"] == "stack"

    def test_patch_merges(self, client, admin_token):
        """PATCH keeps keys written by earlier calls."""
        headers = _auth(admin_token)
        client.patch(f"/api/xp/config/{GUILD}", json={"cooldown_seconds": 5}, headers=headers)
        resp = client.patch(f"/api/xp/config/{GUILD}", json={"xp_rate": 2}, headers=headers)
        config = resp.json()["config"]
        assert (config["cooldown_seconds"], config["xp_rate"]) == (5, 2)

    def test_put_invalid_reports_errors(self, client, admin_token):
        """Every validation error is reported in one 400."""
        resp = client.put(
            f"/api/xp/config/{GUILD}",
            json={"xp_rate": -1, "unknown": True},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["valid"] is False
        assert len(body["errors"]) == 2


# ===========================================================================
# Admin XP mutations
# ===========================================================================
class TestAdminMutations:
    def test_add(self, client, admin_token, xp_engine):
        """Adding XP returns the mutation result and persists it."""
        resp = client.post(
            f"/api/xp/users/{GUILD}/{USER}/add",
            json={"amount": 50, "reason": "event prize"},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["action"] == "add"
        assert data["new_xp"] == 50
        assert run_async(xp_engine.xp.get(GUILD, USER)) == 50

    def test_recalc_without_amount(self, client, admin_token):
        """recalc needs no amount."""
        resp = client.post(
            f"/api/xp/users/{GUILD}/{USER}/recalc", json={}, headers=_auth(admin_token)
        )
        assert resp.status_code == 200
        assert resp.json()["reconciled"] is False

    def test_amount_required(self, client, admin_token):
        """set without an amount is a 400."""
        resp = client.post(
            f"/api/xp/users/{GUILD}/{USER}/set", json={}, headers=_auth(admin_token)
        )
        assert resp.status_code == 400

    def test_negative_amount_rejected(self, client, admin_token):
        """Negative amounts fail body validation."""
        resp = client.post(
            f"/api/xp/users/{GUILD}/{USER}/add", json={"amount": -5}, headers=_auth(admin_token)
        )
        assert resp.status_code == 422

    def test_unknown_action(self, client, admin_token):
        """Actions outside add/remove/set/recalc are rejected."""
        resp = client.post(
            f"/api/xp/users/{GUILD}/{USER}/double", json={"amount": 1}, headers=_auth(admin_token)
        )
        assert resp.status_code == 422


# ===========================================================================
# Guild stats
# ===========================================================================
class TestStatsEndpoint:
    def test_stats_summary(self, client, seeded, xp_engine):
        """User count, top user, and config shape in one response."""
        run_async(
            xp_engine.configs.update_config(
                GUILD,
                {
                    "role_rewards": [{"level": 5, "role_id": ROLE_L5}],
                    "multipliers": {"server": 2.0, "user": {USER: 1.5}},
                },
            )
        )
        data = client.get(f"/api/xp/stats/{GUILD}").json()
        assert data["users"]["total"] == 25
        assert data["users"]["top_user"]["xp"] == 24
        assert data["config"]["rewards_count"] == 1
        assert data["config"]["multipliers_count"] == 2
        assert data["leaderboard"]["public"] is False

    def test_stats_empty_guild(self, client):
        """No top user is reported for a guild without records."""
        data = client.get(f"/api/xp/stats/{GUILD}").json()
        assert data["users"] == {"total": 0}
        assert data["config"]["multipliers_count"] == 0


# ===========================================================================
# Admin global config
# ===========================================================================
class TestAdminGlobalConfig:
    def test_requires_admin(self, client):
        """The global config is not readable without a token."""
        assert client.get("/api/xp/config/global").status_code == 401

    def test_get_empty_by_default(self, client, admin_token):
        """Nothing stored yet reads back as an empty object."""
        resp = client.get("/api/xp/config/global", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json() == {"config": {}}

    def test_put_applies_to_guilds(self, client, admin_token):
        """Guild configs pick up the new global defaults."""
        headers = _auth(admin_token)
        resp = client.put("/api/xp/config/global", json={"xp_rate": 3}, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"valid": True, "config": {"xp_rate": 3}}
        guild = client.get(f"/api/xp/config/{GUILD}", headers=headers).json()
        assert guild["config"]["xp_rate"] == 3

    @pytest.mark.parametrize("body", [{}, {"xp_rate": -1}])
    def test_put_rejects_empty_or_invalid(self, client, admin_token, body):
        """Empty and invalid bodies are rejected with their errors."""
        resp = client.put("/api/xp/config/global", json=body, headers=_auth(admin_token))
        assert resp.status_code == 400
        assert resp.json()["valid"] is False
        assert resp.json()["errors"]


# ===========================================================================
# Admin role reconciliation
# ===========================================================================
class TestAdminReconcile:
    def test_grants_configured_rewards(self, client, admin_token, xp_engine, platform):
        """The member gets every reward up to their stored level."""
        platform.member(GUILD, USER)

        async def _inner():
            await xp_engine.xp.set(GUILD, USER, xp_for_level(12))
            await xp_engine.settled()
            await xp_engine.configs.update_config(
                GUILD,
                {"role_rewards": [{"level": 5, "role_id": ROLE_L5}, {"level": 10, "role_id": ROLE_L10}]},
            )

        run_async(_inner())
        resp = client.post(f"/api/xp/users/{GUILD}/{USER}/reconcile", headers=_auth(admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["level"] == 12
        assert data["granted"] == [ROLE_L5, ROLE_L10]
        assert platform.roles[(GUILD, USER)] == {ROLE_L5, ROLE_L10}

    def test_conflict_without_platform(self, client, admin_token):
        """An engine without a platform connection cannot reconcile."""
        from xpengine.api.deps import get_engine
        from xpengine.api.main import app

        app.dependency_overrides[get_engine] = lambda: XPEngine.create(MemoryStore())
        resp = client.post(f"/api/xp/users/{GUILD}/{USER}/reconcile", headers=_auth(admin_token))
        assert resp.status_code == 409


# ===========================================================================
# Discord client wiring
# ===========================================================================
class TestDiscordClient:
    @pytest.fixture(autouse=True)
    def _fresh_client(self):
        get_discord_client.cache_clear()
        yield
        get_discord_client.cache_clear()

    @pytest.mark.parametrize("token", ["", "your-discord-bot-token-here"])
    def test_no_client_without_token(self, monkeypatch, token):
        """Missing or placeholder tokens leave role rewards off."""
        monkeypatch.setenv("DISCORD_TOKEN", token)
        assert get_discord_client() is None

    def test_client_with_token(self, monkeypatch):
        """A real token yields one shared gateway client."""
        monkeypatch.setenv("DISCORD_TOKEN", "bot-token-value")
        client = get_discord_client()
        assert isinstance(client, discord.Client)
        assert get_discord_client() is client
