"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Challenge, wallet and admin routes through the TestClient, backed by the
in-memory store from ``conftest``.

These tests verify:
- Auth guards on user and admin endpoints
- Status codes and bodies for each challenge transition
- Uniform error rendering (``{"detail": {"error", "message", ...}}``)
"""

from __future__ import annotations

import pytest

from conftest import make_create_payload, make_user_token
from playstake.services.challenge_service import challenge_path


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_user_token(user_id)}"}


@pytest.fixture
def funded(fund):
    fund("alice", 1000)
    fund("bob", 1000)


@pytest.fixture
def pending_id(client, funded) -> str:
    resp = client.post("/api/challenges", headers=_auth("alice"), json=make_create_payload("bob"))
    assert resp.status_code == 201
    return resp.json()["challengeId"]


@pytest.fixture
def accepted_id(client, pending_id) -> str:
    assert client.post(f"/api/challenges/{pending_id}/accept", headers=_auth("bob")).status_code == 200
    return pending_id


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    USER_ENDPOINTS = [
        ("get", "/api/wallet"),
        ("get", "/api/wallet/transactions"),
        ("get", "/api/challenges/history"),
        ("post", "/api/challenges"),
        ("post", f"/api/challenges/{'a' * 32}/accept"),
    ]

    ADMIN_ENDPOINTS = [
        ("get", "/api/admin/challenges/stuck"),
        ("post", "/api/admin/challenges/sweep"),
        ("get", "/api/admin/challenges/index/status"),
        ("post", "/api/admin/challenges/index/rebuild"),
        ("post", "/api/admin/wallets/alice/credit"),
    ]

    @pytest.mark.parametrize("method,endpoint", USER_ENDPOINTS + ADMIN_ENDPOINTS)
    def test_rejects_no_auth(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint)
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", USER_ENDPOINTS)
    def test_rejects_invalid_token(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint, headers={"Authorization": "Bearer invalid.token.here"})
        assert resp.status_code == 401

    def test_rejects_token_without_subject(self, client):
        import jwt

        from playstake.api.deps import JWT_ALGORITHM, JWT_SECRET

        token = jwt.encode({"username": "nobody"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        resp = client.get("/api/wallet", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", ADMIN_ENDPOINTS)
    def test_admin_rejects_regular_user(self, client, method, endpoint):
        resp = getattr(client, method)(endpoint, headers=_auth("alice"))
        assert resp.status_code == 403


# ===========================================================================
# Wallet
# ===========================================================================
class TestWallet:
    def test_get_opens_empty_wallet(self, client):
        resp = client.get("/api/wallet", headers=_auth("newcomer"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["balance"] == 0
        assert body["escrowBalance"] == 0

    def test_admin_credit_and_withdraw(self, client, admin_token):
        resp = client.post(
            "/api/admin/wallets/alice/credit",
            headers={"Authorization": f"Bearer {admin_token}"}, json={"amount": 500},
        )
        assert resp.status_code == 200
        assert resp.json()["balance"] == 500

        resp = client.post("/api/wallet/withdraw", headers=_auth("alice"), json={"amount": 200})
        assert resp.status_code == 200
        assert resp.json()["balance"] == 300
        assert resp.json()["lastTransaction"]["type"] == "withdrawal"

    def test_overdraw_is_rejected(self, client, funded):
        resp = client.post("/api/wallet/withdraw", headers=_auth("alice"), json={"amount": 5000})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "insufficient_funds"

    def test_users_cannot_fund_themselves(self, client):
        resp = client.post("/api/wallet/deposit", headers=_auth("mallory"), json={"amount": 10**12})
        assert resp.status_code == 404
        resp = client.post("/api/admin/wallets/mallory/credit", headers=_auth("mallory"), json={"amount": 10**12})
        assert resp.status_code == 403
        assert client.get("/api/wallet", headers=_auth("mallory")).json()["balance"] == 0

    def test_non_positive_credit(self, client, admin_token):
        resp = client.post(
            "/api/admin/wallets/alice/credit",
            headers={"Authorization": f"Bearer {admin_token}"}, json={"amount": 0},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "validation_error"

    def test_escrowed_funds_cannot_be_withdrawn(self, client, pending_id):
        resp = client.post("/api/wallet/withdraw", headers=_auth("alice"), json={"amount": 950})
        assert resp.status_code == 400

    def test_transactions_newest_first(self, client, pending_id):
        resp = client.get("/api/wallet/transactions", headers=_auth("alice"))
        assert resp.status_code == 200
        types = [entry["type"] for entry in resp.json()["transactions"]]
        assert types == ["challenge_bet", "deposit"]


# ===========================================================================
# Challenge lifecycle
# ===========================================================================
class TestChallengeLifecycle:
    def test_create(self, client, funded):
        resp = client.post("/api/challenges", headers=_auth("alice"), json=make_create_payload("bob", 250))
        assert resp.status_code == 201
        body = resp.json()
        assert body["betAmount"] == 250
        assert body["gameTitle"] == "Tetris"

        wallet = client.get("/api/wallet", headers=_auth("alice")).json()
        assert (wallet["balance"], wallet["escrowBalance"]) == (750, 250)

    def test_create_missing_field_is_400(self, client, funded):
        payload = make_create_payload("bob")
        del payload["betAmount"]
        resp = client.post("/api/challenges", headers=_auth("alice"), json=payload)
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["error"] == "validation_error"
        assert detail["field"] == "betAmount"

    def test_non_numeric_score_is_400(self, client, accepted_id):
        resp = client.post(
            "/api/challenges/score", headers=_auth("alice"),
            json={"challengeId": accepted_id, "score": "lots"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "validation_error"

    def test_bad_query_is_400(self, client, funded):
        resp = client.get("/api/challenges/history?limit=0", headers=_auth("alice"))
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "limit"

    def test_create_bet_below_minimum(self, client, funded):
        resp = client.post("/api/challenges", headers=_auth("alice"), json=make_create_payload("bob", 5))
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "validation_error"

    def test_duplicate_active_challenge(self, client, pending_id):
        resp = client.post("/api/challenges", headers=_auth("bob"), json=make_create_payload("alice"))
        assert resp.status_code == 400

    def test_accept(self, client, pending_id):
        resp = client.post(f"/api/challenges/{pending_id}/accept", headers=_auth("bob"))
        assert resp.status_code == 200
        assert resp.json()["challengeId"] == pending_id

    def test_accept_twice_conflicts(self, client, accepted_id):
        resp = client.post(f"/api/challenges/{accepted_id}/accept", headers=_auth("bob"))
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "state_conflict"

    def test_accept_by_challenger_forbidden(self, client, pending_id):
        resp = client.post(f"/api/challenges/{pending_id}/accept", headers=_auth("alice"))
        assert resp.status_code == 403

    def test_accept_after_expiry(self, client, clock, pending_id):
        clock.advance(hours=25)
        resp = client.post(f"/api/challenges/{pending_id}/accept", headers=_auth("bob"))
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["error"] == "challenge_expired"
        assert detail["refundAmount"] == 96
        assert detail["expirationFee"] == 4

    def test_reject(self, client, pending_id):
        resp = client.post(f"/api/challenges/{pending_id}/reject", headers=_auth("bob"))
        assert resp.status_code == 200
        assert resp.json() == {"refundAmount": 96, "rejectionFee": 4, "originalAmount": 100}

    def test_cancel(self, client, pending_id):
        resp = client.delete(f"/api/challenges/{pending_id}", headers=_auth("alice"))
        assert resp.status_code == 200
        assert resp.json() == {"refundAmount": 80, "serviceCharge": 20}

    def test_unknown_challenge(self, client, funded):
        resp = client.post(f"/api/challenges/{'b' * 32}/reject", headers=_auth("bob"))
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "not_found"

    def test_malformed_challenge_id(self, client, funded):
        resp = client.get("/api/challenges/not-an-id", headers=_auth("alice"))
        assert resp.status_code == 400

    def test_scores_settle_challenge(self, client, accepted_id):
        resp = client.post(
            "/api/challenges/score", headers=_auth("alice"),
            json={"challengeId": accepted_id, "score": 50},
        )
        assert resp.status_code == 200
        assert resp.json()["bothScoresSubmitted"] is False

        resp = client.post(
            "/api/challenges/score", headers=_auth("bob"),
            json={"challengeId": accepted_id, "score": 30},
        )
        assert resp.json()["bothScoresSubmitted"] is True

        alice = client.get("/api/wallet", headers=_auth("alice")).json()
        bob = client.get("/api/wallet", headers=_auth("bob")).json()
        assert (alice["balance"], alice["escrowBalance"]) == (1080, 0)
        assert (bob["balance"], bob["escrowBalance"]) == (900, 0)

    def test_negative_score_rejected(self, client, accepted_id):
        resp = client.post(
            "/api/challenges/score", headers=_auth("alice"),
            json={"challengeId": accepted_id, "score": -1},
        )
        assert resp.status_code == 400

    def test_score_before_accept_conflicts(self, client, pending_id):
        resp = client.post(
            "/api/challenges/score", headers=_auth("alice"),
            json={"challengeId": pending_id, "score": 10},
        )
        assert resp.status_code == 409

    def test_game_session_token_accepted_with_score(self, client, clock, accepted_id):
        resp = client.post(f"/api/challenges/{accepted_id}/session", headers=_auth("alice"))
        assert resp.status_code == 200
        token = resp.json()["sessionToken"]

        clock.advance(seconds=20)
        resp = client.post(
            "/api/challenges/score", headers=_auth("alice"),
            json={"challengeId": accepted_id, "score": 12, "sessionToken": token},
        )
        assert resp.status_code == 200

        resp = client.post(
            "/api/challenges/score", headers=_auth("bob"),
            json={"challengeId": accepted_id, "score": 12, "sessionToken": token},
        )
        assert resp.status_code == 403

    def test_game_session_before_accept(self, client, pending_id):
        resp = client.post(f"/api/challenges/{pending_id}/session", headers=_auth("alice"))
        assert resp.status_code == 409


# ===========================================================================
# Reads
# ===========================================================================
class TestChallengeReads:
    def test_get_hides_opponent_score(self, client, accepted_id):
        client.post(
            "/api/challenges/score", headers=_auth("bob"),
            json={"challengeId": accepted_id, "score": 30},
        )
        resp = client.get(f"/api/challenges/{accepted_id}", headers=_auth("alice"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["role"] == "challenger"
        assert body["opponentScore"] is None
        assert body["opponentSubmitted"] is True

    def test_get_by_outsider_forbidden(self, client, pending_id):
        resp = client.get(f"/api/challenges/{pending_id}", headers=_auth("mallory"))
        assert resp.status_code == 403

    def test_history(self, client, pending_id):
        resp = client.get("/api/challenges/history", headers=_auth("bob"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["hasMore"] is False
        assert body["challenges"][0]["challengeId"] == pending_id

    def test_history_status_filter(self, client, pending_id):
        resp = client.get("/api/challenges/history?status=completed", headers=_auth("bob"))
        assert resp.json()["total"] == 0

    def test_history_unknown_status(self, client, funded):
        resp = client.get("/api/challenges/history?status=bogus", headers=_auth("bob"))
        assert resp.status_code == 400

    def test_corrupt_record_renders_generic_error(self, client, store, pending_id):
        store.set(challenge_path(pending_id), {"salt": "00", "iv": "00", "data": "00"})
        resp = client.get(f"/api/challenges/{pending_id}", headers=_auth("alice"))
        assert resp.status_code == 500
        assert resp.json()["detail"] == {
            "error": "decryption_failed",
            "message": "Challenge record could not be read.",
        }


# ===========================================================================
# Admin
# ===========================================================================
class TestAdmin:
    def test_sweep(self, client, clock, admin_token, pending_id):
        clock.advance(hours=25)
        resp = client.post("/api/admin/challenges/sweep", headers={"Authorization": f"Bearer {admin_token}"})
        assert resp.status_code == 200
        assert resp.json()["expired"] == 1

    def test_stuck_listing(self, client, clock, admin_token, accepted_id):
        headers = {"Authorization": f"Bearer {admin_token}"}
        clock.advance(days=8)
        client.post("/api/admin/challenges/sweep", headers=headers)

        resp = client.get("/api/admin/challenges/stuck", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["challenges"][0]["challengeId"] == accepted_id

    def test_index_status_and_rebuild(self, client, admin_token, pending_id):
        headers = {"Authorization": f"Bearer {admin_token}"}
        resp = client.get("/api/admin/challenges/index/status", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["needsMigration"] is False

        resp = client.post("/api/admin/challenges/index/rebuild", headers=headers)
        assert resp.json() == {"migrated": 1, "errors": 0}
