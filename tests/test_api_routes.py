"""
tests/test_api_routes.py — FastAPI Route Integration Tests
===========================================================

The synchronizer dependency is overridden with a stub holding a real
AppState and Notifier; actions are AsyncMocks.  The app lifespan is not run.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from sidequest.api.deps import get_synchronizer
from sidequest.api.main import app
from sidequest.sync.notifications import Notifier
from sidequest.sync.state import AppState, BootPhase


@pytest.fixture
def sync():
    state = AppState()
    state.phase = BootPhase.READY
    state.loading = False
    state.quests.replace_all([
        {"id": "q1", "title": "Beach", "category": "Environmental", "status": "active",
         "xp_value": 50, "lat": -33.9, "lng": 18.4, "created_by": None},
        {"id": "q2", "title": "Draft", "category": "Social", "status": "pending_admin",
         "xp_value": 20, "lat": None, "lng": None, "created_by": "p"},
    ])
    state.rewards.replace_all([{"id": "r1", "title": "Coffee", "xp_cost": 100, "status": "active"}])

    stub = MagicMock()
    stub.state = state
    stub.notifier = Notifier(state)
    stub.boot.timed_out = False
    stub.feed.listener_healthy = False
    stub.actions = MagicMock()
    return stub


@pytest.fixture
def client(sync):
    app.dependency_overrides[get_synchronizer] = lambda: sync
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _sign_in(sync, role="Traveler", xp=0):
    sync.state.profile = {"id": "me", "role": role, "xp": xp, "full_name": "Me", "email": "me@x.org"}


# ===========================================================================
# Health & views
# ===========================================================================
class TestViews:
    def test_health_reports_phase(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["phase"] == "ready"
        assert resp.json()["loading"] is False

    def test_health_without_synchronizer_is_503(self):
        app.dependency_overrides.clear()
        resp = TestClient(app, raise_server_exceptions=False).get("/api/health")
        assert resp.status_code == 503

    def test_state_snapshot(self, client):
        body = client.get("/api/state").json()
        assert body["phase"] == "ready"
        assert [q["id"] for q in body["quests"]] == ["q1"]

    def test_quests_filtered_by_category(self, client, sync):
        _sign_in(sync, role="Admin")
        resp = client.get("/api/quests", params={"category": "Social"})
        assert [q["id"] for q in resp.json()] == ["q2"]

    def test_nearest_quests(self, client):
        resp = client.get("/api/quests/nearest", params={"lat": -34.0, "lng": 18.5})
        assert resp.status_code == 200
        assert [q["id"] for q in resp.json()] == ["q1"]
        assert "distance_km" in resp.json()[0]

    def test_nearest_quests_validates_coordinates(self, client):
        assert client.get("/api/quests/nearest", params={"lat": 200, "lng": 0}).status_code == 422

    def test_profile_stats_requires_sign_in(self, client):
        assert client.get("/api/profile/stats").status_code == 401

    def test_profile_stats(self, client, sync):
        _sign_in(sync, xp=50)
        sync.state.submissions.replace_all([
            {"id": "s1", "quest_id": "q1", "traveler_id": "me", "status": "approved", "submitted_at": None},
        ])
        body = client.get("/api/profile/stats").json()
        assert body["completed"] == 1
        assert body["total_xp"] == 50

    def test_submissions_status_filter(self, client, sync):
        sync.state.submissions.replace_all([
            {"id": "s1", "status": "pending"},
            {"id": "s2", "status": "approved"},
        ])
        resp = client.get("/api/submissions", params={"status": "pending"})
        assert [s["id"] for s in resp.json()] == ["s1"]

    def test_notifications_history(self, client, sync):
        sync.notifier.notify("hello")
        body = client.get("/api/notifications").json()
        assert body[-1]["message"] == "hello"
        assert body[-1]["level"] == "info"

    def test_review_queue_is_admin_only(self, client, sync):
        assert client.get("/api/admin/reviews").status_code == 401
        _sign_in(sync)
        assert client.get("/api/admin/reviews").status_code == 403

    def test_review_queue(self, client, sync):
        _sign_in(sync, role="Admin")
        sync.state.submissions.replace_all([
            {"id": "s1", "status": "pending"},
            {"id": "s2", "status": "in_progress"},
        ])
        body = client.get("/api/admin/reviews").json()
        assert [s["id"] for s in body["submissions"]] == ["s1"]
        assert [q["id"] for q in body["quests"]] == ["q2"]
        assert body["rewards"] == []


# ===========================================================================
# Actions
# ===========================================================================
class TestActions:
    def test_redeem_success(self, client, sync):
        sync.actions.redeem_reward = AsyncMock(return_value="SQ123456")
        resp = client.post("/api/rewards/r1/redeem")
        assert resp.status_code == 200
        assert resp.json() == {"redemption_code": "SQ123456"}
        sync.actions.redeem_reward.assert_awaited_once_with("r1")

    def test_failed_action_reports_its_alert(self, client, sync):
        _sign_in(sync, xp=10)

        async def _refuse(reward_id):
            sync.notifier.alert("Not enough XP! (insufficient balance)")
            return None

        sync.actions.redeem_reward = _refuse
        resp = client.post("/api/rewards/r1/redeem")
        assert resp.status_code == 400
        assert "insufficient" in resp.json()["detail"]

    def test_guest_action_is_401(self, client, sync):
        async def _needs_login(quest_id):
            sync.state.show_auth_modal = True
            return False

        sync.actions.accept_quest = _needs_login
        assert client.post("/api/quests/q1/accept").status_code == 401

    def test_create_quest_passes_only_set_fields(self, client, sync):
        sync.actions.create_quest = AsyncMock(return_value={"id": "new", "status": "pending_admin"})
        resp = client.post("/api/quests", json={"title": "Reef Survey", "xp_value": 80})
        assert resp.status_code == 201
        sync.actions.create_quest.assert_awaited_once_with({"title": "Reef Survey", "xp_value": 80})

    def test_update_reward_rejects_negative_cost(self, client):
        assert client.patch("/api/rewards/r1", json={"xp_cost": -5}).status_code == 422

    def test_update_quest_rejects_unknown_status(self, client, sync):
        sync.actions.update_quest = AsyncMock()
        assert client.patch("/api/quests/q1", json={"status": "bogus"}).status_code == 422
        sync.actions.update_quest.assert_not_awaited()

    def test_submit_proof(self, client, sync):
        sync.actions.submit_proof = AsyncMock(return_value={"id": "s1", "status": "pending"})
        resp = client.post("/api/quests/q1/proof", json={"note": "done", "proof_photo_url": "https://img/p.jpg"})
        assert resp.status_code == 200
        sync.actions.submit_proof.assert_awaited_once_with("q1", "done", "https://img/p.jpg")

    @pytest.mark.parametrize(
        "path, action",
        [
            ("/api/submissions/s1/approve", "approve_submission"),
            ("/api/submissions/s1/reject", "reject_submission"),
            ("/api/quests/q2/approve", "approve_new_quest"),
            ("/api/rewards/r1/approve", "approve_new_reward"),
        ],
    )
    def test_moderation_endpoints(self, client, sync, path, action):
        setattr(sync.actions, action, AsyncMock(return_value=True))
        assert client.post(path).status_code == 200
        getattr(sync.actions, action).assert_awaited_once()

    def test_delete_quest_denied(self, client, sync):
        _sign_in(sync, role="Partner")

        async def _deny(quest_id):
            sync.notifier.alert("You don't have permission to delete this quest.")
            return False

        sync.actions.delete_quest = _deny
        resp = client.delete("/api/quests/q1")
        assert resp.status_code == 400
        assert resp.json()["detail"] == "You don't have permission to delete this quest."

    def test_alert_detail_survives_full_history(self, client, sync):
        _sign_in(sync, role="Partner")
        for i in range(150):
            sync.notifier.notify(f"note {i}")

        async def _deny(quest_id):
            sync.notifier.alert("You don't have permission to delete this quest.")
            return False

        sync.actions.delete_quest = _deny
        resp = client.delete("/api/quests/q1")
        assert resp.json()["detail"] == "You don't have permission to delete this quest."

    def test_dismiss_clears_toast_and_alert(self, client, sync):
        sync.notifier.alert("oops")
        client.post("/api/notifications/dismiss")
        assert sync.state.alert is None


# ===========================================================================
# Session
# ===========================================================================
class TestSessionRoutes:
    def _session(self):
        session = MagicMock()
        session.user_id = "me"
        session.email = "me@x.org"
        session.expires_at = 1_900_000_000
        return session

    def test_sign_in_requires_password(self, client):
        assert client.post("/api/auth/sign-in", json={"email": "me@x.org"}).status_code == 422

    def test_sign_in(self, client, sync):
        sync.actions.sign_in = AsyncMock(return_value=self._session())
        resp = client.post("/api/auth/sign-in", json={"email": "me@x.org", "password": "pw-123456"})
        assert resp.status_code == 200
        assert resp.json() == {"user_id": "me", "email": "me@x.org", "expires_at": 1_900_000_000}
        sync.actions.sign_in.assert_awaited_once_with("me@x.org", "pw-123456")

    def test_failed_sign_in_is_401_with_message(self, client, sync):
        sync.state.show_auth_modal = True

        async def _refuse(email, password):
            sync.notifier.alert("Invalid email or password.")
            return None

        sync.actions.sign_in = _refuse
        resp = client.post("/api/auth/sign-in", json={"email": "me@x.org", "password": "nope-nope"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid email or password."

    def test_sign_up(self, client, sync):
        sync.actions.sign_up = AsyncMock(return_value=self._session())
        resp = client.post(
            "/api/auth/sign-up",
            json={"email": "me@x.org", "password": "pw-123456", "full_name": "Me"},
        )
        assert resp.status_code == 201
        sync.actions.sign_up.assert_awaited_once_with("me@x.org", "pw-123456", "Me")

    def test_sign_up_rejects_short_password(self, client):
        resp = client.post("/api/auth/sign-up", json={"email": "me@x.org", "password": "short"})
        assert resp.status_code == 422

    def test_delete_account(self, client, sync):
        sync.actions.delete_account = AsyncMock(return_value=True)
        assert client.delete("/api/auth/account").status_code == 200
        sync.actions.delete_account.assert_awaited_once()
