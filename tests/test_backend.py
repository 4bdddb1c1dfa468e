"""
tests/test_backend.py — Row Client, Row Policies & Procedures
==============================================================
"""

from __future__ import annotations

import pytest

from conftest import (
    fetch_profile,
    make_auth,
    make_profile,
    make_quest,
    make_reward,
    make_submission,
    run_async,
    sign_in_as,
)
from sidequest.backend import policies
from sidequest.backend.client import BackendClient, BackendError, ConflictError, NotFound, PermissionDenied
from sidequest.backend.procedures import InsufficientXP
from sidequest.backend.realtime import ChangeFeed
from sidequest.database.models import ContentStatus, Role
from sidequest.sync.events import ChangeKind


# ===========================================================================
# Row policies (pure)
# ===========================================================================
class TestPolicies:
    TRAVELER = {"id": "t", "role": "Traveler"}
    PARTNER = {"id": "p", "role": "Partner"}
    ADMIN = {"id": "a", "role": "Admin"}

    def test_admin_may_do_anything(self):
        assert policies.can_insert("redemptions", {}, self.ADMIN, "a")
        assert policies.can_update("profiles", {"id": "x"}, {"xp": 999}, self.ADMIN, "a")
        assert policies.can_delete("quest_progress", {"status": "approved"}, self.ADMIN, "a")

    def test_profile_self_repair_only(self):
        assert policies.can_insert("profiles", {"id": "t", "xp": 0}, None, "t")
        assert not policies.can_insert("profiles", {"id": "other", "xp": 0}, None, "t")
        assert not policies.can_insert("profiles", {"id": "t", "xp": 500}, None, "t")

    def test_admin_profile_only_for_configured_address(self):
        row = {"id": "t", "xp": 0, "role": Role.ADMIN, "email": "boss@x.org"}
        assert policies.can_insert("profiles", row, None, "t", admin_email="boss@x.org")
        assert not policies.can_insert("profiles", row, None, "t", admin_email="other@x.org")
        assert not policies.can_insert("profiles", row, None, "t")

    def test_balance_is_not_self_editable(self):
        assert policies.can_update("profiles", {"id": "t"}, {"full_name": "T"}, self.TRAVELER, "t")
        assert not policies.can_update("profiles", {"id": "t"}, {"xp": 10}, self.TRAVELER, "t")
        assert not policies.can_update("profiles", {"id": "t"}, {"role": "Admin"}, self.TRAVELER, "t")

    def test_only_partners_create_content_and_only_pending(self):
        assert policies.can_insert("quests", {"status": "pending_admin"}, self.PARTNER, "p")
        assert not policies.can_insert("quests", {"status": "active"}, self.PARTNER, "p")
        assert not policies.can_insert("rewards", {"status": "pending_admin"}, self.TRAVELER, "t")

    def test_owner_edits_must_return_to_moderation(self):
        mine = {"created_by": "p", "status": "active"}
        assert policies.can_update("quests", mine, {"title": "x", "status": "pending_admin"}, self.PARTNER, "p")
        assert not policies.can_update("quests", mine, {"status": "active"}, self.PARTNER, "p")
        assert not policies.can_update("quests", {"created_by": "q"}, {"title": "x"}, self.PARTNER, "p")

    def test_travelers_cannot_moderate_themselves(self):
        row = {"traveler_id": "t", "status": "pending"}
        assert not policies.can_insert("quest_progress", {"traveler_id": "t", "status": "approved"}, self.TRAVELER, "t")
        assert not policies.can_update("quest_progress", row, {"status": "approved"}, self.TRAVELER, "t")
        assert policies.can_update("quest_progress", row, {"completion_note": "x"}, self.TRAVELER, "t")
        assert not policies.can_update(
            "quest_progress", {"traveler_id": "t", "status": "approved"}, {"completion_note": "x"},
            self.TRAVELER, "t",
        )

    def test_submission_delete_only_while_in_progress(self):
        assert policies.can_delete("quest_progress", {"traveler_id": "t", "status": "in_progress"}, self.TRAVELER, "t")
        assert not policies.can_delete("quest_progress", {"traveler_id": "t", "status": "pending"}, self.TRAVELER, "t")

    def test_redemptions_never_inserted_directly(self):
        assert not policies.can_insert("redemptions", {"traveler_id": "t"}, self.TRAVELER, "t")


# ===========================================================================
# Row client
# ===========================================================================
def _client(db_engine, tmp_path, email: str | None = None):
    """Row client signed in as *email* (service role when None)."""
    feed = ChangeFeed()
    if email is None:
        return BackendClient(db_engine, feed), feed
    auth = make_auth(db_engine, tmp_path)
    run_async(sign_in_as(auth, db_engine, email))
    return BackendClient(db_engine, feed, auth), feed


class TestBackendClient:
    def test_select_filters_and_ordering(self, db_engine, tmp_path):
        make_quest(db_engine, title="B", xp_value=20)
        make_quest(db_engine, title="A", xp_value=90)
        make_quest(db_engine, title="C", xp_value=50, status=ContentStatus.INACTIVE)
        client, _ = _client(db_engine, tmp_path)

        rows = run_async(client.select("quests", {"status": "active"}, order_by="-xp_value"))
        assert [r["title"] for r in rows] == ["A", "B"]

        rows = run_async(client.select("quests", {"title": ["A", "C"]}, order_by="title"))
        assert [r["title"] for r in rows] == ["A", "C"]

    def test_unknown_table_and_column(self, db_engine, tmp_path):
        client, _ = _client(db_engine, tmp_path)
        with pytest.raises(BackendError, match="Unknown table"):
            run_async(client.select("nope"))
        with pytest.raises(BackendError, match="Unknown column"):
            run_async(client.select("quests", {"colour": "red"}))
        with pytest.raises(BackendError, match="Unknown column"):
            run_async(client.insert("quests", {"title": "x", "colour": "red"}))

    def test_writes_publish_change_events(self, db_engine, tmp_path):
        client, feed = _client(db_engine, tmp_path)
        sub = feed.subscribe("quests")

        [row] = run_async(client.insert("quests", {"title": "Reef", "status": ContentStatus.ACTIVE}))
        run_async(client.update("quests", {"title": "Reef Survey"}, {"id": row["id"]}))
        run_async(client.delete("quests", {"id": row["id"]}))

        events = [sub.queue.get_nowait() for _ in range(3)]
        assert [e.kind for e in events] == [ChangeKind.INSERT, ChangeKind.UPDATE, ChangeKind.DELETE]
        assert events[1].old["title"] == "Reef"
        assert events[1].new["title"] == "Reef Survey"
        assert events[2].row_id == row["id"]
        assert sub.queue.empty()

    def test_update_and_delete_require_filters(self, db_engine, tmp_path):
        client, _ = _client(db_engine, tmp_path)
        with pytest.raises(BackendError):
            run_async(client.update("quests", {"title": "x"}, {}))
        with pytest.raises(BackendError):
            run_async(client.delete("quests", {}))

    def test_duplicate_submission_is_conflict(self, db_engine, tmp_path):
        traveler = make_profile(db_engine, "t@example.com")
        quest = make_quest(db_engine)
        make_submission(db_engine, quest["id"], traveler["id"])
        client, _ = _client(db_engine, tmp_path, "t@example.com")

        with pytest.raises(ConflictError):
            run_async(client.insert("quest_progress", {"quest_id": quest["id"], "traveler_id": traveler["id"]}))

    def test_forbidden_insert_raises(self, db_engine, tmp_path):
        make_profile(db_engine, "t@example.com")
        client, _ = _client(db_engine, tmp_path, "t@example.com")
        with pytest.raises(PermissionDenied):
            run_async(client.insert("quests", {"title": "Mine"}))

    def test_policy_filtered_update_affects_no_rows(self, db_engine, tmp_path):
        make_profile(db_engine, "t@example.com", xp=5)
        client, feed = _client(db_engine, tmp_path, "t@example.com")
        sub = feed.subscribe("profiles")

        rows = run_async(client.update("profiles", {"xp": 10_000}, {"id": client.actor_id}))

        assert rows == []
        assert sub.queue.empty()
        assert fetch_profile(db_engine, "t@example.com")["xp"] == 5


# ===========================================================================
# Procedures
# ===========================================================================
class TestProcedures:
    def test_redeem_debits_and_issues(self, db_engine, tmp_path):
        make_profile(db_engine, "t@example.com", xp=120)
        reward = make_reward(db_engine, xp_cost=100)
        client, feed = _client(db_engine, tmp_path, "t@example.com")
        sub = feed.subscribe("redemptions")

        result = run_async(client.rpc("redeem_reward", {"reward_id": reward["id"], "redemption_code": "SQ000001"}))

        assert result["profile"]["xp"] == 20
        assert result["redemption"]["redemption_code"] == "SQ000001"
        assert "completed_at" in result
        assert "_changes" not in result
        assert sub.queue.get_nowait().kind is ChangeKind.INSERT

    def test_redeem_insufficient_xp_rolls_back(self, db_engine, tmp_path):
        make_profile(db_engine, "t@example.com", xp=99)
        reward = make_reward(db_engine, xp_cost=100)
        client, _ = _client(db_engine, tmp_path, "t@example.com")

        with pytest.raises(InsufficientXP) as info:
            run_async(client.rpc("redeem_reward", {"reward_id": reward["id"], "redemption_code": "SQ1"}))

        assert info.value.balance == 99
        assert info.value.cost == 100
        assert fetch_profile(db_engine, "t@example.com")["xp"] == 99
        assert run_async(client.select("redemptions")) == []

    def test_redeem_unknown_reward(self, db_engine, tmp_path):
        make_profile(db_engine, "t@example.com", xp=99)
        client, _ = _client(db_engine, tmp_path, "t@example.com")
        with pytest.raises(NotFound):
            run_async(client.rpc("redeem_reward", {"reward_id": "missing", "redemption_code": "SQ1"}))

    def test_guest_cannot_call_procedures(self, db_engine, tmp_path):
        client, _ = _client(db_engine, tmp_path)
        with pytest.raises(PermissionDenied):
            run_async(client.rpc("redeem_reward", {"reward_id": "x", "redemption_code": "SQ1"}))

    def test_unknown_procedure(self, db_engine, tmp_path):
        client, _ = _client(db_engine, tmp_path)
        with pytest.raises(BackendError, match="Unknown procedure"):
            run_async(client.rpc("drop_everything", {}))
