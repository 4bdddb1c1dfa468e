"""
tests/test_mirror.py — Realtime Mirror & Race Guard
====================================================

Exercises the mirror against a bare AppState (no database): auth events
dropped while booting, idempotent merges, status-gated notifications and
user-scoped submissions.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import run_async
from sidequest.sync.events import AuthEvent, AuthEventType, ChangeEvent, ChangeKind
from sidequest.sync.mirror import RealtimeMirror
from sidequest.sync.notifications import Notifier
from sidequest.sync.state import AppState, BootPhase


def _session(user_id: str = "me", email: str = "me@example.com"):
    session = MagicMock()
    session.user_id = user_id
    session.email = email
    return session


@pytest.fixture
def state() -> AppState:
    return AppState()


@pytest.fixture
def notifier(state) -> Notifier:
    return Notifier(state)


@pytest.fixture
def hydrate():
    return AsyncMock()


@pytest.fixture
def mirror(state, notifier, hydrate) -> RealtimeMirror:
    return RealtimeMirror(state, notifier, hydrate=hydrate, refresh_profile=AsyncMock())


def _ready(state: AppState, role: str | None = "Traveler", user_id: str = "me") -> None:
    state.phase = BootPhase.READY
    state.loading = False
    if role is not None:
        state.profile = {"id": user_id, "role": role, "xp": 0, "full_name": "Me"}


# ===========================================================================
# Race guard
# ===========================================================================
class TestRaceGuard:
    def test_auth_events_dropped_while_booting(self, mirror, state, hydrate):
        event = AuthEvent(AuthEventType.SIGNED_IN, _session())
        assert run_async(mirror.handle_auth_event(event)) is False
        hydrate.assert_not_awaited()
        assert state.profile is None
        assert state.show_auth_modal is False

    def test_sign_out_dropped_while_booting(self, mirror, state):
        state.profile = {"id": "me", "role": "Traveler"}
        run_async(mirror.handle_auth_event(AuthEvent(AuthEventType.SIGNED_OUT)))
        assert state.profile == {"id": "me", "role": "Traveler"}

    def test_sign_in_after_boot_hydrates(self, mirror, state, hydrate):
        _ready(state, role=None)
        state.show_auth_modal = True
        session = _session()
        assert run_async(mirror.handle_auth_event(AuthEvent(AuthEventType.SIGNED_IN, session)))
        hydrate.assert_awaited_once_with(session)
        assert state.show_auth_modal is False

    def test_token_refresh_does_not_rehydrate_known_profile(self, mirror, state, hydrate):
        _ready(state)
        run_async(mirror.handle_auth_event(AuthEvent(AuthEventType.TOKEN_REFRESHED, _session())))
        hydrate.assert_not_awaited()

    def test_sign_out_clears_user_scope(self, mirror, state):
        _ready(state)
        state.submissions.replace_all([{"id": "s1", "quest_id": "q", "traveler_id": "me"}])
        state.quests.replace_all([{"id": "q", "status": "active"}])
        run_async(mirror.handle_auth_event(AuthEvent(AuthEventType.SIGNED_OUT)))
        assert state.profile is None
        assert len(state.submissions) == 0
        assert len(state.quests) == 1
        assert state.show_auth_modal is False

    def test_initial_session_without_session_is_noop(self, mirror, state, hydrate):
        _ready(state, role=None)
        assert run_async(mirror.handle_auth_event(AuthEvent(AuthEventType.INITIAL_SESSION)))
        hydrate.assert_not_awaited()
        assert state.profile is None


# ===========================================================================
# Merging
# ===========================================================================
class TestMerge:
    def test_insert_is_idempotent(self, mirror, state):
        _ready(state)
        event = ChangeEvent("quests", ChangeKind.INSERT, new={"id": "q1", "title": "A", "status": "active"})
        assert mirror.apply_change(event) is True
        assert mirror.apply_change(event) is False
        assert len(state.quests) == 1

    def test_insert_does_not_overwrite_local_row(self, mirror, state):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "title": "local", "status": "active"}])
        mirror.apply_change(ChangeEvent("quests", ChangeKind.INSERT, new={"id": "q1", "title": "echo"}))
        assert state.quests.get("q1")["title"] == "local"

    def test_update_replaces_by_id(self, mirror, state):
        _ready(state)
        state.rewards.replace_all([{"id": "r1", "title": "old", "status": "active"}])
        mirror.apply_change(
            ChangeEvent("rewards", ChangeKind.UPDATE, new={"id": "r1", "title": "new", "status": "active"})
        )
        assert state.rewards.get("r1")["title"] == "new"

    def test_delete_with_id_only_payload(self, mirror, state):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "status": "active"}])
        assert mirror.apply_change(ChangeEvent("quests", ChangeKind.DELETE, old={"id": "q1"})) is True
        assert "q1" not in state.quests

    def test_unmirrored_table_ignored(self, mirror, state):
        _ready(state)
        event = ChangeEvent("redemptions", ChangeKind.INSERT, new={"id": "x", "traveler_id": "me"})
        assert mirror.apply_change(event) is False

    def test_event_without_id_ignored(self, mirror, state):
        _ready(state)
        assert mirror.apply_change(ChangeEvent("quests", ChangeKind.INSERT, new={"title": "?"})) is False


# ===========================================================================
# Notifications
# ===========================================================================
class TestNotifications:
    def test_quest_going_live_notifies_once(self, mirror, state, notifier):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "title": "Reef Survey", "status": "pending_admin"}])
        live = {"id": "q1", "title": "Reef Survey", "status": "active"}

        mirror.apply_change(ChangeEvent("quests", ChangeKind.UPDATE, new=live))
        mirror.apply_change(ChangeEvent("quests", ChangeKind.UPDATE, new=dict(live)))

        assert notifier.count("is now live") == 1
        assert state.toast == "Quest 'Reef Survey' is now live!"

    def test_echo_with_different_formatting_does_not_renotify(self, mirror, state, notifier):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "title": "T", "status": "pending_admin"}])
        mirror.apply_change(ChangeEvent("quests", ChangeKind.UPDATE, new={
            "id": "q1", "title": "T", "status": "active", "created_at": "2026-10-19T09:00:00+00:00",
        }))
        mirror.apply_change(ChangeEvent("quests", ChangeKind.UPDATE, new={
            "id": "q1", "title": "T", "status": "active", "created_at": "2026-10-19T09:00:00.000000+00:00",
        }))
        assert notifier.count("is now live") == 1

    def test_non_status_edit_does_not_notify(self, mirror, state, notifier):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "title": "T", "status": "active"}])
        mirror.apply_change(
            ChangeEvent("quests", ChangeKind.UPDATE, new={"id": "q1", "title": "T2", "status": "active"})
        )
        assert notifier.count() == 0

    def test_quest_deactivated_does_not_notify(self, mirror, state, notifier):
        _ready(state)
        state.quests.replace_all([{"id": "q1", "title": "T", "status": "active"}])
        mirror.apply_change(
            ChangeEvent("quests", ChangeKind.UPDATE, new={"id": "q1", "title": "T", "status": "inactive"})
        )
        assert notifier.count() == 0

    @pytest.mark.parametrize(
        "status, fragment",
        [
            ("approved", "Submission approved"),
            ("rejected", "Submission rejected"),
            ("pending", "Proof submitted for review"),
        ],
    )
    def test_submission_status_messages(self, mirror, state, notifier, status, fragment):
        _ready(state)
        state.submissions.replace_all([
            {"id": "s1", "quest_id": "q", "traveler_id": "me", "status": "in_progress"},
        ])
        mirror.apply_change(ChangeEvent("quest_progress", ChangeKind.UPDATE, new={
            "id": "s1", "quest_id": "q", "traveler_id": "me", "status": status,
        }))
        assert notifier.count(fragment) == 1


# ===========================================================================
# User scope
# ===========================================================================
class TestSubmissionScope:
    def _sub(self, traveler_id: str, status: str = "pending") -> dict:
        return {"id": f"s-{traveler_id}", "quest_id": "q", "traveler_id": traveler_id, "status": status}

    def test_guest_ignores_submissions(self, mirror, state):
        _ready(state, role=None)
        assert mirror.apply_change(ChangeEvent("quest_progress", ChangeKind.INSERT, new=self._sub("me"))) is False
        assert len(state.submissions) == 0

    def test_traveler_ignores_other_travelers(self, mirror, state):
        _ready(state)
        mirror.apply_change(ChangeEvent("quest_progress", ChangeKind.INSERT, new=self._sub("someone")))
        assert len(state.submissions) == 0

    def test_admin_sees_every_submission(self, mirror, state, notifier):
        _ready(state, role="Admin")
        mirror.apply_change(ChangeEvent("quest_progress", ChangeKind.INSERT, new=self._sub("someone")))
        assert len(state.submissions) == 1
        assert notifier.count("New proof submitted") == 1

    def test_own_approval_refreshes_profile(self, state, notifier, hydrate):
        refresh = AsyncMock()
        mirror = RealtimeMirror(state, notifier, hydrate=hydrate, refresh_profile=refresh)
        _ready(state)
        state.submissions.replace_all([self._sub("me")])
        run_async(mirror.handle_change(
            ChangeEvent("quest_progress", ChangeKind.UPDATE, new=self._sub("me", "approved"))
        ))
        refresh.assert_awaited_once()


# ===========================================================================
# Consumer loop
# ===========================================================================
class TestConsumers:
    def test_consumer_survives_a_bad_event(self, state, notifier):
        hydrate = AsyncMock(side_effect=RuntimeError("boom"))
        mirror = RealtimeMirror(state, notifier, hydrate=hydrate)
        _ready(state, role=None)

        async def _inner():
            queue: asyncio.Queue = asyncio.Queue()
            task = asyncio.get_running_loop().create_task(mirror.consume_auth(queue))
            queue.put_nowait(AuthEvent(AuthEventType.SIGNED_IN, _session()))
            queue.put_nowait(AuthEvent(AuthEventType.SIGNED_OUT))
            await queue.join()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        run_async(_inner())
        assert hydrate.await_count == 1
        assert state.profile is None
