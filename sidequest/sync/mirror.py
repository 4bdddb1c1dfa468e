"""
sidequest.sync.mirror — Realtime Mirror & Race Guard
=====================================================

Keeps the local collections in step with the backend without polling.

Two independent streams are consumed, each in its own task:

* **auth events** — filtered by the race guard: while
  ``state.phase is BootPhase.BOOTING`` they are logged and dropped.
* **change events** — per-table INSERT / UPDATE / DELETE, merged by id:
  INSERT adds only if absent, UPDATE replaces, DELETE removes.  Applying the
  same event twice is a no-op, which is what lets every action update local
  state immediately and treat the realtime echo as a duplicate.

Derived notifications are side effects of a change that actually altered
local state and moved its status, so an echo never notifies twice.  Actions
that merge their own writes announce them through the same rules
(:meth:`Notifier.announce`).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from sidequest.database.models import SubmissionStatus
from sidequest.sync.events import AuthEvent, AuthEventType, ChangeEvent, ChangeKind
from sidequest.sync.notifications import Notifier
from sidequest.sync.state import AppState, BootPhase, Collection

if TYPE_CHECKING:
    from sidequest.backend.auth import Session

logger = logging.getLogger(__name__)

# Tables mirrored into local state
MIRRORED_TABLES: tuple[str, ...] = ("quests", "rewards", "quest_progress")

# Submissions are user-scoped; other tables are public
USER_SCOPED_TABLES: frozenset[str] = frozenset({"quest_progress"})

SESSION_EVENTS: frozenset[AuthEventType] = frozenset({
    AuthEventType.INITIAL_SESSION,
    AuthEventType.SIGNED_IN,
    AuthEventType.TOKEN_REFRESHED,
    AuthEventType.USER_UPDATED,
})

SIGN_OUT_EVENTS: frozenset[AuthEventType] = frozenset({
    AuthEventType.SIGNED_OUT,
    AuthEventType.USER_DELETED,
})


def _status_transition(previous: dict | None, event: ChangeEvent) -> bool:
    """True unless *event* repeats the status already held locally.

    Echoes of the same write can differ in formatting (timestamps rendered by
    the database), so notifications key on the status alone.
    """
    if previous is None or event.new is None:
        return True
    return previous.get("status") != event.new.get("status")


class RealtimeMirror:
    """Applies auth and change events to :class:`AppState`.

    Parameters
    ----------
    hydrate:
        Coroutine function hydrating the profile for a session (the boot
        sequencer's ``hydrate_profile``).
    refresh_profile:
        Coroutine function re-reading the signed-in profile; called when one
        of the user's own submissions is approved (the XP credit lands on the
        profile row, which is not mirrored).
    """

    def __init__(
        self,
        state: AppState,
        notifier: Notifier,
        hydrate: Callable[[Session], Awaitable[None]],
        refresh_profile: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._state = state
        self._notifier = notifier
        self._hydrate = hydrate
        self._refresh_profile = refresh_profile
        self._handlers: dict[ChangeKind, Callable[[Collection, ChangeEvent], bool]] = {
            ChangeKind.INSERT: self._on_insert,
            ChangeKind.UPDATE: self._on_update,
            ChangeKind.DELETE: self._on_delete,
        }

    # -------------------------------------------------------------------
    # Auth events
    # -------------------------------------------------------------------
    async def handle_auth_event(self, event: AuthEvent) -> bool:
        """Apply *event*.  Returns False when the race guard dropped it."""
        state = self._state
        if state.phase is BootPhase.BOOTING:
            logger.info("Auth event %s ignored — boot in progress", event.type)
            return False

        if event.type in SIGN_OUT_EVENTS:
            logger.info("Auth event %s — clearing user state", event.type)
            state.clear_user_scope()
            state.show_auth_modal = False
            return True

        if event.type in SESSION_EVENTS and event.session is not None:
            if state.profile is None:
                logger.info("Auth event %s — hydrating %s", event.type, event.session.email)
                await self._hydrate(event.session)
            state.show_auth_modal = False
            return True

        logger.debug("Auth event %s without session — nothing to do", event.type)
        return True

    # -------------------------------------------------------------------
    # Change events
    # -------------------------------------------------------------------
    def _in_scope(self, event: ChangeEvent) -> bool:
        if event.table not in USER_SCOPED_TABLES:
            return True
        profile = self._state.profile
        if profile is None:
            return False
        if self._state.is_admin:
            return True
        row = event.new or event.old or {}
        # DELETE payloads may carry only the id; trust local membership then
        if "traveler_id" not in row:
            return event.row_id in self._state.submissions
        return row["traveler_id"] == profile["id"]

    def apply_change(self, event: ChangeEvent) -> bool:
        """Merge *event* into local state.  Returns True if state changed."""
        collection = self._state.collection_for(event.table)
        if event.table not in MIRRORED_TABLES or collection is None:
            logger.debug("Ignoring change on unmirrored table %s", event.table)
            return False
        if event.row_id is None:
            logger.warning("Change on %s without a row id — ignoring", event.table)
            return False
        if not self._in_scope(event):
            return False

        previous = collection.get(event.row_id)
        changed = self._handlers[event.kind](collection, event)
        if changed and _status_transition(previous, event):
            self._notify(event)
        return changed

    async def handle_change(self, event: ChangeEvent) -> bool:
        changed = self.apply_change(event)
        if (
            changed
            and self._refresh_profile is not None
            and event.table == "quest_progress"
            and event.kind is ChangeKind.UPDATE
            and (event.new or {}).get("status") == SubmissionStatus.APPROVED
            and self._state.profile is not None
            and event.new.get("traveler_id") == self._state.profile["id"]
        ):
            await self._refresh_profile()
        return changed

    @staticmethod
    def _on_insert(collection: Collection, event: ChangeEvent) -> bool:
        return collection.add_if_absent(event.new)

    @staticmethod
    def _on_update(collection: Collection, event: ChangeEvent) -> bool:
        return collection.upsert(event.new)

    @staticmethod
    def _on_delete(collection: Collection, event: ChangeEvent) -> bool:
        return collection.remove(event.row_id)

    def _notify(self, event: ChangeEvent) -> None:
        if event.new is not None:
            self._notifier.announce(event.table, event.kind, event.new)

    # -------------------------------------------------------------------
    # Consumer loops
    # -------------------------------------------------------------------
    async def consume_auth(self, queue: asyncio.Queue[AuthEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.handle_auth_event(event)
            except Exception:
                logger.exception("Error handling auth event %s", event.type)
            finally:
                queue.task_done()

    async def consume_changes(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.handle_change(event)
            except Exception:
                logger.exception("Error applying %s on %s", event.kind, event.table)
            finally:
                queue.task_done()
