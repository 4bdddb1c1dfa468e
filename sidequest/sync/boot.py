"""
sidequest.sync.boot — Boot Sequencer
=====================================

Produces the initial snapshot exactly once per application lifetime, and
never shows a login prompt to a user who is not yet known to be a guest.

Strict order:

1. Enter loading, force the login modal closed.
2. Fetch public content (quests, rewards); either may fail → empty.
3. Recover the persisted session.
4. Session → await full profile hydration.  No session → guest.
5. Release the race guard and clear loading.

Step 5 always runs, even when 1–4 raise.  A watchdog
(:meth:`BootSequencer.watchdog`) forces step 5 after ``timeout`` seconds
without cancelling the requests still in flight.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sidequest.backend.client import BackendError, ConflictError
from sidequest.database.models import Role
from sidequest.sync.state import AppState, BootPhase

if TYPE_CHECKING:
    from sidequest.backend.auth import AuthClient, Session
    from sidequest.backend.client import BackendClient

logger = logging.getLogger(__name__)

PUBLIC_TABLES: tuple[str, ...] = ("quests", "rewards")


class BootSequencer:
    def __init__(
        self,
        state: AppState,
        backend: BackendClient,
        auth: AuthClient,
        *,
        admin_email: str,
        timeout: float,
    ) -> None:
        self._state = state
        self._backend = backend
        self._auth = auth
        self._admin_email = admin_email.strip().lower()
        self.timeout = timeout
        self.completed = asyncio.Event()
        self.timed_out = False
        # user id → in-flight hydration, shared by concurrent callers
        self._hydrations: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------
    # The sequence
    # -------------------------------------------------------------------
    async def run(self) -> None:
        state = self._state
        try:
            state.loading = True
            state.show_auth_modal = False

            await self.load_public_content()

            session = await self._auth.get_session()
            if session is not None:
                logger.info("Boot: session found for %s — hydrating", session.email)
                await self.hydrate_profile(session)
            else:
                logger.info("Boot: no session — guest mode")
                state.show_auth_modal = False
        except Exception:
            logger.exception("Boot sequence failed — continuing as far as possible")
        finally:
            self.finish("complete")

    def finish(self, reason: str) -> None:
        """Release the race guard and clear loading.  Idempotent."""
        if self._state.phase is BootPhase.BOOTING:
            logger.info("Boot finished (%s)", reason)
        self._state.phase = BootPhase.READY
        self._state.loading = False
        self.completed.set()

    async def watchdog(self) -> None:
        """Force-finish boot after :attr:`timeout` seconds (safety valve)."""
        await asyncio.sleep(self.timeout)
        if self.completed.is_set():
            return
        self.timed_out = True
        logger.warning(
            "Boot did not finish within %.1fs — forcing ready (requests stay in flight)",
            self.timeout,
        )
        self.finish("timeout")

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------
    async def _fetch_or_empty(self, table: str, **filters) -> list[dict]:
        try:
            return await self._backend.select(table, filters or None)
        except BackendError:
            logger.exception("Failed to load %s — using an empty collection", table)
            return []

    async def load_public_content(self) -> None:
        quests, rewards = await asyncio.gather(
            *(self._fetch_or_empty(t) for t in PUBLIC_TABLES)
        )
        self._state.quests.replace_all(quests)
        self._state.rewards.replace_all(rewards)
        logger.info("Loaded %d quests, %d rewards", len(quests), len(rewards))

    async def refresh_collection(self, table: str) -> None:
        """Full re-fetch of one collection (after an admin approval)."""
        collection = self._state.collection_for(table)
        if collection is None:
            raise ValueError(f"No local collection for table '{table}'")
        collection.replace_all(await self._backend.select(table))

    def _default_role(self, email: str) -> Role:
        return Role.ADMIN if email.strip().lower() == self._admin_email else Role.TRAVELER

    async def fetch_or_repair_profile(self, session: Session) -> dict:
        """Return the session user's profile, creating it if it is missing."""
        profile = await self._backend.select_one("profiles", session.user_id)
        if profile is not None:
            return profile

        logger.warning("No profile for session user %s — repairing", session.user_id)
        try:
            rows = await self._backend.insert("profiles", {
                "id": session.user_id,
                "email": session.email,
                "full_name": session.full_name or session.email.split("@")[0],
                "role": self._default_role(session.email),
                "xp": 0,
            })
        except ConflictError:
            # A concurrent hydration repaired it first
            profile = await self._backend.select_one("profiles", session.user_id)
            if profile is None:
                raise
            return profile
        return rows[0]

    async def hydrate_profile(self, session: Session) -> None:
        """Profile fetch-or-repair, then the user's dependent data.

        A sign-in action and the auth event it emits both ask for hydration;
        a call made while one is in flight for the same user awaits that one.
        """
        task = self._hydrations.get(session.user_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._hydrate(session), name=f"sq-hydrate-{session.user_id}"
            )
            self._hydrations[session.user_id] = task
            task.add_done_callback(
                lambda done, uid=session.user_id: self._forget_hydration(uid, done)
            )
        await task

    def _forget_hydration(self, user_id: str, task: asyncio.Task) -> None:
        if self._hydrations.get(user_id) is task:
            del self._hydrations[user_id]

    async def _hydrate(self, session: Session) -> None:
        profile = await self.fetch_or_repair_profile(session)
        self._state.profile = profile
        await self.load_user_data(profile)

    async def load_user_data(self, profile: dict) -> None:
        if profile["role"] == Role.ADMIN:
            await self.load_admin_oversight()
            self._state.redemptions.replace_all(
                await self._fetch_or_empty("redemptions", traveler_id=profile["id"])
            )
            return

        submissions, redemptions = await asyncio.gather(
            self._fetch_or_empty("quest_progress", traveler_id=profile["id"]),
            self._fetch_or_empty("redemptions", traveler_id=profile["id"]),
        )
        self._state.submissions.replace_all(submissions)
        self._state.redemptions.replace_all(redemptions)

    async def load_admin_oversight(self) -> None:
        """Every submission and every profile."""
        submissions, users = await asyncio.gather(
            self._fetch_or_empty("quest_progress"),
            self._fetch_or_empty("profiles"),
        )
        self._state.submissions.replace_all(submissions)
        self._state.all_users.replace_all(users)
        # Keep the admin's own balance in step with the oversight list
        me = self._state.profile
        if me is not None and me["id"] in self._state.all_users:
            self._state.profile = self._state.all_users.get(me["id"])

    async def refresh_profile(self) -> None:
        me = self._state.profile
        if me is None:
            return
        fresh = await self._backend.select_one("profiles", me["id"])
        if fresh is not None:
            self._state.profile = fresh
