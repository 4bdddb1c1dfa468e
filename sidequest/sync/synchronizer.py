"""
sidequest.sync.synchronizer — Client State Synchronizer
========================================================

The single owner of client state.  Construct one per application lifetime
and pass it (or its :attr:`state`) to whatever renders the UI.

Startup wiring (:meth:`ClientSynchronizer.start`):

1. Subscribe to the auth-state stream — it may fire immediately, before boot.
2. Subscribe to the change feed for every mirrored table (one shared queue,
   so one consumer sees all tables in emission order).
3. Start the auth and change consumers.
4. Start the boot sequencer and its watchdog.
5. Optionally start the PG LISTEN bridge for changes from other clients.

Usage::

    sync = ClientSynchronizer.create(cfg, engine, secret)
    await sync.start()
    await sync.wait_until_ready()
    await sync.actions.accept_quest(quest_id)
    view = sync.state.snapshot()
    await sync.stop()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sidequest.backend.auth import AuthClient, CredentialStore, SessionStore
from sidequest.backend.client import BackendClient
from sidequest.backend.realtime import ChangeFeed, Subscription
from sidequest.sync.actions import ActionService
from sidequest.sync.boot import BootSequencer
from sidequest.sync.events import AuthEvent, ChangeEvent
from sidequest.sync.mirror import MIRRORED_TABLES, RealtimeMirror
from sidequest.sync.notifications import Notifier
from sidequest.sync.state import AppState

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from sidequest.config import SideQuestConfig

logger = logging.getLogger(__name__)


class ClientSynchronizer:
    """Owns :class:`AppState` plus everything allowed to mutate it."""

    def __init__(
        self,
        cfg: SideQuestConfig,
        backend: BackendClient,
        auth: AuthClient,
        feed: ChangeFeed,
    ) -> None:
        self.cfg = cfg
        self.backend = backend
        self.auth = auth
        self.feed = feed

        self.state = AppState()
        self.notifier = Notifier(self.state)
        self.boot = BootSequencer(
            self.state,
            backend,
            auth,
            admin_email=cfg.admin_email,
            timeout=cfg.boot_timeout_seconds,
        )
        self.mirror = RealtimeMirror(
            self.state,
            self.notifier,
            hydrate=self.boot.hydrate_profile,
            refresh_profile=self.boot.refresh_profile,
        )
        self.actions = ActionService(
            self.state,
            backend,
            auth,
            self.notifier,
            self.boot,
            redemption_code_prefix=cfg.redemption_code_prefix,
        )

        self._auth_queue: asyncio.Queue[AuthEvent] | None = None
        self._change_queue: asyncio.Queue[ChangeEvent] | None = None
        self._subscriptions: list[Subscription] = []
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def create(cls, cfg: SideQuestConfig, engine: Engine, secret: str) -> ClientSynchronizer:
        """Build the synchronizer and its collaborators from configuration."""
        feed = ChangeFeed(engine)
        auth = AuthClient(
            SessionStore(cfg.session_file),
            secret,
            CredentialStore(engine),
            reserved_emails=(cfg.admin_email,),
        )
        backend = BackendClient(engine, feed, auth, admin_email=cfg.admin_email)
        return cls(cfg, backend, auth, feed)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    @property
    def started(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.started:
            return
        loop = asyncio.get_running_loop()

        self._auth_queue = self.auth.on_auth_state_change()
        self._change_queue = asyncio.Queue()
        self._subscriptions = [
            self.feed.subscribe(table, queue=self._change_queue) for table in MIRRORED_TABLES
        ]

        self._tasks = [
            loop.create_task(self.mirror.consume_auth(self._auth_queue), name="sq-auth-consumer"),
            loop.create_task(
                self.mirror.consume_changes(self._change_queue), name="sq-change-consumer"
            ),
            loop.create_task(self.boot.run(), name="sq-boot"),
            loop.create_task(self.boot.watchdog(), name="sq-boot-watchdog"),
        ]

        if self.cfg.listen_for_remote_changes:
            self.feed.start_listener(loop)
        logger.info("Synchronizer started (%d subscriptions)", len(self._subscriptions))

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for boot to finish (or be forced).  Returns False on timeout."""
        try:
            await asyncio.wait_for(self.boot.completed.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued auth and change event has been applied."""
        for queue in (self._auth_queue, self._change_queue):
            if queue is not None:
                await queue.join()

    async def stop(self) -> None:
        logger.info("Synchronizer stopping…")
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        if self._auth_queue is not None:
            self.auth.remove_listener(self._auth_queue)
        self.feed.stop_listener()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
