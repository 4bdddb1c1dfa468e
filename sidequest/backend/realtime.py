"""
sidequest.backend.realtime — Change Feed with PG LISTEN/NOTIFY Bridge
======================================================================

Fan-out of row-level :class:`ChangeEvent` messages to subscribers.

Two producers feed it:

1. :class:`~sidequest.backend.client.BackendClient` publishes every write it
   performs, on the event-loop thread, right after the write returns.
2. An optional background thread ``LISTEN``\\ s on the PostgreSQL channel
   ``sidequest_changes`` (fed by the trigger installed by the Alembic
   migration) so changes made by *other* clients arrive too.

Subscribers receive events on an :class:`asyncio.Queue`; several
subscriptions may share one queue so a single consumer sees every table in
emission order.
"""

from __future__ import annotations

import asyncio
import logging
import random
import select as _select
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sidequest.sync.events import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel the change trigger notifies on
CHANGE_CHANNEL = "sidequest_changes"

# Tables whose changes may be published
REALTIME_TABLES: frozenset[str] = frozenset({
    "quests",
    "rewards",
    "quest_progress",
    "redemptions",
    "profiles",
})

ALL_KINDS: frozenset[ChangeKind] = frozenset(ChangeKind)


class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        kinds: frozenset[ChangeKind],
        queue: asyncio.Queue[ChangeEvent],
    ) -> None:
        self._feed = feed
        self.table = table
        self.kinds = kinds
        self.queue = queue
        self.active = True

    def accepts(self, event: ChangeEvent) -> bool:
        return self.active and event.table == self.table and event.kind in self.kinds

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    """In-process change fan-out, optionally bridged to PostgreSQL NOTIFY.

    Usage::

        feed = ChangeFeed(engine)
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        feed.subscribe("quests", queue=queue)
        feed.subscribe("quest_progress", {ChangeKind.INSERT, ChangeKind.UPDATE}, queue=queue)
        feed.start_listener(asyncio.get_running_loop())
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._subscriptions: list[Subscription] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self,
        table: str,
        kinds: Iterable[ChangeKind] | None = None,
        queue: asyncio.Queue[ChangeEvent] | None = None,
    ) -> Subscription:
        """Subscribe to *kinds* of changes on *table* (all kinds by default)."""
        if table not in REALTIME_TABLES:
            raise ValueError(
                f"Invalid table for subscription: '{table}'. "
                f"Allowed: {sorted(REALTIME_TABLES)}"
            )
        sub = Subscription(
            self,
            table,
            frozenset(kinds) if kinds is not None else ALL_KINDS,
            queue if queue is not None else asyncio.Queue(),
        )
        self._subscriptions.append(sub)
        logger.debug("Subscribed to %s %s", table, sorted(sub.kinds))
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            logger.debug("Unsubscribed from %s", sub.table)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver *event* to every matching subscription.  Loop thread only.

        Returns the number of subscriptions the event was delivered to.
        """
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.accepts(event):
                sub.queue.put_nowait(event)
                delivered += 1
        return delivered

    def publish_threadsafe(self, event: ChangeEvent) -> None:
        """Hand *event* to the loop thread (used by the LISTEN thread)."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Dropping %s on %s — no event loop available", event.kind, event.table)
            return
        loop.call_soon_threadsafe(self.publish, event)

    def handle_payload(self, raw_payload: str) -> None:
        """Parse a NOTIFY payload and forward it to the loop thread."""
        try:
            event = ChangeEvent.from_json(raw_payload)
        except ValueError:
            logger.warning("Invalid change payload: %s", raw_payload)
            return
        if event.table not in REALTIME_TABLES:
            logger.warning("Unknown table in change payload: %s — ignoring", event.table)
            return
        self.publish_threadsafe(event)

    # -------------------------------------------------------------------
    # PG LISTEN bridge
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG change listener thread stopped")

    def start_listener(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start a background thread that LISTENs on :data:`CHANGE_CHANNEL`.

        Reconnects with exponential backoff + jitter and gives up after
        ``max_reconnect_attempts`` consecutive failures.
        """
        if self._engine is None:
            raise RuntimeError("ChangeFeed has no engine; cannot LISTEN")

        import psycopg2

        self._loop = loop
        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {CHANGE_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", CHANGE_CHANNEL)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            logger.debug("NOTIFY received: %s", notify.payload)
                            self.handle_payload(notify.payload or "")

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. "
                            "Remote changes will not be mirrored.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-change-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("PG change listener thread started")
