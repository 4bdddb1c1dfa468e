"""
sidequest.sync.notifications — Toasts and Blocking Alerts
==========================================================

The UI shows two kinds of messages: transient toasts (state changes worth
mentioning) and blocking alerts (a user action failed).  The notifier keeps
the latest of each on :class:`AppState` and a bounded history for the API.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sidequest.database.models import ContentStatus, SubmissionStatus
from sidequest.sync.events import ChangeKind
from sidequest.sync.state import AppState

logger = logging.getLogger(__name__)

DEFAULT_HISTORY = 100


class NotificationLevel(enum.StrEnum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


# (table, kind, new status) → (message, level)
NOTIFICATION_RULES: dict[tuple[str, ChangeKind, str], tuple[str, NotificationLevel]] = {
    ("quests", ChangeKind.UPDATE, ContentStatus.ACTIVE):
        ("Quest '{title}' is now live!", NotificationLevel.SUCCESS),
    ("quest_progress", ChangeKind.INSERT, SubmissionStatus.PENDING):
        ("New proof submitted for review.", NotificationLevel.INFO),
    ("quest_progress", ChangeKind.UPDATE, SubmissionStatus.PENDING):
        ("Proof submitted for review.", NotificationLevel.INFO),
    ("quest_progress", ChangeKind.UPDATE, SubmissionStatus.APPROVED):
        ("Submission approved! XP has been awarded.", NotificationLevel.SUCCESS),
    ("quest_progress", ChangeKind.UPDATE, SubmissionStatus.REJECTED):
        ("Submission rejected. You can submit new proof.", NotificationLevel.ERROR),
}


@dataclass(frozen=True, slots=True)
class Notification:
    message: str
    level: NotificationLevel = NotificationLevel.INFO
    blocking: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, object]:
        return {
            "message": self.message,
            "level": self.level.value,
            "blocking": self.blocking,
            "created_at": self.created_at,
        }


class Notifier:
    def __init__(self, state: AppState, capacity: int = DEFAULT_HISTORY) -> None:
        self._state = state
        self._history: deque[Notification] = deque(maxlen=capacity)
        # Running total; the history itself is bounded
        self.issued = 0

    def notify(self, message: str, level: NotificationLevel = NotificationLevel.INFO) -> Notification:
        """Show a toast."""
        note = Notification(message, level)
        self._history.append(note)
        self.issued += 1
        self._state.toast = message
        logger.info("Toast: %s", message)
        return note

    def announce(self, table: str, kind: ChangeKind, row: dict) -> Notification | None:
        """Toast the status change of *row*, if a rule covers it."""
        rule = NOTIFICATION_RULES.get((table, kind, row.get("status")))
        if rule is None:
            return None
        template, level = rule
        return self.notify(template.format(title=row.get("title", "")), level)

    def alert(self, message: str) -> Notification:
        """Show a blocking, human-readable failure message."""
        note = Notification(message, NotificationLevel.ERROR, blocking=True)
        self._history.append(note)
        self.issued += 1
        self._state.alert = message
        logger.warning("Alert: %s", message)
        return note

    def dismiss(self) -> None:
        self._state.toast = None
        self._state.alert = None

    def history(self, tail: int = 50) -> list[Notification]:
        return list(self._history)[-tail:]

    def count(self, message_fragment: str | None = None) -> int:
        if message_fragment is None:
            return len(self._history)
        return sum(1 for n in self._history if message_fragment in n.message)
