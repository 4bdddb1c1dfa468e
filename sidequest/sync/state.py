"""
sidequest.sync.state — Application State Owned by the Synchronizer
===================================================================

One :class:`AppState` exists per application lifetime.  It is created by
:class:`~sidequest.sync.synchronizer.ClientSynchronizer` and handed by
reference to the boot sequencer, the mirror and the actions; UI code only
ever reads it (via :meth:`AppState.snapshot` and the derived views).
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from sidequest.database.models import ContentStatus, Role, SubmissionStatus


class BootPhase(enum.StrEnum):
    """Race guard: auth events are dropped while ``BOOTING``."""
    BOOTING = "booting"
    READY = "ready"


class Collection:
    """Rows keyed by id, in arrival order."""

    def __init__(self, rows: Iterable[dict] = ()) -> None:
        self._rows: dict[str, dict] = {}
        self.replace_all(rows)

    def replace_all(self, rows: Iterable[dict]) -> None:
        self._rows = {str(r["id"]): dict(r) for r in rows}

    def add_if_absent(self, row: dict) -> bool:
        """Insert *row* unless its id is already present.  Returns True if added."""
        key = str(row["id"])
        if key in self._rows:
            return False
        self._rows[key] = dict(row)
        return True

    def upsert(self, row: dict) -> bool:
        """Replace (or add) the row with *row*'s id.  Returns True if anything changed."""
        key = str(row["id"])
        if self._rows.get(key) == row:
            return False
        self._rows[key] = dict(row)
        return True

    def remove(self, row_id: str) -> bool:
        return self._rows.pop(str(row_id), None) is not None

    def clear(self) -> None:
        self._rows.clear()

    def get(self, row_id: str) -> dict | None:
        return self._rows.get(str(row_id))

    def find(self, **criteria: Any) -> list[dict]:
        return [
            dict(r) for r in self._rows.values()
            if all(r.get(k) == v for k, v in criteria.items())
        ]

    def to_list(self) -> list[dict]:
        return [dict(r) for r in self._rows.values()]

    def __contains__(self, row_id: object) -> bool:
        return str(row_id) in self._rows

    def __iter__(self) -> Iterator[dict]:
        return iter(list(self._rows.values()))

    def __len__(self) -> int:
        return len(self._rows)

    def __repr__(self) -> str:
        return f"<Collection n={len(self._rows)}>"


@dataclass
class AppState:
    phase: BootPhase = BootPhase.BOOTING
    loading: bool = True
    show_auth_modal: bool = False

    profile: dict | None = None
    quests: Collection = field(default_factory=Collection)
    rewards: Collection = field(default_factory=Collection)
    submissions: Collection = field(default_factory=Collection)
    redemptions: Collection = field(default_factory=Collection)
    # Admin oversight: every profile
    all_users: Collection = field(default_factory=Collection)

    toast: str | None = None
    alert: str | None = None

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------
    def clear_user_scope(self) -> None:
        """Drop everything tied to the signed-in user."""
        self.profile = None
        self.submissions.clear()
        self.redemptions.clear()
        self.all_users.clear()

    def collection_for(self, table: str) -> Collection | None:
        return {
            "quests": self.quests,
            "rewards": self.rewards,
            "quest_progress": self.submissions,
            "redemptions": self.redemptions,
            "profiles": self.all_users,
        }.get(table)

    # -------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------
    @property
    def is_ready(self) -> bool:
        return self.phase is BootPhase.READY and not self.loading

    @property
    def role(self) -> Role | None:
        if self.profile is None:
            return None
        return Role(self.profile["role"])

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def submission_for(self, quest_id: str, traveler_id: str) -> dict | None:
        for row in self.submissions:
            if row["quest_id"] == quest_id and row["traveler_id"] == traveler_id:
                return row
        return None

    def _visible(self, rows: Collection) -> list[dict]:
        if self.is_admin:
            return rows.to_list()
        me = self.profile["id"] if self.profile else None
        return [
            dict(r) for r in rows
            if r.get("status") == ContentStatus.ACTIVE or (me and r.get("created_by") == me)
        ]

    def visible_quests(self) -> list[dict]:
        """Active quests, plus the viewer's own drafts (everything for Admins)."""
        return self._visible(self.quests)

    def visible_rewards(self) -> list[dict]:
        return self._visible(self.rewards)

    def pending_reviews(self) -> dict[str, list[dict]]:
        """Everything awaiting an Admin decision (moderation queue)."""
        return {
            "submissions": self.submissions.find(status=SubmissionStatus.PENDING),
            "quests": self.quests.find(status=ContentStatus.PENDING_ADMIN),
            "rewards": self.rewards.find(status=ContentStatus.PENDING_ADMIN),
        }

    def snapshot(self) -> dict:
        """Read-only, JSON-serializable view for UI components."""
        return {
            "phase": self.phase.value,
            "loading": self.loading,
            "show_auth_modal": self.show_auth_modal,
            "profile": dict(self.profile) if self.profile else None,
            "quests": self.visible_quests(),
            "rewards": self.visible_rewards(),
            "submissions": self.submissions.to_list(),
            "redemptions": self.redemptions.to_list(),
            "users": self.all_users.to_list() if self.is_admin else [],
            "toast": self.toast,
            "alert": self.alert,
        }
