"""
sidequest.sync.events — Change and Auth Event Envelopes
========================================================

Everything the synchronizer reacts to arrives as one of two tagged variants:

* :class:`ChangeEvent` — one row-level change on a hosted table.
* :class:`AuthEvent` — one session transition from the auth stream.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sidequest.backend.auth import Session

__all__ = ["AuthEvent", "AuthEventType", "ChangeEvent", "ChangeKind"]


class ChangeKind(enum.StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuthEventType(enum.StrEnum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A row-level change: ``new`` is set for INSERT/UPDATE, ``old`` for
    UPDATE/DELETE (the backend may only send the primary key in ``old``)."""

    table: str
    kind: ChangeKind
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @property
    def row_id(self) -> str | None:
        for row in (self.new, self.old):
            if row and row.get("id") is not None:
                return str(row["id"])
        return None

    def to_json(self) -> str:
        return json.dumps(
            {"table": self.table, "type": self.kind.value, "new": self.new, "old": self.old},
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> ChangeEvent:
        """Parse a ``{table, type, new, old}`` payload.

        Raises
        ------
        ValueError
            If the payload is not JSON or lacks ``table`` / ``type``.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ValueError(f"Change payload is not JSON: {raw!r}") from exc
        if not isinstance(data, dict) or "table" not in data or "type" not in data:
            raise ValueError(f"Change payload missing 'table'/'type': {raw!r}")
        return cls(
            table=str(data["table"]),
            kind=ChangeKind(str(data["type"]).upper()),
            new=data.get("new"),
            old=data.get("old"),
        )


@dataclass(frozen=True, slots=True)
class AuthEvent:
    type: AuthEventType
    session: Session | None = None

    @property
    def has_session(self) -> bool:
        return self.session is not None
