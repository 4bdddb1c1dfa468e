"""
sidequest.backend.policies — Row-Level Write Policies
======================================================

Mirrors the hosted backend's row-level security.  An update or delete the
actor may not perform silently skips that row (so the caller sees zero
affected rows); a forbidden insert is rejected outright.

Reads are public.  A client with no actor (the service role used for
seeding and maintenance) bypasses every policy.
"""

from __future__ import annotations

from typing import Any

from sidequest.database.models import ContentStatus, Role, SubmissionStatus

# Statuses only an Admin may set on a submission
_MODERATION_STATUSES = frozenset({SubmissionStatus.APPROVED, SubmissionStatus.REJECTED})


def _is_admin(actor: dict | None) -> bool:
    return actor is not None and actor.get("role") == Role.ADMIN


def can_insert(
    table: str,
    row: dict[str, Any],
    actor: dict | None,
    actor_id: str | None,
    admin_email: str | None = None,
) -> bool:
    if _is_admin(actor):
        return True
    if table == "profiles":
        # Self-repair only; Admin role only for the configured address
        if row.get("id") != actor_id or row.get("xp", 0) != 0:
            return False
        if row.get("role", Role.TRAVELER) == Role.ADMIN:
            return admin_email is not None and str(row.get("email", "")).lower() == admin_email
        return True
    if table in ("quests", "rewards"):
        return (
            actor is not None
            and actor.get("role") == Role.PARTNER
            and row.get("status", ContentStatus.PENDING_ADMIN) == ContentStatus.PENDING_ADMIN
        )
    if table == "quest_progress":
        return (
            row.get("traveler_id") == actor_id
            and row.get("status", SubmissionStatus.IN_PROGRESS) not in _MODERATION_STATUSES
        )
    # Redemptions are only created by the redeem_reward procedure
    return False


def can_update(
    table: str,
    current: dict[str, Any],
    patch: dict[str, Any],
    actor: dict | None,
    actor_id: str | None,
) -> bool:
    if _is_admin(actor):
        return True
    if table == "profiles":
        # Balance and role are never self-editable
        return current.get("id") == actor_id and not ({"xp", "role"} & patch.keys())
    if table in ("quests", "rewards"):
        return (
            current.get("created_by") == actor_id
            and patch.get("status", ContentStatus.PENDING_ADMIN) == ContentStatus.PENDING_ADMIN
        )
    if table == "quest_progress":
        return (
            current.get("traveler_id") == actor_id
            and current.get("status") != SubmissionStatus.APPROVED
            and patch.get("status") not in _MODERATION_STATUSES
        )
    return False


def can_delete(table: str, current: dict[str, Any], actor: dict | None, actor_id: str | None) -> bool:
    if _is_admin(actor):
        return True
    if table in ("quests", "rewards"):
        return current.get("created_by") == actor_id
    if table == "quest_progress":
        return (
            current.get("traveler_id") == actor_id
            and current.get("status") == SubmissionStatus.IN_PROGRESS
        )
    return False
