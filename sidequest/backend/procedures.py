"""
sidequest.backend.procedures — Atomic Server Procedures
========================================================

Multi-row writes that must never be observed half-applied run here, inside
one database transaction, instead of as separate client writes:

* ``redeem_reward``      — XP debit + redemption insert
* ``approve_submission`` — status → approved + XP credit to the traveler

Either every row changes or none does.  Each procedure returns the rows it
touched plus a private ``_changes`` list of :class:`ChangeEvent`\\ s that
:meth:`BackendClient.rpc` publishes after the transaction commits.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from sidequest.backend.client import (
    BackendError,
    ConflictError,
    NotFound,
    PermissionDenied,
    row_to_dict,
)
from sidequest.database.engine import get_session
from sidequest.database.models import (
    ContentStatus,
    Profile,
    Quest,
    QuestProgress,
    Redemption,
    Reward,
    Role,
    SubmissionStatus,
)
from sidequest.sync.events import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


class InsufficientXP(BackendError):
    """The traveler's balance does not cover the reward's cost."""

    def __init__(self, balance: int, cost: int) -> None:
        super().__init__(f"Insufficient XP: balance {balance} < cost {cost}")
        self.balance = balance
        self.cost = cost


def _require_actor(session: Session, actor_id: str | None) -> Profile:
    if actor_id is None:
        raise PermissionDenied("Sign-in required")
    actor = session.get(Profile, actor_id)
    if actor is None:
        raise PermissionDenied("No profile for the signed-in user")
    return actor


# ---------------------------------------------------------------------------
# redeem_reward
# ---------------------------------------------------------------------------
def redeem_reward(session: Session, actor_id: str | None, params: dict) -> dict:
    """Debit ``reward.xp_cost`` from the actor and issue a redemption.

    Params: ``reward_id``, ``redemption_code``.
    """
    actor = _require_actor(session, actor_id)
    # Lock the balance row so two concurrent redeems cannot both pass the check
    actor = session.scalars(
        select(Profile).where(Profile.id == actor.id).with_for_update()
    ).one()

    reward = session.get(Reward, params["reward_id"])
    if reward is None:
        raise NotFound(f"Reward {params['reward_id']} not found")
    if reward.status != ContentStatus.ACTIVE:
        raise ConflictError(f"Reward {reward.id} is not available")
    if actor.xp < reward.xp_cost:
        raise InsufficientXP(actor.xp, reward.xp_cost)

    actor.xp -= reward.xp_cost
    redemption = Redemption(
        traveler_id=actor.id,
        reward_id=reward.id,
        redemption_code=params["redemption_code"],
    )
    session.add(redemption)
    session.flush()
    session.refresh(redemption)

    profile_row = row_to_dict(actor)
    redemption_row = row_to_dict(redemption)
    logger.info(
        "Redeemed reward %s for %s (-%d XP, balance %d)",
        reward.id, actor.id, reward.xp_cost, actor.xp,
    )
    return {
        "profile": profile_row,
        "redemption": redemption_row,
        "_changes": [
            ChangeEvent("profiles", ChangeKind.UPDATE, new=profile_row),
            ChangeEvent("redemptions", ChangeKind.INSERT, new=redemption_row),
        ],
    }


# ---------------------------------------------------------------------------
# approve_submission
# ---------------------------------------------------------------------------
def approve_submission(session: Session, actor_id: str | None, params: dict) -> dict:
    """Approve a submission and credit the quest's XP to its traveler.

    Params: ``submission_id``.  Admin only.  Approving twice is a conflict,
    so XP is never credited twice for one submission.
    """
    actor = _require_actor(session, actor_id)
    if actor.role != Role.ADMIN:
        raise PermissionDenied("Only admins can approve submissions")

    submission = session.get(QuestProgress, params["submission_id"])
    if submission is None:
        raise NotFound(f"Submission {params['submission_id']} not found")
    if submission.status == SubmissionStatus.APPROVED:
        raise ConflictError(f"Submission {submission.id} is already approved")

    quest = session.get(Quest, submission.quest_id)
    if quest is None:
        raise NotFound(f"Quest {submission.quest_id} not found")
    traveler = session.scalars(
        select(Profile).where(Profile.id == submission.traveler_id).with_for_update()
    ).one_or_none()
    if traveler is None:
        raise NotFound(f"Traveler {submission.traveler_id} not found")

    before = row_to_dict(submission)
    submission.status = SubmissionStatus.APPROVED
    traveler.xp += quest.xp_value
    session.flush()

    submission_row = row_to_dict(submission)
    profile_row = row_to_dict(traveler)
    logger.info(
        "Approved submission %s: +%d XP to %s (now %d)",
        submission.id, quest.xp_value, traveler.id, traveler.xp,
    )
    return {
        "submission": submission_row,
        "profile": profile_row,
        "_changes": [
            ChangeEvent("quest_progress", ChangeKind.UPDATE, new=submission_row, old=before),
            ChangeEvent("profiles", ChangeKind.UPDATE, new=profile_row),
        ],
    }


PROCEDURES: dict[str, Callable[[Session, str | None, dict], dict]] = {
    "redeem_reward": redeem_reward,
    "approve_submission": approve_submission,
}


def run_procedure(engine: Engine, name: str, params: dict, actor_id: str | None) -> dict[str, Any]:
    """Run procedure *name* in a single transaction (commit or roll back)."""
    proc = PROCEDURES.get(name)
    if proc is None:
        raise BackendError(f"Unknown procedure: '{name}'")
    with get_session(engine) as session:
        result = proc(session, actor_id, params)
    result.setdefault("completed_at", datetime.now(UTC).isoformat())
    return result
