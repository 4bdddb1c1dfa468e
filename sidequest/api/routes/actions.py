"""
sidequest.api.routes.actions — One endpoint per user action
============================================================

Each endpoint delegates to :class:`~sidequest.sync.actions.ActionService`.
An action that fails reports the alert it raised: 401 when the user must
sign in first, 400 otherwise.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from sidequest.api.deps import get_synchronizer
from sidequest.backend.auth import PASSWORD_MIN_LENGTH
from sidequest.database.models import ContentStatus
from sidequest.sync.synchronizer import ClientSynchronizer

router = APIRouter(tags=["actions"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SignIn(BaseModel):
    email: str
    password: str


class SignUp(BaseModel):
    email: str
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    full_name: str | None = None


class ProofSubmit(BaseModel):
    note: str = ""
    proof_photo_url: str | None = None


class QuestFields(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    xp_value: int | None = Field(None, ge=0)
    lat: float | None = None
    lng: float | None = None
    location_address: str | None = None
    status: ContentStatus | None = None


class RewardFields(BaseModel):
    title: str | None = None
    description: str | None = None
    partner_name: str | None = None
    xp_cost: int | None = Field(None, ge=0)
    status: ContentStatus | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def _perform(
    sync: ClientSynchronizer,
    action: Awaitable[Any],
    failure_status: int = status.HTTP_400_BAD_REQUEST,
) -> Any:
    """Await *action*; turn a falsy result into an HTTP error."""
    seen = sync.notifier.issued
    result = await action
    if result is not None and result is not False:
        return result

    detail = None
    if sync.notifier.issued > seen:
        latest = sync.notifier.history(1)[-1]
        if latest.blocking:
            detail = latest.message
    if detail is None and sync.state.profile is None and sync.state.show_auth_modal:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Sign in required")
    raise HTTPException(failure_status, detail or "Action failed")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
def _session_out(session) -> dict:
    return {"user_id": session.user_id, "email": session.email, "expires_at": session.expires_at}


@router.post("/auth/sign-in")
async def sign_in(body: SignIn, sync: ClientSynchronizer = Depends(get_synchronizer)):
    session = await _perform(
        sync,
        sync.actions.sign_in(body.email, body.password),
        failure_status=status.HTTP_401_UNAUTHORIZED,
    )
    return _session_out(session)


@router.post("/auth/sign-up", status_code=status.HTTP_201_CREATED)
async def sign_up(body: SignUp, sync: ClientSynchronizer = Depends(get_synchronizer)):
    session = await _perform(
        sync, sync.actions.sign_up(body.email, body.password, body.full_name)
    )
    return _session_out(session)


@router.post("/auth/sign-out")
async def sign_out(sync: ClientSynchronizer = Depends(get_synchronizer)):
    await sync.actions.sign_out()
    return {"ok": True}


@router.delete("/auth/account")
async def delete_account(sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.delete_account())
    return {"ok": True}


@router.post("/notifications/dismiss")
def dismiss_notifications(sync: ClientSynchronizer = Depends(get_synchronizer)):
    sync.notifier.dismiss()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Traveler
# ---------------------------------------------------------------------------
@router.post("/quests/{quest_id}/accept")
async def accept_quest(quest_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.accept_quest(quest_id))
    return {"ok": True}


@router.post("/quests/{quest_id}/proof")
async def submit_proof(
    quest_id: str,
    body: ProofSubmit,
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    return await _perform(
        sync, sync.actions.submit_proof(quest_id, body.note, body.proof_photo_url)
    )


@router.post("/rewards/{reward_id}/redeem")
async def redeem_reward(reward_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    code = await _perform(sync, sync.actions.redeem_reward(reward_id))
    return {"redemption_code": code}


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------
@router.post("/submissions/{submission_id}/approve")
async def approve_submission(
    submission_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)
):
    await _perform(sync, sync.actions.approve_submission(submission_id))
    return {"ok": True}


@router.post("/submissions/{submission_id}/reject")
async def reject_submission(
    submission_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)
):
    await _perform(sync, sync.actions.reject_submission(submission_id))
    return {"ok": True}


@router.post("/quests/{quest_id}/approve")
async def approve_quest(quest_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.approve_new_quest(quest_id))
    return {"ok": True}


@router.post("/rewards/{reward_id}/approve")
async def approve_reward(reward_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.approve_new_reward(reward_id))
    return {"ok": True}


# ---------------------------------------------------------------------------
# Content management
# ---------------------------------------------------------------------------
@router.post("/quests", status_code=201)
async def create_quest(body: QuestFields, sync: ClientSynchronizer = Depends(get_synchronizer)):
    return await _perform(sync, sync.actions.create_quest(body.model_dump(exclude_unset=True)))


@router.patch("/quests/{quest_id}")
async def update_quest(
    quest_id: str,
    body: QuestFields,
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    return await _perform(
        sync, sync.actions.update_quest(quest_id, body.model_dump(exclude_unset=True))
    )


@router.delete("/quests/{quest_id}")
async def delete_quest(quest_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.delete_quest(quest_id))
    return {"ok": True}


@router.post("/rewards", status_code=201)
async def create_reward(body: RewardFields, sync: ClientSynchronizer = Depends(get_synchronizer)):
    return await _perform(sync, sync.actions.create_reward(body.model_dump(exclude_unset=True)))


@router.patch("/rewards/{reward_id}")
async def update_reward(
    reward_id: str,
    body: RewardFields,
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    return await _perform(
        sync, sync.actions.update_reward(reward_id, body.model_dump(exclude_unset=True))
    )


@router.delete("/rewards/{reward_id}")
async def delete_reward(reward_id: str, sync: ClientSynchronizer = Depends(get_synchronizer)):
    await _perform(sync, sync.actions.delete_reward(reward_id))
    return {"ok": True}
