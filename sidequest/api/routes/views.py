"""
sidequest.api.routes.views — Read-only views of client state
=============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from sidequest.api.deps import get_synchronizer
from sidequest.services.discovery import DEFAULT_NEAREST_LIMIT, nearest_quests
from sidequest.services.progress import traveler_stats
from sidequest.sync.synchronizer import ClientSynchronizer

router = APIRouter(tags=["views"])


# ---------------------------------------------------------------------------
# GET /state
# ---------------------------------------------------------------------------
@router.get("/state")
def get_state(sync: ClientSynchronizer = Depends(get_synchronizer)):
    """Everything a UI needs to render one frame."""
    return sync.state.snapshot()


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------
@router.get("/quests")
def list_quests(
    category: str | None = None,
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    quests = sync.state.visible_quests()
    if category:
        quests = [q for q in quests if q.get("category") == category]
    return quests


@router.get("/quests/nearest")
def list_nearest_quests(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    limit: int = Query(DEFAULT_NEAREST_LIMIT, ge=1, le=50),
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    return nearest_quests(sync.state.visible_quests(), lat, lng, limit)


@router.get("/rewards")
def list_rewards(sync: ClientSynchronizer = Depends(get_synchronizer)):
    return sync.state.visible_rewards()


@router.get("/submissions")
def list_submissions(
    status_filter: str | None = Query(None, alias="status"),
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    if status_filter:
        return sync.state.submissions.find(status=status_filter)
    return sync.state.submissions.to_list()


@router.get("/redemptions")
def list_redemptions(sync: ClientSynchronizer = Depends(get_synchronizer)):
    return sync.state.redemptions.to_list()


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------
@router.get("/profile/stats")
def get_profile_stats(sync: ClientSynchronizer = Depends(get_synchronizer)):
    profile = sync.state.profile
    if profile is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Sign in required")
    return traveler_stats(profile, sync.state.submissions, sync.state.quests)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
@router.get("/admin/reviews")
def get_review_queue(sync: ClientSynchronizer = Depends(get_synchronizer)):
    """Submissions, quests and rewards awaiting moderation."""
    if sync.state.profile is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Sign in required")
    if not sync.state.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin access required")
    return sync.state.pending_reviews()


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
@router.get("/notifications")
def list_notifications(
    tail: int = Query(50, ge=1, le=100),
    sync: ClientSynchronizer = Depends(get_synchronizer),
):
    return [n.to_dict() for n in sync.notifier.history(tail)]
