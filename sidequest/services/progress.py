"""
sidequest.services.progress — Traveler Progress & Badges
=========================================================

Pure functions over the mirrored collections; no I/O.  The profile page and
``GET /api/profile/stats`` both read from here.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from sidequest.constants import BADGE_RULES
from sidequest.database.models import SubmissionStatus

RECENT_LIMIT = 3


def _badge_earned(kind: str, threshold: int, category: str | None,
                  completed: int, xp: int, per_category: Counter) -> bool:
    if kind == "completed":
        return completed >= threshold
    if kind == "xp":
        return xp >= threshold
    if kind == "category":
        return per_category[category] >= threshold
    raise ValueError(f"Unknown badge kind '{kind}'")


def badges_for(completed: int, xp: int, per_category: Counter) -> list[dict]:
    """Every badge rule with an ``earned`` flag, in display order."""
    return [
        {
            "name": name,
            "description": desc,
            "earned": _badge_earned(kind, threshold, category, completed, xp, per_category),
        }
        for name, desc, kind, threshold, category in BADGE_RULES
    ]


def traveler_stats(
    profile: dict,
    submissions: Iterable[dict],
    quests: Iterable[dict],
) -> dict:
    """Summarise one traveler's progress.

    Only *profile*'s own submissions count.  ``recent`` holds the last three
    approved quests, newest first (by submission time when known, otherwise
    arrival order).
    """
    quest_by_id = {q["id"]: q for q in quests}
    mine = [s for s in submissions if s["traveler_id"] == profile["id"]]
    approved = [s for s in mine if s["status"] == SubmissionStatus.APPROVED]

    per_category: Counter = Counter()
    for sub in approved:
        quest = quest_by_id.get(sub["quest_id"])
        if quest is not None and quest.get("category"):
            per_category[quest["category"]] += 1

    ordered = sorted(
        enumerate(approved),
        key=lambda pair: (pair[1].get("submitted_at") or "", pair[0]),
    )
    recent = []
    for _, sub in reversed(ordered[-RECENT_LIMIT:]):
        quest = quest_by_id.get(sub["quest_id"])
        recent.append({
            "quest_id": sub["quest_id"],
            "title": quest["title"] if quest else None,
            "xp_value": quest["xp_value"] if quest else None,
            "submitted_at": sub.get("submitted_at"),
        })

    xp = int(profile.get("xp") or 0)
    return {
        "total_xp": xp,
        "completed": len(approved),
        "total": len(mine),
        "recent": recent,
        "badges": badges_for(len(approved), xp, per_category),
    }
