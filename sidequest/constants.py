"""
sidequest.constants — Shared Constants & Helpers
=================================================

Single source of truth for moderation defaults, badge thresholds, the
redemption-code format and the distance formula.  Import from here instead of
duplicating in the sync layer, services, and API routes.
"""

from __future__ import annotations

import math
import time

# ---------------------------------------------------------------------------
# Moderation / boot defaults
# ---------------------------------------------------------------------------
DEFAULT_ADMIN_EMAIL = "admin@sidequest.example"

DEFAULT_BOOT_TIMEOUT_SECONDS = 12.0

REDEMPTION_CODE_PREFIX = "SQ"

# Fallback XP for partner-created quests submitted without a value
DEFAULT_QUEST_XP = 50

QUEST_CATEGORIES: tuple[str, ...] = (
    "Environmental",
    "Social",
    "Cultural",
    "Animal Welfare",
    "Education",
    "Economic",
)


# ---------------------------------------------------------------------------
# Badges — (name, description, kind, threshold, category)
#   kind "completed" → approved submissions overall
#   kind "xp"        → profile xp
#   kind "category"  → approved submissions in *category*
# ---------------------------------------------------------------------------
BADGE_RULES: list[tuple[str, str, str, int, str | None]] = [
    ("Impact Explorer", "Completed your very first SideQuest", "completed", 1, None),
    ("Committed Traveler", "Completed 3 quests", "completed", 3, None),
    ("South Coast Steward", "Completed 6 quests in the pilot region", "completed", 6, None),
    ("XP Collector", "Accumulated over 150 XP", "xp", 150, None),
    ("Eco Champion", "Completed 2+ Environmental Quests", "category", 2, "Environmental"),
    ("Community Builder", "Completed 2+ Social Quests", "category", 2, "Social"),
    ("Cultural Ambassador", "Completed a Cultural Exchange Quest", "category", 1, "Cultural"),
    ("Animal Ally", "Completed an Animal Welfare Quest", "category", 1, "Animal Welfare"),
]


# ---------------------------------------------------------------------------
# Redemption codes
# ---------------------------------------------------------------------------
def make_redemption_code(prefix: str = REDEMPTION_CODE_PREFIX, now_ms: int | None = None) -> str:
    """Human-readable code: *prefix* + last six digits of the ms timestamp."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{prefix}{str(now_ms)[-6:]}"


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------
EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle (haversine) distance between two points in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
