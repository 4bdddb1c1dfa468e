"""
sidequest.services.discovery — Nearby Quests
=============================================
"""

from __future__ import annotations

from collections.abc import Iterable

from sidequest.constants import distance_km

DEFAULT_NEAREST_LIMIT = 5


def nearest_quests(
    quests: Iterable[dict],
    lat: float,
    lng: float,
    limit: int = DEFAULT_NEAREST_LIMIT,
) -> list[dict]:
    """Quests closest to (*lat*, *lng*), each with a ``distance_km`` field.

    Quests without coordinates are skipped.
    """
    if limit <= 0:
        return []
    located = []
    for quest in quests:
        if quest.get("lat") is None or quest.get("lng") is None:
            continue
        d = distance_km(lat, lng, float(quest["lat"]), float(quest["lng"]))
        located.append({**quest, "distance_km": round(d, 3)})
    located.sort(key=lambda q: q["distance_km"])
    return located[:limit]
