"""
Freshness summary of the latest position reported by each bus.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, Optional

RECENT_UPDATE_SECONDS = 60

# (upper bound on average age in seconds, status)
HEALTH_THRESHOLDS = (
    (30, "excellent"),
    (60, "good"),
    (120, "fair"),
    (300, "poor"),
)


def classify_average_age(average_age_seconds: Optional[float]) -> str:
    if average_age_seconds is None:
        return "offline"
    for limit, status in HEALTH_THRESHOLDS:
        if average_age_seconds < limit:
            return status
    return "offline"


def fleet_gps_health(recorded_at: Iterable[datetime], now: datetime) -> Dict:
    ages = [max((now - stamp).total_seconds(), 0.0) for stamp in recorded_at]
    if not ages:
        return {
            "active_buses": 0,
            "recent_updates": 0,
            "average_age_seconds": None,
            "oldest_age_seconds": None,
            "newest_age_seconds": None,
            "status": "offline",
        }

    average = sum(ages) / len(ages)
    return {
        "active_buses": len(ages),
        "recent_updates": sum(1 for age in ages if age < RECENT_UPDATE_SECONDS),
        "average_age_seconds": round(average, 1),
        "oldest_age_seconds": round(max(ages), 1),
        "newest_age_seconds": round(min(ages), 1),
        "status": classify_average_age(average),
    }
