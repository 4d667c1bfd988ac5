# src/gatherpay/application/services/fallback_scorer.py
"""
Deterministic matcher used whenever the remote scorer is unavailable.

No I/O, no randomness, no clock reads: `now` is an argument, so identical
inputs always give identical decisions.
"""

import math
from datetime import datetime
from typing import List

from gatherpay.domain.clock import as_utc
from gatherpay.domain.entities import MatchSource, MatchVerdict
from gatherpay.domain.value_objects import (
    UserMatchProfile, EventMatchProfile, MatchDecision, GeoPoint,
)

EARTH_RADIUS_KM = 6371.0

HOBBY_WEIGHT = 30.0
PROXIMITY_WEIGHT = 30.0
SOON_WEIGHT = 20.0
WEEK_WEIGHT = 10.0
LATER_WEIGHT = 5.0
CAPACITY_WEIGHT = 20.0
FILL_RATIO_LIMIT = 0.8


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class FallbackScorer:
    def __init__(self, accept_threshold: float = 0.5, default_radius_km: float = 10.0):
        self.accept_threshold = accept_threshold
        self.default_radius_km = default_radius_km

    def score(self, user: UserMatchProfile, event: EventMatchProfile, now: datetime) -> MatchDecision:
        points = 0.0
        reasons: List[str] = []

        if user.hobby_ids & (event.hobby_ids | event.category_ids):
            points += HOBBY_WEIGHT
            reasons.append("same_hobby")

        if user.location is not None and event.location is not None:
            radius = user.search_radius_km or self.default_radius_km
            distance = haversine_km(user.location, event.location)
            if radius > 0 and distance <= radius:
                points += (1 - distance / radius) * PROXIMITY_WEIGHT
                reasons.append("nearby")

        hours_until = (as_utc(event.starts_at) - as_utc(now)).total_seconds() / 3600.0
        if hours_until <= 24:
            points += SOON_WEIGHT
            reasons.append("starting_soon")
        elif hours_until <= 72:
            points += WEEK_WEIGHT
        else:
            points += LATER_WEIGHT

        if event.fill_ratio < FILL_RATIO_LIMIT:
            points += CAPACITY_WEIGHT
            reasons.append("spots_available")

        score = min(points / 100.0, 1.0)
        verdict = MatchVerdict.ACCEPT if score >= self.accept_threshold else MatchVerdict.REJECT
        return MatchDecision(
            score=round(score, 4),
            verdict=verdict,
            reasons=tuple(reasons),
            source=MatchSource.FALLBACK,
            fallback_used=True,
        )
