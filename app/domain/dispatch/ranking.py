"""Distance ranking of vendors and delivery partners around an origin point"""

import math
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

EARTH_RADIUS_KM = 6371.0


class Candidate(BaseModel):
    """A vendor or delivery partner as read from the candidate directory"""

    model_config = ConfigDict(frozen=True)

    id: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RankedCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    distance_km: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def rank_candidates(
    origin_latitude: float,
    origin_longitude: float,
    candidates: Iterable[Candidate],
    radius_km: float,
    exclude_ids: Iterable[int] = (),
) -> list[RankedCandidate]:
    """
    Rank candidates by distance from the origin.

    Candidates without a known location, listed in exclude_ids, or farther than
    radius_km are dropped. Equal distances keep their input order.
    """
    excluded = set(exclude_ids)
    ranked = []
    for candidate in candidates:
        if candidate.id in excluded:
            continue
        if candidate.latitude is None or candidate.longitude is None:
            continue

        distance = haversine_km(
            origin_latitude, origin_longitude, candidate.latitude, candidate.longitude
        )
        if distance <= radius_km:
            ranked.append((distance, RankedCandidate(id=candidate.id, distance_km=round(distance, 3))))

    # sorted() is stable, which gives insertion-order tie breaks
    return [entry for _, entry in sorted(ranked, key=lambda pair: pair[0])]
