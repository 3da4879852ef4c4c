import math
from dataclasses import dataclass

from .config import (
    RANK_WEIGHT_DISTANCE,
    RANK_WEIGHT_RATING,
    RANK_WEIGHT_RESPONSE,
    RANK_WEIGHT_URGENCY,
)
from .transitions import UrgencyLevel

MIN_DISTANCE_KM = 0.1
MIN_RESPONSE_MINUTES = 1


@dataclass(frozen=True)
class Weights:
    distance: float = RANK_WEIGHT_DISTANCE
    rating: float = RANK_WEIGHT_RATING
    response: float = RANK_WEIGHT_RESPONSE
    urgency: float = RANK_WEIGHT_URGENCY


def haversine(lat1, lon1, lat2, lon2):
    R = 6371
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def estimate_response_minutes(distance_km: float) -> int:
    # ~2 minutes per km when the provider gives no estimate of their own
    return max(MIN_RESPONSE_MINUTES, math.ceil(distance_km * 2))


def urgency_match(requested: UrgencyLevel, provider_max: UrgencyLevel | None) -> float:
    """
    1.0 when the provider handles the requested urgency, decaying by a third
    per level the provider falls short.
    """
    if provider_max is None:
        return 0.0
    gap = UrgencyLevel(requested).rank - UrgencyLevel(provider_max).rank
    if gap <= 0:
        return 1.0
    return max(0.0, 1 - gap / 3)


def score(distance_km, rating, estimated_response_minutes, urgency_match_score, weights: Weights | None = None):
    w = weights or Weights()
    distance_km = max(MIN_DISTANCE_KM, distance_km)
    estimated_response_minutes = max(MIN_RESPONSE_MINUTES, estimated_response_minutes)

    return (
        w.distance * (1 / distance_km) +
        w.rating * rating +
        w.response * (1 / estimated_response_minutes) +
        w.urgency * urgency_match_score
    )
