import json
import logging
import math

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import (
    HTTP_TIMEOUT,
    RANKER_TOP_N,
    RANKING_CACHE_TTL,
    RANKING_GRID_DEG,
    SOS_MAX_DISTANCE_KM,
)
from .errors import ProviderSearchUnavailable
from .schemas import Location, ProviderCandidate
from .scoring import (
    Weights,
    estimate_response_minutes,
    haversine,
    score,
    urgency_match,
)
from .transitions import UrgencyLevel

logger = logging.getLogger(__name__)


class HttpProviderSource:
    """Reads provider location, verification and availability from the location service."""

    def __init__(
        self,
        base_url: str,
        breaker: CircuitBreaker | None = None,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self._transport = transport

    async def fetch_providers(self, category_id: str) -> list[dict]:
        if self.breaker is not None:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise ProviderSearchUnavailable(str(e))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/providers",
                    params={"category_id": category_id},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            if self.breaker is not None:
                await self.breaker.record_failure()
            raise ProviderSearchUnavailable(f"provider lookup failed: {e}")

        if self.breaker is not None:
            await self.breaker.record_success()

        if isinstance(data, dict):
            data = data.get("providers") or []
        return list(data)


# ---- Cache key helpers ----

def bucket_id(lat: float, lon: float, grid_deg: float = RANKING_GRID_DEG) -> tuple[int, int]:
    """
    Convert lat/lon -> integer bucket coordinates so keys are stable.
    """
    b_lat = int(math.floor(lat / grid_deg))
    b_lon = int(math.floor(lon / grid_deg))
    return b_lat, b_lon


def cache_key(category_id: str, location: Location, urgency: UrgencyLevel) -> str:
    b_lat, b_lon = bucket_id(location.latitude, location.longitude)
    return f"rank:{category_id}:{UrgencyLevel(urgency).value}:lat={b_lat}:lon={b_lon}"


def _provider_max_urgency(record: dict) -> UrgencyLevel | None:
    raw = record.get("max_urgency")
    if raw:
        try:
            return UrgencyLevel(str(raw).lower())
        except ValueError:
            return None
    if record.get("emergency_available"):
        return UrgencyLevel.EMERGENCY
    return UrgencyLevel.MEDIUM


def is_eligible(record: dict) -> bool:
    if not record.get("is_verified"):
        return False
    if record.get("is_paused"):
        return False
    if (record.get("availability") or "available") != "available":
        return False
    if record.get("latitude") is None or record.get("longitude") is None:
        return False
    return bool(record.get("id"))


class ProviderRanker:
    """
    Filters and orders providers for an urgent request.

    An empty list is a normal answer (nobody eligible nearby); only a broken
    provider source raises.
    """

    def __init__(
        self,
        source,
        *,
        weights: Weights | None = None,
        top_n: int = RANKER_TOP_N,
        max_distance_km: float = SOS_MAX_DISTANCE_KM,
        cache=None,
        cache_ttl: int = RANKING_CACHE_TTL,
    ):
        self.source = source
        self.weights = weights or Weights()
        self.top_n = top_n
        self.max_distance_km = max_distance_km
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def rank(self, category_id: str, location: Location, urgency: UrgencyLevel) -> list[ProviderCandidate]:
        urgency = UrgencyLevel(urgency)
        key = cache_key(category_id, location, urgency)

        cached = await self._cache_get(key)
        if cached is not None:
            return cached

        records = await self.source.fetch_providers(category_id)
        candidates = self.rank_records(records, location, urgency)

        await self._cache_set(key, candidates)
        if not candidates:
            logger.info("no eligible providers for category %s near %s", category_id, key)
        return candidates

    def rank_records(self, records: list[dict], location: Location, urgency: UrgencyLevel) -> list[ProviderCandidate]:
        candidates = []
        for record in records:
            if not is_eligible(record):
                continue

            distance = haversine(
                location.latitude,
                location.longitude,
                float(record["latitude"]),
                float(record["longitude"]),
            )
            if distance > self.max_distance_km:
                continue

            rating = float(record.get("average_rating") or 0.0)
            eta = record.get("estimated_response_minutes")
            eta = int(eta) if eta else estimate_response_minutes(distance)
            match = urgency_match(urgency, _provider_max_urgency(record))

            candidates.append(
                ProviderCandidate(
                    provider_id=str(record["id"]),
                    distance_km=round(distance, 2),
                    rating=rating,
                    is_verified=True,
                    estimated_response_minutes=eta,
                    urgency_match_score=match,
                    score=score(distance, rating, eta, match, self.weights),
                )
            )

        candidates.sort(key=lambda c: (-c.score, c.provider_id))
        return candidates[: self.top_n]

    async def _cache_get(self, key: str) -> list[ProviderCandidate] | None:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get(key)
        except Exception as e:
            logger.warning("ranking cache read failed: %s", e)
            return None
        if not raw:
            return None
        return [ProviderCandidate(**item) for item in json.loads(raw)]

    async def _cache_set(self, key: str, candidates: list[ProviderCandidate]):
        if self.cache is None:
            return
        value = json.dumps([c.model_dump() for c in candidates])
        try:
            await self.cache.set(key, value, ex=self.cache_ttl)
        except Exception as e:
            logger.warning("ranking cache write failed: %s", e)
