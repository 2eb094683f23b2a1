"""
Route Estimator
===============

``estimate_route`` answers distance / duration (and an encoded path when
the router returns one) for a coordinate pair, trying in order:

1. the route cache (key ``route:<lat,lng>:<lat,lng>``),
2. OSRM,
3. OpenRouteService (only with an API key),
4. Haversine distance at 2 minutes per km.

Every answer is written back to the cache.  The cache is a strategy:
``NullRouteCache`` keeps nothing, ``RedisRouteCache`` stores JSON with a
TTL.  Cache errors never reach the caller.

``similarity`` compares two encoded paths by the proximity of their start
and end points.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import polyline
import redis.asyncio as aioredis
from pydantic import TypeAdapter

from carpool.config import Settings, settings as default_settings
from carpool.domain.distance import haversine_km, path_similarity
from carpool.domain.entities import Location

logger = logging.getLogger(__name__)

MINUTES_PER_KM_FALLBACK = 2


class RoutingUnavailable(Exception):
    """A routing backend gave no usable answer."""


@dataclass
class RouteEstimate:
    distance_km: float
    duration_minutes: float
    polyline: Optional[str] = None
    source: str = "haversine"


_estimate_adapter = TypeAdapter(RouteEstimate)


# ── Cache strategies ──────────────────────────────────────────────────


class RouteCache(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[RouteEstimate]: ...

    @abstractmethod
    async def set(self, key: str, estimate: RouteEstimate) -> None: ...


class NullRouteCache(RouteCache):
    async def get(self, key: str) -> Optional[RouteEstimate]:
        return None

    async def set(self, key: str, estimate: RouteEstimate) -> None:
        return None


class RedisRouteCache(RouteCache):
    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 24 * 60 * 60):
        self.redis = client
        self.ttl = ttl_seconds

    async def get(self, key: str) -> Optional[RouteEstimate]:
        try:
            raw = await self.redis.get(key)
            if raw is None:
                return None
            return _estimate_adapter.validate_json(raw)
        except Exception:
            logger.debug("Route cache read failed for %s", key, exc_info=True)
            return None

    async def set(self, key: str, estimate: RouteEstimate) -> None:
        try:
            await self.redis.set(
                key, _estimate_adapter.dump_json(estimate), ex=self.ttl
            )
        except Exception:
            logger.debug("Route cache write failed for %s", key, exc_info=True)


# ── Estimator ─────────────────────────────────────────────────────────


class RouteEstimator:
    def __init__(
        self,
        cache: Optional[RouteCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.cache = cache or NullRouteCache()
        self._client = client or httpx.AsyncClient(
            timeout=self.settings.route_timeout_seconds
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def cache_key(origin: Location, destination: Location) -> str:
        return f"route:{origin}:{destination}"

    async def estimate_route(
        self, origin: Location, destination: Location
    ) -> RouteEstimate:
        key = self.cache_key(origin, destination)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug("Route cache hit for %s -> %s", origin, destination)
            return cached

        estimate: Optional[RouteEstimate] = None
        try:
            estimate = await self._osrm(origin, destination)
        except (httpx.HTTPError, RoutingUnavailable, KeyError, ValueError) as exc:
            logger.warning("OSRM failed for %s -> %s: %s", origin, destination, exc)

        if estimate is None and self.settings.openrouteservice_api_key:
            try:
                estimate = await self._openrouteservice(origin, destination)
            except (httpx.HTTPError, RoutingUnavailable, KeyError, ValueError) as exc:
                logger.warning(
                    "OpenRouteService failed, using Haversine distance: %s", exc
                )

        if estimate is None:
            estimate = self._haversine(origin, destination)

        await self.cache.set(key, estimate)
        return estimate

    async def _osrm(self, origin: Location, destination: Location) -> RouteEstimate:
        coordinates = (
            f"{origin.longitude},{origin.latitude};"
            f"{destination.longitude},{destination.latitude}"
        )
        response = await self._client.get(
            f"{self.settings.osrm_base_url}/{coordinates}",
            params={"overview": "full", "geometries": "polyline"},
        )
        response.raise_for_status()
        data = response.json()
        if data.get("code") != "Ok" or not data.get("routes"):
            raise RoutingUnavailable("No route found from OSRM")

        route = data["routes"][0]
        return RouteEstimate(
            distance_km=(route.get("distance") or 0) / 1000,
            duration_minutes=float(round((route.get("duration") or 0) / 60)),
            polyline=route.get("geometry") or None,
            source="osrm",
        )

    async def _openrouteservice(
        self, origin: Location, destination: Location
    ) -> RouteEstimate:
        # OpenRouteService takes lng,lat
        response = await self._client.get(
            self.settings.openrouteservice_url,
            params={
                "api_key": self.settings.openrouteservice_api_key,
                "start": f"{origin.longitude},{origin.latitude}",
                "end": f"{destination.longitude},{destination.latitude}",
            },
        )
        response.raise_for_status()
        data = response.json()
        if not data.get("features"):
            raise RoutingUnavailable("No route found from OpenRouteService")

        segments = data["features"][0].get("properties", {}).get("segments") or [{}]
        return RouteEstimate(
            distance_km=(segments[0].get("distance") or 0) / 1000,
            duration_minutes=float(round((segments[0].get("duration") or 0) / 60)),
            source="openrouteservice",
        )

    @staticmethod
    def _haversine(origin: Location, destination: Location) -> RouteEstimate:
        distance = haversine_km(
            origin.latitude, origin.longitude,
            destination.latitude, destination.longitude,
        )
        return RouteEstimate(
            distance_km=distance,
            duration_minutes=float(round(distance * MINUTES_PER_KM_FALLBACK)),
        )

    async def similarity(self, path1: str, path2: str) -> float:
        """0-100 score of two encoded paths; ``ValueError`` on unusable input."""
        if not path1 or not path2:
            raise ValueError("Both paths are required")
        try:
            coords1 = polyline.decode(path1)
            coords2 = polyline.decode(path2)
        except (IndexError, TypeError) as exc:
            raise ValueError("Malformed encoded path") from exc
        if not coords1 or not coords2:
            raise ValueError("Path decodes to no coordinates")
        return path_similarity(coords1, coords2)


def build_route_cache(client: Optional[aioredis.Redis], ttl_seconds: int) -> RouteCache:
    if client is None:
        return NullRouteCache()
    return RedisRouteCache(client, ttl_seconds=ttl_seconds)
