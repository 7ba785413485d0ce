"""
Facility to Google place-id resolution
Order: explicit field, seed table, fresh cache, live Find Place
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from logging_config import get_logger
from .cache import DAY_SECONDS, EnrichmentCache, SingleFlight, is_fresh
from .error_handling import APIError
from .places_api import PlacesClient
from .utils import facility_ccn, pick, to_number, to_string

logger = get_logger(__name__)


def place_cache_key(facility: Dict[str, Any]) -> str:
    """``ccn:015009`` when the CCN is known, else ``name:<name>|<address>|...`` lowercased."""
    ccn = facility_ccn(facility)
    if ccn:
        return f"ccn:{ccn}"
    parts = [
        to_string(facility.get(f)).lower()
        for f in ("facility_name", "address", "city", "state", "zip_code")
    ]
    return "name:" + "|".join(p for p in parts if p)


def build_query(facility: Dict[str, Any]) -> Optional[str]:
    pieces = [
        to_string(facility.get(f))
        for f in ("facility_name", "address", "city", "state", "zip_code")
    ]
    query = ", ".join(p for p in pieces if p)
    return query or None


def build_location_bias(facility: Dict[str, Any]) -> Optional[str]:
    lat = to_number(facility.get("latitude"))
    lon = to_number(facility.get("longitude"))
    if lat is None or lon is None:
        return None
    return f"point:{lat},{lon}"


class PlaceIdResolver:
    """
    Resolves and persists Google place ids for facilities.

    ``fetch_timeout`` bounds the live Find Place call; on timeout the stale
    cache entry is returned.
    """

    def __init__(self, cache: EnrichmentCache, places_client: Optional[PlacesClient],
                 seed: Optional[Dict[str, Dict[str, Any]]] = None,
                 max_age_days: float = 30.0,
                 clock: Callable[[], float] = time.time,
                 single_flight: Optional[SingleFlight] = None,
                 fetch_timeout: Optional[float] = None):
        self.cache = cache
        self.places_client = places_client
        self.seed = seed or {}
        self.max_age_seconds = max_age_days * DAY_SECONDS
        self.clock = clock
        self.single_flight = single_flight or SingleFlight()
        self.fetch_timeout = fetch_timeout

    async def get_place_id(self, facility: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Resolve a facility to ``{place_id, name, ..., source}``.

        ``source`` is one of explicit, seed, cache, fresh or stale. Returns None
        when nothing is known and no live lookup succeeded.
        """
        if not facility:
            return None

        explicit = to_string(pick(
            facility.get("google_place_id"),
            facility.get("google_placeid"),
            facility.get("place_id"),
            facility.get("googlePlaceId"),
        ))
        if explicit:
            return {"place_id": explicit, "name": facility.get("google_name"), "source": "explicit"}

        ccn = facility_ccn(facility)
        seeded = self.seed.get(ccn) if ccn else None
        if seeded and seeded.get("google_place_id"):
            return {
                "place_id": seeded["google_place_id"],
                "name": seeded.get("google_name"),
                "source": "seed",
            }

        key = place_cache_key(facility)
        cached = await self.cache.aget(key)
        if is_fresh(cached, "resolved_at", self.max_age_seconds, now=self.clock()):
            return {**cached, "source": "cache"}

        if self.places_client is None or not self.places_client.configured:
            return self._stale(cached)

        return await self.single_flight.run(key, lambda: self._lookup(key, facility, cached))

    async def _lookup(self, key: str, facility: Dict[str, Any],
                      cached: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        try:
            found = await asyncio.wait_for(
                self.places_client.find_place(build_query(facility), build_location_bias(facility)),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Find Place timed out after {self.fetch_timeout}s for {key}")
            return self._stale(cached)
        except APIError as e:
            logger.warning(f"Find Place failed for {key}: {e}", extra={"api_name": e.api_name})
            return self._stale(cached)
        if not found or not found.get("place_id"):
            return self._stale(cached)

        payload = {
            "place_id": found["place_id"],
            "name": found.get("name"),
            "formatted_address": found.get("formatted_address"),
            "location": found.get("location"),
            "resolved_at": self.clock(),
        }
        await self.cache.aset(key, payload)
        return {**payload, "source": "fresh"}

    @staticmethod
    def _stale(cached: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not cached:
            return None
        return {**cached, "source": "stale"}
