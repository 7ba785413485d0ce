"""
Hospital geocoding
Ordered provider chain (Google, Nominatim, Census) behind a persistent,
never-expiring cache keyed by the normalized hospital address
"""

import asyncio
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from logging_config import get_logger, log_error
from .cache import EnrichmentCache, SingleFlight
from .error_handling import APIError, GeocodingFailedError, Result
from .http_client import AsyncHttpClient
from .retry_config import RetryProfile
from .utils import to_string, validate_coordinates

logger = get_logger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
CENSUS_GEOCODER_URL = "https://geocoding.geo.census.gov/geocoder/locations/onelineaddress"

_PO_BOX_PAREN = re.compile(r"\(.*P ?O ?BOX.*\)", re.IGNORECASE)
_PO_BOX_TAIL = re.compile(r"P ?O ?BOX.*$", re.IGNORECASE)

# Street abbreviations Nominatim resolves poorly
ABBREVIATION_EXPANSIONS = (
    (re.compile(r"\bSR\b", re.IGNORECASE), "State Road"),
    (re.compile(r"\bHwy\b", re.IGNORECASE), "Highway"),
    (re.compile(r"\bMt\b", re.IGNORECASE), "Mount"),
)


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_geocode_key(name: Any, address: Any, city: Any, state: Any, zip_code: Any) -> str:
    """Cache key ``NAME|ADDRESS|CITY|STATE|ZIP``, uppercased with whitespace collapsed."""
    parts = [to_string(p) for p in (name, address, city, state, zip_code)]
    return _collapse("|".join(parts).upper())


@dataclass
class GeocodeQuery:
    """Address forms handed to each provider."""
    full_address: str
    variants: List[str] = field(default_factory=list)


def build_address_variants(name: Any, address: Any, city: Any, state: Any, zip_code: Any) -> GeocodeQuery:
    """
    Build the full address plus up to four Nominatim query variants.

    Order: expanded full address, un-expanded address, city+state+zip,
    name+city+state. P.O. box fragments are dropped first.
    """
    name, city, state, zip_code = (to_string(v) for v in (name, city, state, zip_code))
    cleaned = _PO_BOX_TAIL.sub("", _PO_BOX_PAREN.sub("", to_string(address))).strip()
    expanded = cleaned
    for pattern, replacement in ABBREVIATION_EXPANSIONS:
        expanded = pattern.sub(replacement, expanded)

    full_address = _collapse(f"{expanded or cleaned}, {city}, {state} {zip_code}")
    city_state = _collapse(f"{city}, {state} {zip_code}")
    name_city_state = _collapse(f"{name}, {city}, {state}")

    variants = [full_address]
    if expanded and expanded != cleaned:
        alt = _collapse(f"{cleaned}, {city}, {state} {zip_code}")
        if alt and alt != full_address:
            variants.append(alt)
    for candidate in (city_state, name_city_state):
        if candidate.strip(", ") and candidate not in variants:
            variants.append(candidate)

    return GeocodeQuery(full_address=full_address, variants=variants)


def _coords(lat: Any, lon: Any) -> Optional[Dict[str, float]]:
    try:
        lat_f, lon_f = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        return None
    return {"lat": lat_f, "lon": lon_f}


class GoogleGeocoder:
    name = "google"

    def __init__(self, http: AsyncHttpClient, api_key: Optional[str], timeout: float = 10.0):
        self.http = http
        self.api_key = api_key
        self.timeout = timeout

    async def geocode(self, query: GeocodeQuery) -> Result:
        if not self.api_key:
            return Result.failure("GOOGLE_MAPS_KEY not configured", self.name)
        data = await self.http.get_json(
            GOOGLE_GEOCODE_URL,
            params={"address": query.full_address, "key": self.api_key},
            profile=RetryProfile.GEOCODING,
            api_name="google_geocoding",
        )
        if data.get("status") != "OK":
            return Result.failure(f"status {data.get('status')}", self.name)
        results = data.get("results") or []
        location = ((results[0].get("geometry") or {}).get("location") or {}) if results else {}
        coords = _coords(location.get("lat"), location.get("lng"))
        if coords is None:
            return Result.failure("no geometry in response", self.name)
        return Result.success(coords, self.name)


class NominatimGeocoder:
    name = "nominatim"

    def __init__(self, http: AsyncHttpClient, user_agent: str, timeout: float = 10.0):
        self.http = http
        self.user_agent = user_agent
        self.timeout = timeout

    async def geocode(self, query: GeocodeQuery) -> Result:
        errors = []
        for text in query.variants[:4]:
            try:
                data = await self.http.get_json(
                    NOMINATIM_URL,
                    params={"q": text, "format": "json", "limit": 1},
                    profile=RetryProfile.GEOCODING,
                    api_name="nominatim",
                    headers={"User-Agent": self.user_agent},
                )
            except APIError as e:
                logger.warning(f"Nominatim query failed for '{text}': {e}")
                errors.append(str(e))
                continue
            if isinstance(data, list) and data:
                coords = _coords(data[0].get("lat"), data[0].get("lon"))
                if coords is not None:
                    return Result.success(coords, self.name)
            errors.append(f"no match for '{text}'")
        return Result.failure("; ".join(errors) or "no variants", self.name)


class CensusGeocoder:
    name = "census"

    def __init__(self, http: AsyncHttpClient, timeout: float = 10.0):
        self.http = http
        self.timeout = timeout

    async def geocode(self, query: GeocodeQuery) -> Result:
        data = await self.http.get_json(
            CENSUS_GEOCODER_URL,
            params={"address": query.full_address, "benchmark": "2020", "format": "json"},
            profile=RetryProfile.GEOCODING,
            api_name="census_geocoder",
        )
        matches = ((data or {}).get("result") or {}).get("addressMatches") or []
        if not matches:
            return Result.failure("no address matches", self.name)
        coordinates = matches[0].get("coordinates") or {}
        coords = _coords(coordinates.get("y"), coordinates.get("x"))
        if coords is None:
            return Result.failure("match without coordinates", self.name)
        return Result.success(coords, self.name)


def build_providers(order: Sequence[str], http: AsyncHttpClient, google_key: Optional[str],
                    user_agent: str, timeout: float) -> List[Any]:
    """Instantiate geocoders in the configured order; unknown names are skipped."""
    factories: Dict[str, Callable[[], Any]] = {
        "google": lambda: GoogleGeocoder(http, google_key, timeout),
        "nominatim": lambda: NominatimGeocoder(http, user_agent, timeout),
        "census": lambda: CensusGeocoder(http, timeout),
    }
    providers = []
    for name in order:
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"Unknown geocoder '{name}' in GEOCODER_ORDER, skipping")
            continue
        providers.append(factory())
    return providers


class HospitalGeocoder:
    """Resolves hospital coordinates through the cache, then the provider chain."""

    def __init__(self, cache: EnrichmentCache, providers: Sequence[Any],
                 single_flight: Optional[SingleFlight] = None,
                 clock: Callable[[], float] = time.time):
        self.cache = cache
        self.providers = list(providers)
        self.single_flight = single_flight or SingleFlight()
        self.clock = clock

    async def geocode_hospital(self, hospital: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return ``{lat, lon, provider, resolved_at}`` for a hospital record.

        Raises:
            GeocodingFailedError: when no cached entry exists and every provider fails
        """
        fields = (
            hospital.get("hospital_name"),
            hospital.get("address"),
            hospital.get("city"),
            hospital.get("state"),
            hospital.get("zip_code"),
        )
        key = normalize_geocode_key(*fields)
        cached = await self.cache.aget(key)
        if cached and validate_coordinates(cached.get("lat"), cached.get("lon")):
            return cached

        query = build_address_variants(*fields)
        return await self.single_flight.run(key, lambda: self._resolve(key, query))

    async def _resolve(self, key: str, query: GeocodeQuery) -> Dict[str, Any]:
        attempts: Dict[str, str] = {}
        for provider in self.providers:
            try:
                result = await asyncio.wait_for(provider.geocode(query), timeout=provider.timeout)
            except asyncio.TimeoutError:
                result = Result.failure(f"timed out after {provider.timeout}s", provider.name)
            except APIError as e:
                result = Result.failure(str(e), provider.name)

            if result.ok:
                payload = {
                    "lat": result.value["lat"],
                    "lon": result.value["lon"],
                    "provider": provider.name,
                    "resolved_at": self.clock(),
                }
                await self.cache.aset(key, payload)
                logger.info(f"Geocoded {query.full_address} via {provider.name}")
                return payload

            attempts[provider.name] = result.error or "no result"
            logger.debug(f"Geocoder {provider.name} failed for {query.full_address}: {result.error}")

        log_error(logger, "geocoding_failed", f"All geocoders failed for {query.full_address}",
                  attempts=attempts)
        raise GeocodingFailedError(query.full_address, attempts)
