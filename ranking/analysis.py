"""
Ranking & Analysis Engine
Resolves a hospital, ranks nearby SNFs and enriches the top results
"""

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from logging_config import get_logger, log_performance
from data_sources.error_handling import GeocodingFailedError, HospitalNotFoundError, with_degraded_fallback
from data_sources.utils import facility_ccn, haversine_miles, normalize_name_key, pick, to_number

from .sorting import SortSpec, resolve_sort, sort_facilities

logger = get_logger(__name__)

DEFAULT_RADIUS_MILES = 50.0
DEFAULT_LIMIT = 5
DEFAULT_ENRICHMENT_TIMEOUT = 10.0
# Place and review lookups bound their own live call by enrichment_timeout and
# fall back to stale cache; their outer bound must outlast that deadline.
LOOKUP_GRACE_SECONDS = 1.0


def _coordinates(record: Mapping[str, Any]):
    lat = to_number(pick(record.get("latitude"), record.get("Latitude")))
    lon = to_number(pick(record.get("longitude"), record.get("Longitude")))
    if lat is None or lon is None:
        return None
    return lat, lon


class AnalysisEngine:
    """
    Stateless per request; all collaborators are injected at construction.

    Optional collaborators (metrics client, place resolver, review service)
    may be None, in which case that enrichment is skipped.
    """

    def __init__(self, hospitals: Sequence[Dict[str, Any]], snfs: Sequence[Dict[str, Any]],
                 geocoder=None,
                 quality_timelines: Optional[Mapping[str, Dict[str, Any]]] = None,
                 regulatory_timelines: Optional[Mapping[str, Dict[str, Any]]] = None,
                 metrics_client=None, place_resolver=None, review_service=None,
                 enrichment_timeout: float = DEFAULT_ENRICHMENT_TIMEOUT):
        self.hospitals = list(hospitals)
        self.snfs = list(snfs)
        self.geocoder = geocoder
        self.quality_timelines = quality_timelines or {}
        self.regulatory_timelines = regulatory_timelines or {}
        self.metrics_client = metrics_client
        self.place_resolver = place_resolver
        self.review_service = review_service
        self.enrichment_timeout = enrichment_timeout

    def find_hospital(self, hospital_name: str) -> Dict[str, Any]:
        """
        Exact, case-insensitive, whitespace-trimmed match on hospital name.

        Raises:
            ValueError: empty name
            HospitalNotFoundError: no match
        """
        target = (hospital_name or "").strip().upper()
        if not target:
            raise ValueError("hospitalName required")
        for hospital in self.hospitals:
            if (hospital.get("hospital_name") or "").strip().upper() == target:
                return hospital
        raise HospitalNotFoundError(hospital_name)

    def search_hospitals(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Typeahead: loaded hospitals whose normalized name contains the query."""
        needle = normalize_name_key(query)
        if not needle:
            return []
        matches = []
        for hospital in self.hospitals:
            if needle in normalize_name_key(hospital.get("hospital_name")):
                matches.append(hospital)
                if len(matches) >= limit:
                    break
        return matches

    def hospital_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Exact lookup on the normalized name key."""
        key = normalize_name_key(name)
        if not key:
            return None
        for hospital in self.hospitals:
            if normalize_name_key(hospital.get("hospital_name")) == key:
                return hospital
        return None

    async def _hospital_coordinates(self, hospital: Dict[str, Any]):
        coords = _coordinates(hospital)
        if coords is not None:
            return coords
        if self.geocoder is None:
            raise GeocodingFailedError(hospital.get("hospital_name") or "")
        geo = await self.geocoder.geocode_hospital(hospital)
        hospital["latitude"] = geo["lat"]
        hospital["longitude"] = geo["lon"]
        return geo["lat"], geo["lon"]

    def facilities_within(self, lat: float, lon: float, radius_miles: float) -> List[Dict[str, Any]]:
        """Copies of every SNF with coordinates, annotated with ``distance``, inside the radius."""
        within = []
        for snf in self.snfs:
            coords = _coordinates(snf)
            if coords is None:
                continue
            distance = haversine_miles(lat, lon, coords[0], coords[1])
            if distance <= radius_miles:
                within.append({**snf, "distance": distance})
        return within

    async def _quality_metrics(self, ccn: Optional[str]) -> Dict[str, Any]:
        if self.metrics_client is None or not ccn:
            return {}
        metrics = await with_degraded_fallback(
            self.metrics_client.fetch_quality_metrics(ccn), {}, self.enrichment_timeout,
            "quality_metrics", ccn=ccn,
        )
        return {k: v for k, v in (metrics or {}).items() if v is not None}

    async def _review_enrichment(self, facility: Dict[str, Any], ccn: Optional[str]) -> Optional[Dict[str, Any]]:
        if self.place_resolver is None:
            return None
        lookup_timeout = self.enrichment_timeout + LOOKUP_GRACE_SECONDS
        resolved = await with_degraded_fallback(
            self.place_resolver.get_place_id(facility), None, lookup_timeout,
            "place_id_resolution", ccn=ccn,
        )
        place_id = (resolved or {}).get("place_id")
        if not place_id or self.review_service is None:
            return None
        return await with_degraded_fallback(
            self.review_service.get_review_snapshot(place_id), None, lookup_timeout,
            "review_snapshot", ccn=ccn, place_id=place_id,
        )

    async def _enrich(self, index: int, facility: Dict[str, Any]) -> Dict[str, Any]:
        ccn = facility_ccn(facility)
        quality, review = await asyncio.gather(
            self._quality_metrics(ccn),
            self._review_enrichment(facility, ccn),
        )

        timeline = self.quality_timelines.get(ccn) if ccn else None
        historical = dict((timeline or {}).get("years") or {})
        regulatory = self.regulatory_timelines.get(ccn) if ccn else None

        return {
            **facility,
            "Local_Rank": index + 1,
            **quality,
            "historical_metrics": historical,
            "historical_years_available": len(historical),
            "regulatory_history": regulatory,
            "review_enrichment": review,
        }

    async def analyze(self, hospital_name: str, mode: Optional[str] = None,
                      radius_miles: Optional[float] = None, limit: Optional[int] = None,
                      sort_by: Optional[str] = None, order: Optional[str] = None,
                      request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Rank SNFs around ``hospital_name`` and enrich the top ``limit``.

        Returns:
            {hospital: {name, city, state, latitude, longitude}, facilities, totalWithinRadius}

        Raises:
            ValueError: empty hospital name
            HospitalNotFoundError: unknown hospital
            GeocodingFailedError: hospital has no coordinates and geocoding failed
        """
        result, _ = await self._run(hospital_name, mode, radius_miles, limit, sort_by, order, request_id)
        return result

    async def view(self, hospital_name: str, mode: Optional[str] = None,
                   radius_miles: Optional[float] = None, limit: Optional[int] = None,
                   sort_by: Optional[str] = None, order: Optional[str] = None,
                   request_id: Optional[str] = None) -> Dict[str, Any]:
        """Same as ``analyze`` plus ``sort: {by, order}`` echoing the resolved sort."""
        result, spec = await self._run(hospital_name, mode, radius_miles, limit, sort_by, order, request_id)
        return {**result, "sort": spec.as_dict()}

    async def _run(self, hospital_name, mode, radius_miles, limit, sort_by, order, request_id):
        start = time.time()
        hospital = self.find_hospital(hospital_name)
        lat, lon = await self._hospital_coordinates(hospital)

        radius = to_number(radius_miles)
        if radius is None:
            radius = DEFAULT_RADIUS_MILES
        try:
            top_n = int(limit) if limit is not None else DEFAULT_LIMIT
        except (TypeError, ValueError):
            top_n = DEFAULT_LIMIT
        if top_n <= 0:
            top_n = DEFAULT_LIMIT

        within = self.facilities_within(lat, lon, radius)
        spec: SortSpec = resolve_sort(mode, sort_by, order)
        ranked = sort_facilities(within, spec)[:top_n]

        facilities = await asyncio.gather(*(self._enrich(i, f) for i, f in enumerate(ranked)))

        log_performance(logger, "analyze", time.time() - start, request_id=request_id,
                        hospital=hospital.get("hospital_name"))
        result = {
            "hospital": {
                "name": hospital.get("hospital_name"),
                "city": hospital.get("city"),
                "state": hospital.get("state"),
                "latitude": lat,
                "longitude": lon,
            },
            "facilities": list(facilities),
            "totalWithinRadius": len(within),
        }
        return result, spec
