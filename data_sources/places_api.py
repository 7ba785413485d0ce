"""
Google Places API client
Find Place (text search with location bias) and Place Details
"""

from typing import Any, Dict, Optional

from logging_config import get_logger
from .error_handling import APIError
from .http_client import AsyncHttpClient
from .retry_config import RetryProfile

logger = get_logger(__name__)

FIND_PLACE_URL = "https://maps.googleapis.com/maps/api/place/findplacefromtext/json"
PLACE_DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"


class PlacesClient:
    """Thin async wrapper over the two Places endpoints used for reviews."""

    def __init__(self, http: AsyncHttpClient, api_key: Optional[str]):
        self.http = http
        self.api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def find_place(self, query: Optional[str], location_bias: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Best candidate for a free-text facility query.

        Returns:
            {place_id, name, formatted_address, location} or None when nothing matched

        Raises:
            APIError: missing key or transport failure
        """
        if not self.api_key:
            raise APIError("GOOGLE_PLACES_API_KEY is required to find place IDs", "google_places")
        if not query:
            return None

        params = {
            "input": query,
            "inputtype": "textquery",
            "fields": "place_id,name,formatted_address,geometry/location",
            "key": self.api_key,
        }
        if location_bias:
            params["locationbias"] = location_bias

        data = await self.http.get_json(FIND_PLACE_URL, params=params,
                                        profile=RetryProfile.PLACES, api_name="google_find_place")
        data = data if isinstance(data, dict) else {}
        candidates = data.get("candidates")
        if data.get("status") != "OK" or not candidates:
            logger.debug(f"No place candidates for '{query}' (status {data.get('status')})")
            return None

        best = candidates[0]
        return {
            "place_id": best.get("place_id"),
            "name": best.get("name"),
            "formatted_address": best.get("formatted_address"),
            "location": (best.get("geometry") or {}).get("location"),
        }

    async def place_details(self, place_id: str) -> Dict[str, Any]:
        """
        Name, rating, rating count and reviews for a place.

        Raises:
            APIError: missing key, transport failure, or a non-OK status
        """
        if not place_id:
            raise ValueError("place_id required")
        if not self.api_key:
            raise APIError("GOOGLE_PLACES_API_KEY is required to fetch reviews", "google_places")

        params = {
            "place_id": place_id,
            "fields": "name,rating,user_ratings_total,reviews",
            "reviews_no_translations": "true",
            "key": self.api_key,
        }
        data = await self.http.get_json(PLACE_DETAILS_URL, params=params,
                                        profile=RetryProfile.PLACES, api_name="google_place_details")
        data = data if isinstance(data, dict) else {}
        if data.get("status") != "OK":
            message = f"Places API error: {data.get('status')} {data.get('error_message') or ''}".strip()
            raise APIError(message, "google_place_details")
        return data.get("result") or {}
